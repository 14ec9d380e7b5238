"""Conversation message model — plain text or ordered content blocks."""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class MessageRole(StrEnum):
    """Role of a persisted conversation participant."""

    USER = "user"
    ASSISTANT = "assistant"


class TextBlock(BaseModel):
    """Plain text emitted by the user or the model."""

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """A tool invocation requested by the model."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """The result of a tool invocation, keyed by the request id."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str = ""


ContentBlock = Annotated[
    TextBlock | ToolUseBlock | ToolResultBlock,
    Field(discriminator="type"),
]


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """Single persisted message in a session log."""

    role: MessageRole
    content: str | list[ContentBlock]
    timestamp: int = Field(default_factory=now_ms)

    @classmethod
    def user(cls, content: str | list[ContentBlock]) -> Message:
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str | list[ContentBlock]) -> Message:
        return cls(role=MessageRole.ASSISTANT, content=content)

    @property
    def blocks(self) -> list[ContentBlock]:
        """Content as a block list (string content becomes one text block)."""
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)]
        return list(self.content)

    def text_blocks(self) -> list[TextBlock]:
        return [b for b in self.blocks if isinstance(b, TextBlock)]

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]

    def text_length(self) -> int:
        """Characters of visible text: string length or sum of text blocks."""
        if isinstance(self.content, str):
            return len(self.content)
        return sum(len(b.text) for b in self.content if isinstance(b, TextBlock))

    def to_json_line(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json_line(cls, line: str) -> Message:
        return cls.model_validate_json(line)
