"""LLM Provider abstraction — pluggable backend for real and stub LLMs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any, Literal

from pydantic import BaseModel, Field

from .errors import ProviderError
from .messages import ContentBlock, Message, TextBlock, ToolUseBlock

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class ProviderCapabilities(BaseModel):
    """Declares what a provider can do."""

    native_tool_calling: bool = False
    streaming: bool = False
    prompt_caching: bool = False


class ToolSchema(BaseModel):
    """Tool definition offered to the model."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object"})


class TokenUsage(BaseModel):
    """Token consumption metrics for a single request."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


class ProviderRequest(BaseModel):
    """Request payload sent to an LLM provider."""

    model: str
    system_prompt: str = ""
    cache_system_prompt: bool = True
    tools: list[ToolSchema] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    max_tokens: int = 4096


class ProviderResponse(BaseModel):
    """A completed model message."""

    content: list[ContentBlock] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    stop_reason: str | None = None

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def text_blocks(self) -> list[TextBlock]:
        return [b for b in self.content if isinstance(b, TextBlock)]

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]


class TextDelta(BaseModel):
    """Incremental text forwarded while the model is still generating."""

    type: Literal["text_delta"] = "text_delta"
    text: str


class MessageComplete(BaseModel):
    """Final event of a stream, carrying the whole response."""

    type: Literal["message_complete"] = "message_complete"
    response: ProviderResponse


StreamEvent = TextDelta | MessageComplete


def text_response(text: str, usage: TokenUsage | None = None) -> ProviderResponse:
    """Build a plain-text ``end_turn`` response."""
    return ProviderResponse(
        content=[TextBlock(text=text)],
        usage=usage or TokenUsage(),
        stop_reason="end_turn",
    )


def tool_use_response(
    calls: Iterable[tuple[str, str, dict[str, Any]]],
    text: str | None = None,
    usage: TokenUsage | None = None,
) -> ProviderResponse:
    """Build a ``tool_use`` response from ``(id, name, input)`` triples."""
    content: list[ContentBlock] = [TextBlock(text=text)] if text else []
    content.extend(ToolUseBlock(id=i, name=n, input=dict(args)) for i, n, args in calls)
    return ProviderResponse(content=content, usage=usage or TokenUsage(), stop_reason="tool_use")


# ---------------------------------------------------------------------------
# LLMProvider ABC
# ---------------------------------------------------------------------------


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the canonical provider name (e.g. 'anthropic', 'stub')."""

    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        """Describe what this provider supports."""

    @abstractmethod
    def stream(self, request: ProviderRequest) -> AsyncIterator[StreamEvent]:
        """Yield text deltas, then exactly one ``MessageComplete``."""

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        """Drain :meth:`stream` and return the completed response."""
        final: ProviderResponse | None = None
        async for event in self.stream(request):
            if isinstance(event, MessageComplete):
                final = event.response
        if final is None:
            raise ProviderError("stream ended without a completed message", provider=self.name())
        return final


# ---------------------------------------------------------------------------
# Stub implementation (for testing / offline development)
# ---------------------------------------------------------------------------


class StubLLMProvider(LLMProvider):
    """Returns canned responses without making real HTTP calls."""

    _CANNED = "This is a stub response for testing purposes."

    def name(self) -> str:
        return "stub"

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(streaming=True)

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamEvent]:
        """Stream a deterministic canned reply, word by word."""
        reply = f"{self._CANNED} (model={request.model})"
        words = reply.split(" ")
        for i, word in enumerate(words):
            yield TextDelta(text=word if i == 0 else f" {word}")
        input_tokens = sum(m.text_length() for m in request.messages) // 4
        yield MessageComplete(
            response=text_response(
                reply,
                TokenUsage(input_tokens=input_tokens, output_tokens=len(words)),
            )
        )


ScriptStep = ProviderResponse | BaseException | Callable[[ProviderRequest], ProviderResponse]


class ScriptedLLMProvider(LLMProvider):
    """Replays queued responses in order and records every request.

    A step may be a ``ProviderResponse``, an exception to raise, or a
    callable that builds the response from the request.
    """

    def __init__(self, steps: Iterable[ScriptStep] = ()) -> None:
        self._steps: deque[ScriptStep] = deque(steps)
        self.requests: list[ProviderRequest] = []

    def push(self, *steps: ScriptStep) -> None:
        self._steps.extend(steps)

    @property
    def remaining(self) -> int:
        return len(self._steps)

    def name(self) -> str:
        return "scripted"

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(native_tool_calling=True, streaming=True)

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request.model_copy(deep=True))
        if not self._steps:
            raise ProviderError("scripted provider has no responses left", provider=self.name())
        step = self._steps.popleft()
        if isinstance(step, BaseException):
            raise step
        response = step(request) if callable(step) else step
        for block in response.text_blocks():
            yield TextDelta(text=block.text)
        yield MessageComplete(response=response)
