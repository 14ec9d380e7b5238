"""Token estimation — character-ratio approximation, no tokenizer required."""

from __future__ import annotations

import json
import math
from collections.abc import Iterable

from ..messages import ContentBlock, Message, TextBlock, ToolResultBlock, ToolUseBlock

CHARS_PER_TOKEN_ESTIMATE = 4

_TOOL_USE_OVERHEAD_CHARS = 16
_UNSERIALIZABLE_INPUT_CHARS = 128


def estimate_block_chars(block: ContentBlock) -> int:
    if isinstance(block, TextBlock):
        return len(block.text)
    if isinstance(block, ToolUseBlock):
        try:
            payload = (
                json.dumps(block.input, ensure_ascii=False, separators=(",", ":"))
                if block.input
                else ""
            )
        except (TypeError, ValueError):
            return len(block.name) + _UNSERIALIZABLE_INPUT_CHARS
        return len(block.name) + len(payload) + _TOOL_USE_OVERHEAD_CHARS
    if isinstance(block, ToolResultBlock):
        return len(block.content)
    return 0


def estimate_message_chars(message: Message) -> int:
    if isinstance(message.content, str):
        return len(message.content)
    return sum(estimate_block_chars(b) for b in message.content)


def estimate_messages_chars(messages: Iterable[Message]) -> int:
    return sum(estimate_message_chars(m) for m in messages)


def estimate_message_tokens(message: Message) -> int:
    """At least one token per message, 4 characters per token."""
    return max(1, math.ceil(estimate_message_chars(message) / CHARS_PER_TOKEN_ESTIMATE))


def estimate_messages_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)
