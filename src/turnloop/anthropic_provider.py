"""Anthropic Messages API provider — streams through the official SDK."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from typing import Any

from .errors import ProviderError
from .messages import ContentBlock, Message, TextBlock, ToolUseBlock
from .provider import (
    LLMProvider,
    MessageComplete,
    ProviderCapabilities,
    ProviderRequest,
    ProviderResponse,
    StreamEvent,
    TextDelta,
    TokenUsage,
)

logger = logging.getLogger(__name__)

_DEFAULT_MODEL = "claude-sonnet-4-20250514"


class AnthropicProvider(LLMProvider):
    """LLM provider backed by ``anthropic.AsyncAnthropic``.

    Configuration via environment variables:
        - ``ANTHROPIC_API_KEY``: read by the SDK itself
        - ``ANTHROPIC_BASE_URL``: optional API base URL
        - ``TURNLOOP_MODEL``: default model when a request leaves it empty
    """

    def __init__(
        self,
        model: str | None = None,
        client: Any | None = None,
        base_url: str | None = None,
    ) -> None:
        self._model = model or os.environ.get("TURNLOOP_MODEL", _DEFAULT_MODEL)
        if client is None:
            try:
                import anthropic
            except ImportError as exc:
                msg = "anthropic SDK not installed; install the 'anthropic' extra"
                raise ProviderError(msg, provider="anthropic") from exc
            client = anthropic.AsyncAnthropic(
                base_url=base_url or os.environ.get("ANTHROPIC_BASE_URL") or None
            )
        self._client = client

    @property
    def model(self) -> str:
        return self._model

    def name(self) -> str:
        return "anthropic"

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(native_tool_calling=True, streaming=True, prompt_caching=True)

    # -- request mapping -----------------------------------------------------

    def build_params(self, request: ProviderRequest) -> dict[str, Any]:
        """Translate a request into ``messages.stream`` keyword arguments."""
        params: dict[str, Any] = {
            "model": request.model or self._model,
            "max_tokens": request.max_tokens,
            "messages": [_to_api_message(m) for m in request.messages],
        }
        if request.system_prompt:
            system: dict[str, Any] = {"type": "text", "text": request.system_prompt}
            if request.cache_system_prompt:
                system["cache_control"] = {"type": "ephemeral"}
            params["system"] = [system]
        if request.tools:
            params["tools"] = [t.model_dump() for t in request.tools]
        return params

    # -- streaming -----------------------------------------------------------

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamEvent]:
        params = self.build_params(request)
        try:
            async with self._client.messages.stream(**params) as stream:
                async for event in stream:
                    if getattr(event, "type", None) == "text":
                        yield TextDelta(text=event.text)
                final = await stream.get_final_message()
        except ProviderError:
            raise
        except Exception as exc:
            logger.warning("anthropic request failed: %s", exc)
            raise ProviderError(f"anthropic request failed: {exc}", provider=self.name()) from exc

        yield MessageComplete(response=_from_api_message(final))


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------


def _to_api_message(message: Message) -> dict[str, Any]:
    if isinstance(message.content, str):
        return {"role": str(message.role), "content": message.content}
    return {
        "role": str(message.role),
        "content": [block.model_dump() for block in message.content],
    }


def _from_api_message(final: Any) -> ProviderResponse:
    content: list[ContentBlock] = []
    for block in getattr(final, "content", None) or []:
        if block.type == "text":
            content.append(TextBlock(text=block.text))
        elif block.type == "tool_use":
            content.append(ToolUseBlock(id=block.id, name=block.name, input=dict(block.input or {})))

    raw = getattr(final, "usage", None)
    usage = TokenUsage(
        input_tokens=getattr(raw, "input_tokens", 0) or 0,
        output_tokens=getattr(raw, "output_tokens", 0) or 0,
        cache_creation_input_tokens=getattr(raw, "cache_creation_input_tokens", 0) or 0,
        cache_read_input_tokens=getattr(raw, "cache_read_input_tokens", 0) or 0,
    )
    return ProviderResponse(
        content=content,
        usage=usage,
        stop_reason=getattr(final, "stop_reason", None),
    )
