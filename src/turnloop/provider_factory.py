"""Provider factory — deterministic provider selection from environment."""

from __future__ import annotations

import os

from .anthropic_provider import AnthropicProvider
from .provider import LLMProvider, StubLLMProvider

# Valid provider names for TURNLOOP_LLM_PROVIDER
_VALID_PROVIDERS = frozenset({"anthropic", "stub"})


class ProviderFactory:
    """Creates the appropriate LLM provider based on configuration.

    Resolution logic:
        1. Read ``TURNLOOP_LLM_PROVIDER`` (anthropic | stub).
        2. If set: return that exact provider.
        3. If unset and ``fallback=True``: anthropic when ``ANTHROPIC_API_KEY``
           is present, else stub.
        4. If unset and ``fallback=False`` (default): return stub.
    """

    @staticmethod
    def create(fallback: bool = False, model: str | None = None) -> LLMProvider:
        """Create a provider based on ``TURNLOOP_LLM_PROVIDER``.

        Raises:
            ValueError: If ``TURNLOOP_LLM_PROVIDER`` is set to an unknown value.
        """
        env_provider = os.environ.get("TURNLOOP_LLM_PROVIDER", "").strip().lower()

        if env_provider:
            return ProviderFactory._create_explicit(env_provider, model)

        if fallback and os.environ.get("ANTHROPIC_API_KEY"):
            return AnthropicProvider(model=model)

        return StubLLMProvider()

    @staticmethod
    def _create_explicit(provider_name: str, model: str | None) -> LLMProvider:
        if provider_name not in _VALID_PROVIDERS:
            msg = (
                f"Unknown provider '{provider_name}'. "
                f"Valid values for TURNLOOP_LLM_PROVIDER: {', '.join(sorted(_VALID_PROVIDERS))}"
            )
            raise ValueError(msg)

        if provider_name == "anthropic":
            return AnthropicProvider(model=model)
        return StubLLMProvider()

    @staticmethod
    def describe(provider: LLMProvider) -> str:
        """Return a human-readable description of a provider."""
        if isinstance(provider, AnthropicProvider):
            return f"AnthropicProvider (model={provider.model})"
        if provider.name() == "stub":
            return "StubLLMProvider (deterministic responses)"
        return f"{type(provider).__name__}"
