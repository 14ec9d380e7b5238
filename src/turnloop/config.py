"""Agent configuration — dataclass defaults overridable from ``TURNLOOP_*`` env vars."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .context_window.compaction import (
    DEFAULT_COMPACTION_TRIGGER_RATIO,
    DEFAULT_SUMMARY_MAX_TOKENS,
)
from .context_window.pruning import PruningSettings
from .tool_policy import SandboxSettings, ToolPolicy

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_CONTEXT_TOKENS = 200_000
DEFAULT_SESSION_DIR = "./.turnloop/sessions"

DEFAULT_SYSTEM_PROMPT = """You are a personal assistant running inside turnloop.

## Tooling
Tool names are case-sensitive. Call tools exactly as listed.
Default: do not narrate routine, low-risk tool calls (just call the tool).
Narrate only when it helps: multi-step work, sensitive actions, or when the user explicitly asks.

## Principles
1. Read before modifying; check the current state first.
2. Be concise. Actions over explanations.
3. When unsure, search first."""

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


@dataclass
class AgentConfig:
    """Settings for one :class:`~turnloop.agent.Agent`."""

    agent_id: str = "main"
    model: str = DEFAULT_MODEL
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_turns: int = 20
    max_tokens: int = 4096
    context_tokens: int = DEFAULT_CONTEXT_TOKENS
    session_dir: str = DEFAULT_SESSION_DIR
    workspace_dir: str = field(default_factory=os.getcwd)
    tool_policy: ToolPolicy | None = None
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    global_concurrency: int = 4
    enable_memory: bool = True
    enable_skills: bool = True
    pruning: PruningSettings = field(default_factory=PruningSettings)
    compaction_trigger_ratio: float = DEFAULT_COMPACTION_TRIGGER_RATIO
    summary_max_tokens: int = DEFAULT_SUMMARY_MAX_TOKENS

    @classmethod
    def from_env(cls, **overrides: object) -> AgentConfig:
        """Build a config from ``TURNLOOP_*`` variables; *overrides* win.

        Raises:
            ValueError: If a numeric or boolean variable cannot be parsed.
        """
        cfg = cls()
        env = os.environ

        cfg.agent_id = env.get("TURNLOOP_AGENT_ID", cfg.agent_id)
        cfg.model = env.get("TURNLOOP_MODEL", cfg.model)
        cfg.session_dir = env.get("TURNLOOP_SESSION_DIR", cfg.session_dir)
        cfg.workspace_dir = env.get("TURNLOOP_WORKSPACE_DIR", cfg.workspace_dir)
        cfg.max_turns = _env_int("TURNLOOP_MAX_TURNS", cfg.max_turns)
        cfg.context_tokens = _env_int("TURNLOOP_CONTEXT_TOKENS", cfg.context_tokens)
        cfg.global_concurrency = _env_int("TURNLOOP_GLOBAL_CONCURRENCY", cfg.global_concurrency)
        cfg.enable_memory = _env_bool("TURNLOOP_ENABLE_MEMORY", cfg.enable_memory)
        cfg.enable_skills = _env_bool("TURNLOOP_ENABLE_SKILLS", cfg.enable_skills)

        cfg.sandbox = SandboxSettings(
            enabled=_env_bool("TURNLOOP_SANDBOX", cfg.sandbox.enabled),
            allow_exec=_env_bool("TURNLOOP_SANDBOX_ALLOW_EXEC", cfg.sandbox.allow_exec),
            allow_write=_env_bool("TURNLOOP_SANDBOX_ALLOW_WRITE", cfg.sandbox.allow_write),
        )

        allow = _env_list("TURNLOOP_TOOL_ALLOW")
        deny = _env_list("TURNLOOP_TOOL_DENY")
        if allow or deny:
            cfg.tool_policy = ToolPolicy(allow=allow, deny=deny)

        for key, value in overrides.items():
            if not hasattr(cfg, key):
                raise ValueError(f"Unknown AgentConfig field '{key}'")
            setattr(cfg, key, value)
        return cfg


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got '{raw}'") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got '{raw}'")


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]
