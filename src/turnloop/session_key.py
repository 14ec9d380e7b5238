"""Session key helpers — ``agent:<agent_id>:<rest>`` keys and subagent keys."""

from __future__ import annotations

import re
import uuid

DEFAULT_AGENT_ID = "main"
DEFAULT_MAIN_KEY = "main"

_MAX_AGENT_ID_LEN = 64
_INVALID_AGENT_CHARS = re.compile(r"[^a-z0-9_-]+")


def normalize_agent_id(value: str | None) -> str:
    """Lowercase, replace invalid characters with ``-``, cap at 64 chars."""
    trimmed = (value or "").strip().lower()
    if not trimmed:
        return DEFAULT_AGENT_ID
    cleaned = _INVALID_AGENT_CHARS.sub("-", trimmed).strip("-")
    cleaned = cleaned[:_MAX_AGENT_ID_LEN].strip("-")
    return cleaned or DEFAULT_AGENT_ID


def normalize_main_key(value: str | None) -> str:
    trimmed = (value or "").strip().lower()
    return trimmed or DEFAULT_MAIN_KEY


def build_agent_main_session_key(agent_id: str | None, main_key: str | None = None) -> str:
    return f"agent:{normalize_agent_id(agent_id)}:{normalize_main_key(main_key)}"


def parse_agent_session_key(key: str | None) -> tuple[str, str] | None:
    """Split ``agent:<id>:<rest>`` into ``(id, rest)``; None if malformed."""
    if not key:
        return None
    parts = key.strip().split(":", 2)
    if len(parts) < 3 or parts[0].lower() != "agent":
        return None
    agent_id, rest = parts[1], parts[2]
    if not agent_id or not rest:
        return None
    return agent_id, rest


def is_subagent_session_key(key: str | None) -> bool:
    parsed = parse_agent_session_key(key)
    if parsed is None:
        return False
    return parsed[1].lower().startswith("subagent:")


def resolve_agent_id_from_session_key(key: str | None) -> str:
    parsed = parse_agent_session_key(key)
    if parsed is None:
        return DEFAULT_AGENT_ID
    return normalize_agent_id(parsed[0])


def to_agent_store_session_key(agent_id: str | None, request_key: str | None) -> str:
    """Map a caller-facing session id onto the store key for *agent_id*."""
    raw = (request_key or "").strip()
    if not raw or raw.lower() == DEFAULT_MAIN_KEY:
        return build_agent_main_session_key(agent_id)
    if raw.lower().startswith("agent:"):
        return raw
    return f"agent:{normalize_agent_id(agent_id)}:{raw}"


def resolve_session_key(
    agent_id: str | None = None,
    session_id: str | None = None,
    session_key: str | None = None,
) -> str:
    """Resolve the store key; an explicit *session_key* wins over *session_id*."""
    request = session_key if session_key and session_key.strip() else session_id
    return to_agent_store_session_key(agent_id, request)


def build_subagent_session_key(agent_id: str | None) -> str:
    return f"agent:{normalize_agent_id(agent_id)}:subagent:{uuid.uuid4()}"
