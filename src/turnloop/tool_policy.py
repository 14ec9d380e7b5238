"""Tool policy — allow/deny glob rules deciding which tools a run may offer."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol, TypeVar


class NamedTool(Protocol):
    name: str


T = TypeVar("T", bound=NamedTool)


@dataclass
class ToolPolicy:
    """Allow/deny pattern lists. Patterns are trimmed and case-insensitive."""

    allow: list[str] = field(default_factory=list)
    deny: list[str] = field(default_factory=list)


@dataclass
class SandboxSettings:
    """Coarse sandbox switches translated into a deny policy."""

    enabled: bool = False
    allow_exec: bool = False
    allow_write: bool = True


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def _normalize(pattern: str) -> str:
    return pattern.strip().lower()


def matches_pattern(name: str, pattern: str) -> bool:
    """Match *name* against ``*``, ``prefix*`` or an exact pattern."""
    normalized = _normalize(pattern)
    if not normalized:
        return False
    target = _normalize(name)
    if normalized == "*":
        return True
    if normalized.endswith("*"):
        return target.startswith(normalized[:-1])
    return target == normalized


def _matches_any(name: str, patterns: Iterable[str]) -> bool:
    return any(matches_pattern(name, p) for p in patterns)


def is_tool_allowed(name: str, policy: ToolPolicy | None = None) -> bool:
    """Return True when *name* passes *policy*. Deny always wins over allow."""
    if policy is None:
        return True
    if not policy.allow and not policy.deny:
        return True
    if _matches_any(name, policy.deny):
        return False
    if policy.allow:
        return _matches_any(name, policy.allow)
    return True


def filter_tools_by_policy(tools: Sequence[T], policy: ToolPolicy | None = None) -> list[T]:
    """Keep the tools *policy* allows, preserving their order."""
    if policy is None:
        return list(tools)
    return [tool for tool in tools if is_tool_allowed(tool.name, policy)]


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def _union(*lists: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    merged: list[str] = []
    for patterns in lists:
        for raw in patterns:
            pattern = raw.strip()
            folded = pattern.lower()
            if not pattern or folded in seen:
                continue
            seen.add(folded)
            merged.append(pattern)
    return merged


def merge_tool_policies(
    base: ToolPolicy | None = None,
    extra: ToolPolicy | None = None,
) -> ToolPolicy | None:
    """Union two policies list by list. None only when both inputs are None."""
    if base is None and extra is None:
        return None
    base = base or ToolPolicy()
    extra = extra or ToolPolicy()
    return ToolPolicy(
        allow=_union(base.allow, extra.allow),
        deny=_union(base.deny, extra.deny),
    )


def build_sandbox_tool_policy(sandbox: SandboxSettings | None) -> ToolPolicy | None:
    """Deny ``exec`` and/or ``write``/``edit`` according to the sandbox switches."""
    if sandbox is None or not sandbox.enabled:
        return None
    deny: list[str] = []
    if not sandbox.allow_exec:
        deny.append("exec")
    if not sandbox.allow_write:
        deny.extend(["write", "edit"])
    return ToolPolicy(deny=deny) if deny else None
