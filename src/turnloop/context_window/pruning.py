"""History pruning — keep the newest contiguous suffix that fits the budget."""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from ..messages import ContentBlock, Message, ToolResultBlock
from .tokens import CHARS_PER_TOKEN_ESTIMATE, estimate_message_chars, estimate_messages_chars


@dataclass(frozen=True)
class SoftTrimSettings:
    """Oversized tool results keep only their head and tail."""

    max_chars: int = 4_000
    head_chars: int = 1_500
    tail_chars: int = 1_500


@dataclass(frozen=True)
class PruningSettings:
    max_history_share: float = 0.5
    soft_trim: SoftTrimSettings = field(default_factory=SoftTrimSettings)


DEFAULT_PRUNING_SETTINGS = PruningSettings()


@dataclass
class PruneResult:
    """Kept suffix and dropped prefix of a history, oldest-first."""

    messages: list[Message]
    dropped_messages: list[Message]
    trimmed_tool_results: int = 0
    total_chars: int = 0
    kept_chars: int = 0
    dropped_chars: int = 0
    budget_chars: int = 0


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def _finite(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool) and math.isfinite(value)


def _count(value: Any, fallback: int) -> int:
    return max(0, math.floor(value)) if _finite(value) else fallback


def resolve_pruning_settings(
    raw: PruningSettings | Mapping[str, Any] | None = None,
) -> PruningSettings:
    """Merge partial *raw* settings over the defaults, clamping bad values."""
    if raw is None:
        return DEFAULT_PRUNING_SETTINGS
    if isinstance(raw, PruningSettings):
        return raw

    defaults = DEFAULT_PRUNING_SETTINGS
    share = raw.get("max_history_share", defaults.max_history_share)
    share = min(1.0, max(0.0, float(share))) if _finite(share) else defaults.max_history_share

    trim_raw = raw.get("soft_trim") or {}
    trim_defaults = defaults.soft_trim
    soft_trim = SoftTrimSettings(
        max_chars=_count(trim_raw.get("max_chars"), trim_defaults.max_chars),
        head_chars=_count(trim_raw.get("head_chars"), trim_defaults.head_chars),
        tail_chars=_count(trim_raw.get("tail_chars"), trim_defaults.tail_chars),
    )
    return replace(defaults, max_history_share=share, soft_trim=soft_trim)


def budget_chars_for(context_window_tokens: float, settings: PruningSettings) -> int:
    tokens = max(1, math.floor(context_window_tokens))
    return max(1, math.floor(tokens * CHARS_PER_TOKEN_ESTIMATE * settings.max_history_share))


# ---------------------------------------------------------------------------
# Soft trim
# ---------------------------------------------------------------------------


def _soft_trim_block(block: ContentBlock, settings: SoftTrimSettings) -> ContentBlock | None:
    """Return a trimmed copy of an oversized tool result, else None."""
    if not isinstance(block, ToolResultBlock):
        return None
    raw = block.content
    if len(raw) <= settings.max_chars:
        return None
    head_chars, tail_chars = settings.head_chars, settings.tail_chars
    if head_chars + tail_chars >= len(raw):
        return None
    head = raw[:head_chars]
    tail = raw[len(raw) - tail_chars :] if tail_chars else ""
    note = (
        f"[Tool result trimmed: kept first {head_chars} chars and last "
        f"{tail_chars} chars of {len(raw)} chars.]"
    )
    return block.model_copy(update={"content": f"{head}\n...\n{tail}\n\n{note}"})


def apply_soft_trim(
    messages: Sequence[Message], settings: SoftTrimSettings
) -> tuple[list[Message], int]:
    trimmed_count = 0
    output: list[Message] = []
    for msg in messages:
        if isinstance(msg.content, str):
            output.append(msg)
            continue
        changed = False
        blocks: list[ContentBlock] = []
        for block in msg.content:
            trimmed = _soft_trim_block(block, settings)
            if trimmed is not None:
                trimmed_count += 1
                changed = True
                blocks.append(trimmed)
            else:
                blocks.append(block)
        output.append(msg.model_copy(update={"content": blocks}) if changed else msg)
    return output, trimmed_count


# ---------------------------------------------------------------------------
# Pruning
# ---------------------------------------------------------------------------


def _kept_suffix_length(messages: Sequence[Message], budget_chars: int) -> int:
    """Walk newest-first; stop at the first message that overflows the budget.

    The newest message is always kept, even when it alone exceeds the budget.
    """
    used = 0
    kept = 0
    for msg in reversed(messages):
        chars = estimate_message_chars(msg)
        if used + chars > budget_chars and kept > 0:
            break
        used += chars
        kept += 1
    return kept


def prune_context_messages(
    messages: Sequence[Message],
    context_window_tokens: float,
    settings: PruningSettings | Mapping[str, Any] | None = None,
) -> PruneResult:
    """Split *messages* into a kept newest suffix and a dropped oldest prefix."""
    resolved = resolve_pruning_settings(settings)
    budget_chars = budget_chars_for(context_window_tokens, resolved)

    trimmed, trimmed_count = apply_soft_trim(messages, resolved.soft_trim)
    total_chars = estimate_messages_chars(trimmed)

    if total_chars <= budget_chars:
        return PruneResult(
            messages=trimmed,
            dropped_messages=[],
            trimmed_tool_results=trimmed_count,
            total_chars=total_chars,
            kept_chars=total_chars,
            dropped_chars=0,
            budget_chars=budget_chars,
        )

    cut = len(trimmed) - _kept_suffix_length(trimmed, budget_chars)
    kept = trimmed[cut:]
    kept_chars = estimate_messages_chars(kept)
    return PruneResult(
        messages=kept,
        dropped_messages=trimmed[:cut],
        trimmed_tool_results=trimmed_count,
        total_chars=total_chars,
        kept_chars=kept_chars,
        dropped_chars=max(0, total_chars - kept_chars),
        budget_chars=budget_chars,
    )
