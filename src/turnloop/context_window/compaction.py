"""History compaction — summarize what pruning drops so it is not lost.

Pruning keeps the newest suffix of a history that fits the budget. When the
full history is past the trigger ratio of the window, the dropped prefix is
summarized through the provider and the summary rides ahead of the kept
suffix as a synthetic user message.

Summaries are produced in stages: large inputs are split by token share,
each part is summarized chunk by chunk (carrying the running summary
forward), and the partial summaries are merged in a final call.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

from ..errors import SummarizationError
from ..messages import Message, TextBlock, ToolResultBlock, ToolUseBlock
from ..provider import LLMProvider, ProviderRequest
from .pruning import PruneResult, PruningSettings, prune_context_messages
from .tokens import estimate_message_tokens, estimate_messages_tokens

logger = logging.getLogger(__name__)

BASE_CHUNK_RATIO = 0.4
MIN_CHUNK_RATIO = 0.15
SAFETY_MARGIN = 1.2
DEFAULT_COMPACTION_TRIGGER_RATIO = 0.75
DEFAULT_SUMMARY_MAX_TOKENS = 900
DEFAULT_PARTS = 2
DEFAULT_MIN_MESSAGES_FOR_SPLIT = 4

SUMMARY_PREFIX = "[Conversation summary]"
DEFAULT_SUMMARY_FALLBACK = "No prior history."

SUMMARY_SYSTEM_PROMPT = "You summarize conversations. Output a concise, accurate summary."
DEFAULT_SUMMARY_INSTRUCTIONS = (
    "Summarize the conversation history below. Keep key decisions, TODOs, open"
    " questions and constraints. Be concise but complete; skip irrelevant detail."
)
MERGE_SUMMARIES_INSTRUCTIONS = (
    "Merge these partial summaries into a single cohesive summary. Preserve"
    " decisions, TODOs, open questions, and any constraints."
)


@dataclass
class CompactionOutcome:
    """Pruned view plus, when compaction ran, the summary that replaces the drop."""

    prune_result: PruneResult
    summary: str | None = None
    summary_message: Message | None = None

    @property
    def messages(self) -> list[Message]:
        """Model-visible history: summary message (if any) then kept suffix."""
        if self.summary_message is None:
            return list(self.prune_result.messages)
        return [self.summary_message, *self.prune_result.messages]


@dataclass
class _SummaryJob:
    provider: LLMProvider
    model: str
    max_tokens: int
    max_chunk_tokens: int
    context_window: int
    instructions: str | None = None
    previous_summary: str | None = None


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


def _normalize_parts(parts: float, message_count: int) -> int:
    if not math.isfinite(parts) or parts <= 1:
        return 1
    return min(max(1, math.floor(parts)), max(1, message_count))


def compute_adaptive_chunk_ratio(messages: Sequence[Message], context_window: int) -> float:
    """Shrink the chunk ratio when the average message is large for the window."""
    if not messages:
        return BASE_CHUNK_RATIO
    avg_tokens = estimate_messages_tokens(messages) / len(messages)
    avg_ratio = avg_tokens * SAFETY_MARGIN / max(1, context_window)
    if avg_ratio > 0.1:
        reduction = min(avg_ratio * 2, BASE_CHUNK_RATIO - MIN_CHUNK_RATIO)
        return max(MIN_CHUNK_RATIO, BASE_CHUNK_RATIO - reduction)
    return BASE_CHUNK_RATIO


def split_messages_by_token_share(
    messages: Sequence[Message], parts: int = DEFAULT_PARTS
) -> list[list[Message]]:
    """Split into at most *parts* contiguous chunks of roughly equal tokens."""
    if not messages:
        return []
    normalized = _normalize_parts(parts, len(messages))
    if normalized <= 1:
        return [list(messages)]

    target = estimate_messages_tokens(messages) / normalized
    chunks: list[list[Message]] = []
    current: list[Message] = []
    current_tokens = 0
    for msg in messages:
        tokens = estimate_message_tokens(msg)
        if len(chunks) < normalized - 1 and current and current_tokens + tokens > target:
            chunks.append(current)
            current, current_tokens = [], 0
        current.append(msg)
        current_tokens += tokens
    if current:
        chunks.append(current)
    return chunks


def chunk_messages_by_max_tokens(
    messages: Sequence[Message], max_tokens: int
) -> list[list[Message]]:
    """Greedy chunks of at most *max_tokens*; an oversized message stands alone."""
    chunks: list[list[Message]] = []
    current: list[Message] = []
    current_tokens = 0
    for msg in messages:
        tokens = estimate_message_tokens(msg)
        if current and current_tokens + tokens > max_tokens:
            chunks.append(current)
            current, current_tokens = [], 0
        current.append(msg)
        current_tokens += tokens
        if tokens > max_tokens:
            chunks.append(current)
            current, current_tokens = [], 0
    if current:
        chunks.append(current)
    return chunks


def _is_oversized_for_summary(msg: Message, context_window: int) -> bool:
    return estimate_message_tokens(msg) * SAFETY_MARGIN > context_window * 0.5


# ---------------------------------------------------------------------------
# Transcript formatting
# ---------------------------------------------------------------------------


def _format_message(msg: Message) -> str:
    if isinstance(msg.content, str):
        return msg.content
    parts: list[str] = []
    for block in msg.content:
        if isinstance(block, TextBlock):
            if block.text:
                parts.append(block.text)
        elif isinstance(block, ToolUseBlock):
            args = _dump_input(block.input)
            parts.append(f"[tool_use {block.name}] {args}")
        elif isinstance(block, ToolResultBlock):
            parts.append(f"[tool_result] {block.content}")
    return "\n".join(parts)


def _dump_input(value: dict[str, Any]) -> str:
    if not value:
        return ""
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return ""


def format_transcript(messages: Sequence[Message]) -> str:
    return "\n".join(f"{msg.role}: {_format_message(msg)}" for msg in messages)


# ---------------------------------------------------------------------------
# Summarization
# ---------------------------------------------------------------------------


async def _generate_summary(job: _SummaryJob, messages: Sequence[Message]) -> str:
    instructions = job.instructions or DEFAULT_SUMMARY_INSTRUCTIONS
    previous = (
        f"Existing summary:\n{job.previous_summary}\n\n" if job.previous_summary else ""
    )
    prompt = (
        f"{instructions}\n\n{previous}Conversation excerpt:\n"
        f"{format_transcript(messages)}\n\nSummary:"
    )
    request = ProviderRequest(
        model=job.model,
        system_prompt=SUMMARY_SYSTEM_PROMPT,
        cache_system_prompt=False,
        messages=[Message.user(prompt)],
        max_tokens=job.max_tokens,
    )
    response = await job.provider.complete(request)
    text = response.text.strip()
    if not text:
        raise SummarizationError("provider returned an empty summary")
    return text


async def _summarize_chunks(job: _SummaryJob, messages: Sequence[Message]) -> str:
    if not messages:
        return job.previous_summary or DEFAULT_SUMMARY_FALLBACK
    summary = job.previous_summary
    for chunk in chunk_messages_by_max_tokens(messages, job.max_chunk_tokens):
        summary = await _generate_summary(replace(job, previous_summary=summary), chunk)
    return summary or DEFAULT_SUMMARY_FALLBACK


async def _summarize_with_fallback(job: _SummaryJob, messages: Sequence[Message]) -> str:
    """Summarize everything; on failure retry without oversized messages.

    Raises SummarizationError when no summary can be produced at all.
    """
    if not messages:
        return job.previous_summary or DEFAULT_SUMMARY_FALLBACK

    try:
        return await _summarize_chunks(job, messages)
    except Exception as exc:
        logger.info("full summarization failed, retrying without large messages: %s", exc)

    small: list[Message] = []
    notes: list[str] = []
    for msg in messages:
        if _is_oversized_for_summary(msg, job.context_window):
            tokens = estimate_message_tokens(msg)
            notes.append(f"[Large {msg.role} (~{round(tokens / 1000)}K tokens) omitted]")
        else:
            small.append(msg)

    if small:
        try:
            partial = await _summarize_chunks(job, small)
        except Exception as exc:
            raise SummarizationError(
                f"Context contained {len(messages)} messages; summary unavailable: {exc}"
            ) from exc
        return partial + ("\n\n" + "\n".join(notes) if notes else "")

    raise SummarizationError(
        f"Context contained {len(messages)} messages; summary unavailable due to size limits"
    )


async def _summarize_in_stages(
    job: _SummaryJob,
    messages: Sequence[Message],
    parts: int = DEFAULT_PARTS,
    min_messages_for_split: int = DEFAULT_MIN_MESSAGES_FOR_SPLIT,
) -> str:
    if not messages:
        return job.previous_summary or DEFAULT_SUMMARY_FALLBACK

    min_split = max(2, min_messages_for_split)
    normalized = _normalize_parts(parts, len(messages))
    if (
        normalized <= 1
        or len(messages) < min_split
        or estimate_messages_tokens(messages) <= job.max_chunk_tokens
    ):
        return await _summarize_with_fallback(job, messages)

    splits = [c for c in split_messages_by_token_share(messages, normalized) if c]
    if len(splits) <= 1:
        return await _summarize_with_fallback(job, messages)

    partials = [
        await _summarize_with_fallback(replace(job, previous_summary=None), chunk)
        for chunk in splits
    ]
    merge_instructions = (
        f"{MERGE_SUMMARIES_INSTRUCTIONS}\n\nAdditional focus:\n{job.instructions}"
        if job.instructions
        else MERGE_SUMMARIES_INSTRUCTIONS
    )
    return await _summarize_with_fallback(
        replace(job, instructions=merge_instructions),
        [Message.user(p) for p in partials],
    )


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


def should_trigger_compaction(
    messages: Sequence[Message],
    context_window_tokens: int,
    trigger_ratio: float | None = None,
) -> bool:
    """True when the estimated history exceeds ``floor(window * ratio)``."""
    if trigger_ratio is None or not math.isfinite(trigger_ratio):
        ratio = DEFAULT_COMPACTION_TRIGGER_RATIO
    else:
        ratio = min(1.0, max(0.0, trigger_ratio))
    return estimate_messages_tokens(messages) > math.floor(context_window_tokens * ratio)


async def build_compaction_summary(
    provider: LLMProvider,
    model: str,
    messages: Sequence[Message],
    context_window_tokens: int,
    max_tokens: int | None = None,
    instructions: str | None = None,
) -> str:
    """Summarize *messages* in stages, sizing chunks to the window."""
    if not messages:
        return DEFAULT_SUMMARY_FALLBACK
    ratio = compute_adaptive_chunk_ratio(messages, context_window_tokens)
    job = _SummaryJob(
        provider=provider,
        model=model,
        max_tokens=max(64, math.floor(max_tokens or DEFAULT_SUMMARY_MAX_TOKENS)),
        max_chunk_tokens=max(1, math.floor(context_window_tokens * ratio)),
        context_window=context_window_tokens,
        instructions=instructions,
    )
    return await _summarize_in_stages(job, messages)


def build_summary_message(summary: str) -> Message:
    return Message.user(f"{SUMMARY_PREFIX}\n{summary}")


async def compact_history_if_needed(
    messages: Sequence[Message],
    context_window_tokens: int,
    provider: LLMProvider,
    model: str,
    pruning_settings: PruningSettings | Mapping[str, Any] | None = None,
    trigger_ratio: float | None = None,
    max_tokens: int | None = None,
) -> CompactionOutcome:
    """Prune *messages*; summarize the dropped prefix when past the trigger.

    Never raises for summarization problems: the outcome then carries the
    plain prune result and no summary.
    """
    prune_result = prune_context_messages(messages, context_window_tokens, pruning_settings)
    if not prune_result.dropped_messages or not should_trigger_compaction(
        messages, context_window_tokens, trigger_ratio
    ):
        return CompactionOutcome(prune_result=prune_result)

    try:
        summary = await build_compaction_summary(
            provider,
            model,
            prune_result.dropped_messages,
            context_window_tokens,
            max_tokens=max_tokens,
        )
    except Exception as exc:
        logger.warning(
            "compaction failed, falling back to pruning (%d messages dropped): %s",
            len(prune_result.dropped_messages),
            exc,
        )
        return CompactionOutcome(prune_result=prune_result)

    logger.info(
        "compacted %d messages into a %d-char summary",
        len(prune_result.dropped_messages),
        len(summary),
    )
    return CompactionOutcome(
        prune_result=prune_result,
        summary=summary,
        summary_message=build_summary_message(summary),
    )
