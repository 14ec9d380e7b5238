"""Context window management — token estimates, pruning and compaction."""

from .compaction import (
    CompactionOutcome,
    build_compaction_summary,
    chunk_messages_by_max_tokens,
    compact_history_if_needed,
    compute_adaptive_chunk_ratio,
    should_trigger_compaction,
    split_messages_by_token_share,
)
from .pruning import (
    PruneResult,
    PruningSettings,
    SoftTrimSettings,
    prune_context_messages,
    resolve_pruning_settings,
)
from .tokens import (
    CHARS_PER_TOKEN_ESTIMATE,
    estimate_message_chars,
    estimate_message_tokens,
    estimate_messages_chars,
    estimate_messages_tokens,
)

DEFAULT_CONTEXT_WINDOW_TOKENS = 200_000

__all__ = [
    "CHARS_PER_TOKEN_ESTIMATE",
    "DEFAULT_CONTEXT_WINDOW_TOKENS",
    "CompactionOutcome",
    "PruneResult",
    "PruningSettings",
    "SoftTrimSettings",
    "build_compaction_summary",
    "chunk_messages_by_max_tokens",
    "compact_history_if_needed",
    "compute_adaptive_chunk_ratio",
    "estimate_message_chars",
    "estimate_message_tokens",
    "estimate_messages_chars",
    "estimate_messages_tokens",
    "prune_context_messages",
    "resolve_pruning_settings",
    "should_trigger_compaction",
    "split_messages_by_token_share",
]
