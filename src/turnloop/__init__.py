"""turnloop — lane-scheduled conversational agent runtime."""

from __future__ import annotations

__version__ = "0.1.0"

from .agent import Agent, AgentStatus, RunResult
from .anthropic_provider import AnthropicProvider
from .config import AgentConfig
from .context_window import (
    CompactionOutcome,
    PruneResult,
    PruningSettings,
    SoftTrimSettings,
    compact_history_if_needed,
    estimate_message_tokens,
    estimate_messages_tokens,
    prune_context_messages,
)
from .errors import (
    ProviderError,
    StorageError,
    SubagentError,
    SummarizationError,
    ToolExecutionError,
    TurnloopError,
    UnknownToolError,
)
from .events import AgentEvent, EventBus, EventChannel, EventStream
from .fsm import RunPhase, RunState, RunUsage
from .lanes import LaneScheduler, resolve_global_lane, resolve_session_lane
from .messages import Message, MessageRole, TextBlock, ToolResultBlock, ToolUseBlock
from .provider import (
    LLMProvider,
    MessageComplete,
    ProviderCapabilities,
    ProviderRequest,
    ProviderResponse,
    ScriptedLLMProvider,
    StubLLMProvider,
    TextDelta,
    TokenUsage,
    ToolSchema,
)
from .provider_factory import ProviderFactory
from .session_key import resolve_session_key
from .session_store import SessionStats, SessionStore
from .skills import Skill, SkillMatch, SkillMatcher, StaticSkillMatcher
from .subagents import SubagentHandle, SubagentTracker
from .telemetry import TelemetryConfig, TurnloopTracer, configure_tracing
from .tool_policy import (
    SandboxSettings,
    ToolPolicy,
    filter_tools_by_policy,
    is_tool_allowed,
    merge_tool_policies,
)
from .tools import (
    FunctionTool,
    MemoryEntry,
    MemorySearch,
    Tool,
    ToolContext,
    memory_search_tool,
    sessions_spawn_tool,
)

__all__ = [
    "Agent",
    "AgentConfig",
    "AgentEvent",
    "AgentStatus",
    "AnthropicProvider",
    "CompactionOutcome",
    "EventBus",
    "EventChannel",
    "EventStream",
    "FunctionTool",
    "LLMProvider",
    "LaneScheduler",
    "MemoryEntry",
    "MemorySearch",
    "Message",
    "MessageComplete",
    "MessageRole",
    "ProviderCapabilities",
    "ProviderError",
    "ProviderFactory",
    "ProviderRequest",
    "ProviderResponse",
    "PruneResult",
    "PruningSettings",
    "RunPhase",
    "RunResult",
    "RunState",
    "RunUsage",
    "SandboxSettings",
    "ScriptedLLMProvider",
    "SessionStats",
    "SessionStore",
    "Skill",
    "SkillMatch",
    "SkillMatcher",
    "SoftTrimSettings",
    "StaticSkillMatcher",
    "StorageError",
    "StubLLMProvider",
    "SubagentError",
    "SubagentHandle",
    "SubagentTracker",
    "SummarizationError",
    "TelemetryConfig",
    "TextBlock",
    "TextDelta",
    "TokenUsage",
    "Tool",
    "ToolContext",
    "ToolExecutionError",
    "ToolPolicy",
    "ToolResultBlock",
    "ToolSchema",
    "ToolUseBlock",
    "TurnloopError",
    "TurnloopTracer",
    "UnknownToolError",
    "compact_history_if_needed",
    "configure_tracing",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    "filter_tools_by_policy",
    "is_tool_allowed",
    "memory_search_tool",
    "merge_tool_policies",
    "prune_context_messages",
    "resolve_global_lane",
    "resolve_session_key",
    "resolve_session_lane",
    "sessions_spawn_tool",
]
