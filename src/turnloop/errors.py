"""Exception hierarchy shared across turnloop modules."""

from __future__ import annotations


class TurnloopError(Exception):
    """Base class for every error raised by turnloop."""


class ProviderError(TurnloopError):
    """Raised when an LLM provider invocation fails. Fatal to the run."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.provider = provider
        super().__init__(message)


class ToolExecutionError(TurnloopError):
    """A tool raised while executing. Recovered into a result string."""

    def __init__(self, tool_name: str, cause: BaseException) -> None:
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(f"Tool error: {cause}")


class UnknownToolError(TurnloopError):
    """The model requested a tool that is not in the run's tool set."""

    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Unknown tool: {tool_name}")


class SummarizationError(TurnloopError):
    """Compaction summary could not be produced."""


class StorageError(TurnloopError):
    """Session persistence failed."""

    def __init__(self, message: str, session_key: str | None = None) -> None:
        self.session_key = session_key
        super().__init__(message)


class SubagentError(TurnloopError):
    """A subagent could not be spawned."""
