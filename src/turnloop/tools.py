"""Tool interface — what the run loop can execute on the model's behalf."""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from .provider import ToolSchema

# ---------------------------------------------------------------------------
# Memory collaborator
# ---------------------------------------------------------------------------


@dataclass
class MemoryEntry:
    """A stored memory returned by a search."""

    content: str
    source: str = "agent"
    tags: list[str] = field(default_factory=list)
    score: float = 0.0


class MemorySearch(Protocol):
    """Long-term memory store consumed by the agent."""

    async def search(self, query: str, limit: int = 5) -> list[MemoryEntry]: ...

    async def add(self, content: str, source: str, tags: list[str]) -> None: ...


# ---------------------------------------------------------------------------
# ToolContext
# ---------------------------------------------------------------------------


SubagentCleanup = Literal["keep", "delete"]


@dataclass
class SpawnedSubagent:
    run_id: str
    session_key: str


SpawnSubagentFn = Callable[..., Awaitable[SpawnedSubagent]]


@dataclass
class ToolContext:
    """Per-run context handed to every tool invocation."""

    workspace_dir: str
    session_key: str
    session_id: str
    agent_id: str
    memory: MemorySearch | None = None
    on_memory_search: Callable[[list[MemoryEntry]], None] | None = None
    spawn_subagent: SpawnSubagentFn | None = None

    def report_memory_search(self, results: list[MemoryEntry]) -> None:
        if self.on_memory_search is not None:
            self.on_memory_search(results)


# ---------------------------------------------------------------------------
# Tool ABC
# ---------------------------------------------------------------------------


class Tool(ABC):
    """A named capability the model may request.

    Subclasses set ``name`` and ``description``, optionally ``input_schema``
    (an empty object schema when unset), and implement :meth:`execute`. A
    raised exception is reported back to the model as a ``Tool error: ...``
    result, never as a run failure.
    """

    name: str
    description: str = ""
    input_schema: dict[str, Any] | None = None

    @abstractmethod
    async def execute(self, tool_input: dict[str, Any], ctx: ToolContext) -> str:
        """Run the tool and return its textual result."""

    def schema(self) -> ToolSchema:
        return ToolSchema(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema or _empty_object_schema(),
        )


def _empty_object_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


ToolFn = Callable[[dict[str, Any], ToolContext], "str | Awaitable[str]"]


class FunctionTool(Tool):
    """Adapts a plain function into a :class:`Tool`.

    Coroutine functions are awaited directly; synchronous functions run in a
    worker thread so they do not block the event loop.
    """

    def __init__(
        self,
        name: str,
        fn: ToolFn,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.input_schema = input_schema or _empty_object_schema()
        self._fn = fn

    async def execute(self, tool_input: dict[str, Any], ctx: ToolContext) -> str:
        if inspect.iscoroutinefunction(self._fn):
            result = await self._fn(tool_input, ctx)
        else:
            result = await asyncio.to_thread(self._fn, tool_input, ctx)
            if inspect.isawaitable(result):
                result = await result
        return result if isinstance(result, str) else str(result)

    def __repr__(self) -> str:
        return f"FunctionTool(name={self.name!r})"


def tool_schemas(tools: Sequence[Tool]) -> list[ToolSchema]:
    return [t.schema() for t in tools]


# ---------------------------------------------------------------------------
# Built-in memory tool
# ---------------------------------------------------------------------------

MEMORY_SEARCH_TOOL = "memory_search"


async def _memory_search(tool_input: dict[str, Any], ctx: ToolContext) -> str:
    if ctx.memory is None:
        return "Memory is disabled."
    query = str(tool_input.get("query", "")).strip()
    if not query:
        return "No query given."
    limit = int(tool_input.get("limit") or 5)
    results = await ctx.memory.search(query, limit)
    ctx.report_memory_search(results)
    if not results:
        return "No matching memories."
    return "\n".join(
        f"{i}. score={r.score:.2f} tags={','.join(r.tags) or '-'}\n   {r.content}"
        for i, r in enumerate(results, start=1)
    )


def memory_search_tool() -> FunctionTool:
    """Keyword search over the agent's long-term memory."""
    return FunctionTool(
        MEMORY_SEARCH_TOOL,
        _memory_search,
        description="Search long-term memory for prior work, decisions, preferences or todos.",
        input_schema={
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "limit": {"type": "integer", "minimum": 1},
            },
            "required": ["query"],
        },
    )


# ---------------------------------------------------------------------------
# Built-in subagent tool
# ---------------------------------------------------------------------------

SESSIONS_SPAWN_TOOL = "sessions_spawn"


async def _sessions_spawn(tool_input: dict[str, Any], ctx: ToolContext) -> str:
    if ctx.spawn_subagent is None:
        return "Subagents are disabled."
    cleanup = "delete" if tool_input.get("cleanup") == "delete" else "keep"
    spawned = await ctx.spawn_subagent(
        task=str(tool_input.get("task", "")),
        label=tool_input.get("label"),
        cleanup=cleanup,
    )
    return f"Subagent started: run_id={spawned.run_id} session_key={spawned.session_key}"


def sessions_spawn_tool() -> FunctionTool:
    """Hand a task to a background subagent; its summary arrives later."""
    return FunctionTool(
        SESSIONS_SPAWN_TOOL,
        _sessions_spawn,
        description="Start a background subagent for a task; its summary is posted back.",
        input_schema={
            "type": "object",
            "properties": {
                "task": {"type": "string"},
                "label": {"type": "string"},
                "cleanup": {"type": "string", "enum": ["keep", "delete"]},
            },
            "required": ["task"],
        },
    )
