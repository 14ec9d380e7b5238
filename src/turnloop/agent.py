"""Agent run loop — bounded provider/tool turns over a persisted session.

One call to :meth:`Agent.run` is one *run*:

    start -> prepare_context -> invoke -> end
                   ^                 |
                   +-- execute_tools <+

Runs for the same session key are serialized through that session's lane,
and every run also occupies a slot of the global lane, so at most
``global_concurrency`` runs execute at once.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from .config import AgentConfig
from .context_window import (
    CompactionOutcome,
    compact_history_if_needed,
    prune_context_messages,
)
from .errors import (
    ProviderError,
    SubagentError,
    ToolExecutionError,
    TurnloopError,
    UnknownToolError,
)
from .events import EventBus, EventStream, Listener
from .fsm import RunPhase, RunState, RunUsage
from .lanes import LaneScheduler, resolve_global_lane, resolve_session_lane
from .messages import ContentBlock, Message, TextBlock, ToolResultBlock, ToolUseBlock
from .provider import (
    LLMProvider,
    MessageComplete,
    ProviderRequest,
    ProviderResponse,
    TextDelta,
)
from .session_key import (
    build_subagent_session_key,
    is_subagent_session_key,
    normalize_agent_id,
    resolve_agent_id_from_session_key,
    resolve_session_key,
)
from .session_store import SessionStats, SessionStore
from .skills import SkillMatcher, apply_skill
from .subagents import SUBAGENT_SUMMARY_PREFIX, SubagentTracker, truncate_summary
from .telemetry import get_tracer, trace_agent_run, trace_agent_turn, trace_tool_call
from .tool_policy import build_sandbox_tool_policy, filter_tools_by_policy, merge_tool_policies
from .tools import (
    MEMORY_SEARCH_TOOL,
    MemoryEntry,
    MemorySearch,
    SpawnedSubagent,
    Tool,
    ToolContext,
    tool_schemas,
)

logger = logging.getLogger(__name__)

TOOL_OUTPUT_EVENT_CHARS = 500
MEMORY_ANSWER_CHARS = 500
_MEMORY_TOOLS = frozenset({MEMORY_SEARCH_TOOL, "memory_get"})

MEMORY_PROMPT = (
    "\n\n## Memory\nBefore answering anything about prior work, decisions, preferences,"
    " or todos: search with memory_search first."
)


@dataclass
class RunResult:
    run_id: str
    text: str
    turns: int
    tool_calls: int
    usage: RunUsage = field(default_factory=RunUsage)
    memories_used: int = 0
    skill_triggered: str | None = None


@dataclass
class AgentStatus:
    model: str
    agent_id: str
    context_tokens: int
    last_usage: RunUsage | None = None
    session_key: str | None = None
    session: SessionStats | None = None


def _truncate_output(text: str) -> str:
    if len(text) > TOOL_OUTPUT_EVENT_CHARS:
        return f"{text[:TOOL_OUTPUT_EVENT_CHARS]}..."
    return text


class Agent:
    """Drives runs against one provider with one tool set.

    Collaborators (session store, lane scheduler, event bus, memory, skill
    matcher, subagent tracker) are injected; defaults are created when
    omitted.
    """

    def __init__(
        self,
        provider: LLMProvider,
        config: AgentConfig | None = None,
        tools: Sequence[Tool] | None = None,
        *,
        sessions: SessionStore | None = None,
        lanes: LaneScheduler | None = None,
        events: EventBus | None = None,
        memory: MemorySearch | None = None,
        skills: SkillMatcher | None = None,
        subagents: SubagentTracker | None = None,
    ) -> None:
        self.config = config or AgentConfig()
        self.provider = provider
        self.agent_id = normalize_agent_id(self.config.agent_id)
        self.max_turns = max(1, self.config.max_turns)
        self.context_tokens = max(1, int(self.config.context_tokens))
        self.sessions = sessions or SessionStore(self.config.session_dir)
        self.lanes = lanes or LaneScheduler()
        self.lanes.set_concurrency(resolve_global_lane(), self.config.global_concurrency)
        self.events = events or EventBus()
        self.memory = memory
        self.skills = skills
        self.subagents = subagents or SubagentTracker()
        self.last_usage: RunUsage | None = None
        self._tools: list[Tool] = list(tools or [])

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        session_id_or_key: str,
        user_message: str,
        observer: Listener | None = None,
    ) -> RunResult:
        """Run one user message to completion and return the final answer."""
        key = self._resolve_key(session_id_or_key)
        run_id = str(uuid.uuid4())
        unsubscribe = None
        if observer is not None:
            # Only this run and the subagents it spawns; other runs queued on
            # the same session are not forwarded.
            unsubscribe = self.events.subscribe(
                lambda event: observer(event)
                if event.run_id == run_id or event.data.get("parent_run_id") == run_id
                else None
            )
        try:
            return await self.lanes.enqueue(
                resolve_session_lane(key),
                lambda: self.lanes.enqueue(
                    resolve_global_lane(),
                    lambda: self._execute_run(run_id, key, session_id_or_key, user_message),
                ),
            )
        finally:
            if unsubscribe is not None:
                unsubscribe()

    async def reset(self, session_id_or_key: str) -> None:
        await self.sessions.clear(self._resolve_key(session_id_or_key))

    def get_history(self, session_id_or_key: str) -> list[Message]:
        return self.sessions.get(self._resolve_key(session_id_or_key))

    async def list_sessions(self) -> list[str]:
        return await self.sessions.list()

    async def get_status(self, session_id_or_key: str | None = None) -> AgentStatus:
        status = AgentStatus(
            model=self.config.model,
            agent_id=self.agent_id,
            context_tokens=self.context_tokens,
            last_usage=self.last_usage,
        )
        if session_id_or_key:
            status.session_key = self._resolve_key(session_id_or_key)
            status.session = await self.sessions.get_stats(status.session_key)
        return status

    def set_tools(self, tools: Sequence[Tool]) -> None:
        self._tools = list(tools)

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools)

    async def aclose(self, timeout: float | None = None) -> None:
        """Wait for background subagents; cancel any still running at *timeout*."""
        if not await self.subagents.join(timeout):
            cancelled = await self.subagents.cancel_all()
            logger.warning("cancelled %d subagent(s) still running at close", cancelled)

    # ------------------------------------------------------------------
    # Run assembly
    # ------------------------------------------------------------------

    def _resolve_key(self, session_id_or_key: str) -> str:
        return resolve_session_key(self.agent_id, session_id_or_key, session_id_or_key)

    @property
    def _memory_enabled(self) -> bool:
        return self.config.enable_memory and self.memory is not None

    def resolve_tools_for_run(self) -> list[Tool]:
        """Apply memory switch, tool policy and sandbox policy to the tool set."""
        tools = self._tools
        if not self._memory_enabled:
            tools = [t for t in tools if t.name not in _MEMORY_TOOLS]
        policy = merge_tool_policies(
            self.config.tool_policy, build_sandbox_tool_policy(self.config.sandbox)
        )
        return filter_tools_by_policy(tools, policy)

    def build_system_prompt(self, tools: Sequence[Tool]) -> str:
        prompt = self.config.system_prompt
        if self.config.enable_skills and self.skills is not None:
            build_skills_prompt = getattr(self.skills, "build_skills_prompt", None)
            if callable(build_skills_prompt):
                prompt += build_skills_prompt()
        if self._memory_enabled and any(t.name in _MEMORY_TOOLS for t in tools):
            prompt += MEMORY_PROMPT
        sandbox = self.config.sandbox
        if sandbox.enabled:
            write_hint = "writable" if sandbox.allow_write else "read-only"
            exec_hint = "allowed" if sandbox.allow_exec else "disabled"
            prompt += (
                "\n\n## Sandbox\nSandbox mode active: workspace is "
                f"{write_hint}, command execution is {exec_hint}."
            )
        return prompt

    async def _apply_skills(self, user_message: str) -> tuple[str, str | None]:
        if not self.config.enable_skills or self.skills is None:
            return user_message, None
        match = await self.skills.match(user_message)
        if match is None:
            return user_message, None
        logger.info("skill %s triggered by %r", match.skill_id, match.matched_trigger)
        return apply_skill(user_message, match), match.skill_id

    def _emit(
        self, run_id: str, stream: EventStream, key: str, data: dict[str, Any]
    ) -> None:
        self.events.emit(run_id, stream, data, session_key=key, agent_id=self.agent_id)

    # ------------------------------------------------------------------
    # The run
    # ------------------------------------------------------------------

    async def _execute_run(
        self, run_id: str, key: str, session_id: str, user_message: str
    ) -> RunResult:
        started_at = time.time()
        state = RunState(run_id=run_id, session_key=key)
        memories_used = 0

        def on_memory_search(results: list[MemoryEntry]) -> None:
            nonlocal memories_used
            memories_used += len(results)

        self._emit(
            run_id,
            EventStream.LIFECYCLE,
            key,
            {"phase": "start", "started_at": started_at, "model": self.config.model},
        )
        with trace_agent_run(run_id, key):
            try:
                history = await self.sessions.load(key)
                working = list(history)

                ctx = ToolContext(
                    workspace_dir=self.config.workspace_dir,
                    session_key=key,
                    session_id=session_id,
                    agent_id=resolve_agent_id_from_session_key(key),
                    memory=self.memory if self._memory_enabled else None,
                    on_memory_search=on_memory_search,
                    spawn_subagent=lambda task, label=None, cleanup="keep": self._spawn_subagent(
                        key, run_id, task, label, cleanup
                    ),
                )

                processed, skill_triggered = await self._apply_skills(user_message)
                user_msg = Message.user(processed)
                await self.sessions.append(key, user_msg)
                working.append(user_msg)

                tools_for_run = self.resolve_tools_for_run()
                tools_by_name: dict[str, Tool] = {}
                for tool in tools_for_run:
                    tools_by_name.setdefault(tool.name, tool)
                schemas = tool_schemas(tools_for_run)
                system_prompt = self.build_system_prompt(tools_for_run)

                compaction: CompactionOutcome | None = None
                final_text = ""

                while state.turns < self.max_turns:
                    state = state.transition(RunPhase.PREPARE_CONTEXT)
                    state.turns += 1
                    turn = state.turns
                    self._emit(run_id, EventStream.TURN, key, {"phase": "start", "turn": turn})

                    with trace_agent_turn(turn):
                        if compaction is None:
                            compaction = await self._compact(working, run_id, key)
                            view = compaction.messages
                        else:
                            view = self._prune_view(working, compaction)

                        state = state.transition(RunPhase.INVOKE)
                        request = ProviderRequest(
                            model=self.config.model,
                            system_prompt=system_prompt,
                            cache_system_prompt=True,
                            tools=schemas,
                            messages=view,
                            max_tokens=self.config.max_tokens,
                        )
                        response = await self._invoke(request, run_id, key)
                        state.usage.add(response.usage)

                        content: list[ContentBlock] = []
                        calls: list[ToolUseBlock] = []
                        for block in response.content:
                            if isinstance(block, ToolUseBlock):
                                calls.append(block)
                                content.append(block)
                                self._emit(
                                    run_id,
                                    EventStream.TOOL,
                                    key,
                                    {"phase": "start", "name": block.name, "input": block.input},
                                )
                            elif isinstance(block, TextBlock):
                                final_text = block.text
                                content.append(block)
                                self._emit(
                                    run_id,
                                    EventStream.ASSISTANT,
                                    key,
                                    {"text": block.text, "final": True},
                                )

                        assistant_msg = Message.assistant(content)
                        await self.sessions.append(key, assistant_msg)
                        working.append(assistant_msg)
                        self._emit(run_id, EventStream.TURN, key, {"phase": "end", "turn": turn})

                        if not calls:
                            state = state.transition(RunPhase.END)
                            break

                        state = state.transition(RunPhase.EXECUTE_TOOLS)
                        state.tool_calls += len(calls)
                        outputs = await asyncio.gather(
                            *(self._execute_tool(c, tools_by_name, ctx, run_id, key) for c in calls)
                        )
                        result_msg = Message.user(
                            [
                                ToolResultBlock(tool_use_id=c.id, content=out)
                                for c, out in zip(calls, outputs, strict=True)
                            ]
                        )
                        await self.sessions.append(key, result_msg)
                        working.append(result_msg)
                else:
                    logger.info("run %s hit max_turns=%d with tool calls pending", run_id, self.max_turns)
                    state = state.transition(RunPhase.END)

                await self._remember(key, user_message, final_text)

                usage = state.usage.model_copy()
                self.last_usage = usage
                self._emit(
                    run_id,
                    EventStream.LIFECYCLE,
                    key,
                    {
                        "phase": "end",
                        "started_at": started_at,
                        "ended_at": time.time(),
                        "turns": state.turns,
                        "tool_calls": state.tool_calls,
                        "usage": usage.model_dump(),
                    },
                )
                return RunResult(
                    run_id=run_id,
                    text=final_text,
                    turns=state.turns,
                    tool_calls=state.tool_calls,
                    usage=usage,
                    memories_used=memories_used,
                    skill_triggered=skill_triggered,
                )
            except Exception as exc:
                if not state.finished:
                    state = state.transition(RunPhase.ERROR)
                logger.error("run %s failed at turn %d: %s", run_id, state.turns, exc)
                self._emit(
                    run_id,
                    EventStream.LIFECYCLE,
                    key,
                    {
                        "phase": "error",
                        "started_at": started_at,
                        "ended_at": time.time(),
                        "error": str(exc),
                    },
                )
                raise

    # ------------------------------------------------------------------
    # Turn steps
    # ------------------------------------------------------------------

    async def _compact(self, working: list[Message], run_id: str, key: str) -> CompactionOutcome:
        outcome = await compact_history_if_needed(
            working,
            self.context_tokens,
            self.provider,
            self.config.model,
            pruning_settings=self.config.pruning,
            trigger_ratio=self.config.compaction_trigger_ratio,
            max_tokens=self.config.summary_max_tokens,
        )
        if outcome.summary is not None:
            data = {
                "phase": "compaction",
                "summary_chars": len(outcome.summary),
                "dropped_messages": len(outcome.prune_result.dropped_messages),
            }
            self._emit(run_id, EventStream.LIFECYCLE, key, data)
            get_tracer().record_event("agent/compaction", data)
        return outcome

    def _prune_view(self, working: list[Message], compaction: CompactionOutcome) -> list[Message]:
        pruned = prune_context_messages(working, self.context_tokens, self.config.pruning)
        if compaction.summary_message is None:
            return pruned.messages
        return [compaction.summary_message, *pruned.messages]

    async def _invoke(self, request: ProviderRequest, run_id: str, key: str) -> ProviderResponse:
        final: ProviderResponse | None = None
        try:
            async for event in self.provider.stream(request):
                if isinstance(event, TextDelta):
                    self._emit(run_id, EventStream.ASSISTANT, key, {"delta": event.text})
                elif isinstance(event, MessageComplete):
                    final = event.response
        except TurnloopError:
            raise
        except Exception as exc:
            raise ProviderError(str(exc), provider=self.provider.name()) from exc
        if final is None:
            raise ProviderError(
                "stream ended without a completed message", provider=self.provider.name()
            )
        return final

    async def _execute_tool(
        self,
        call: ToolUseBlock,
        tools_by_name: dict[str, Tool],
        ctx: ToolContext,
        run_id: str,
        key: str,
    ) -> str:
        tool = tools_by_name.get(call.name)
        with trace_tool_call(call.name):
            if tool is None:
                logger.warning("run %s requested unknown tool %r", run_id, call.name)
                result = str(UnknownToolError(call.name))
            else:
                try:
                    result = await tool.execute(call.input, ctx)
                except Exception as exc:
                    error = ToolExecutionError(call.name, exc)
                    logger.warning("tool %s failed: %s", call.name, exc)
                    result = str(error)
        self._emit(
            run_id,
            EventStream.TOOL,
            key,
            {"phase": "end", "name": call.name, "output": _truncate_output(result)},
        )
        return result

    async def _remember(self, key: str, user_message: str, final_text: str) -> None:
        memory = self.memory
        if memory is None or not self.config.enable_memory or not final_text:
            return
        try:
            await memory.add(
                f"Q: {user_message}\nA: {final_text[:MEMORY_ANSWER_CHARS]}", "agent", [key]
            )
        except Exception as exc:
            logger.warning("failed to store run in memory for %s: %s", key, exc)

    # ------------------------------------------------------------------
    # Subagents
    # ------------------------------------------------------------------

    async def _spawn_subagent(
        self,
        parent_key: str,
        parent_run_id: str,
        task: str,
        label: str | None = None,
        cleanup: str = "keep",
    ) -> SpawnedSubagent:
        if is_subagent_session_key(parent_key):
            raise SubagentError("subagent sessions cannot spawn subagents")
        child_key = build_subagent_session_key(self.agent_id)
        self.subagents.spawn(
            self._run_subagent(parent_key, parent_run_id, child_key, task, label, cleanup),
            session_key=child_key,
            parent_session_key=parent_key,
            task=task,
            label=label,
            cleanup=cleanup,
        )
        return SpawnedSubagent(run_id=child_key, session_key=child_key)

    async def _run_subagent(
        self,
        parent_key: str,
        parent_run_id: str,
        child_key: str,
        task: str,
        label: str | None,
        cleanup: str,
    ) -> None:
        base = {
            "parent_run_id": parent_run_id,
            "child_session_key": child_key,
            "label": label,
            "task": task,
        }
        try:
            result = await self.run(child_key, task)
        except Exception as exc:
            self._emit(
                child_key, EventStream.SUBAGENT, parent_key, {"phase": "error", **base, "error": str(exc)}
            )
            return

        summary = truncate_summary(result.text)
        self._emit(
            result.run_id, EventStream.SUBAGENT, parent_key, {"phase": "summary", **base, "summary": summary}
        )
        summary_msg = Message.user(f"{SUBAGENT_SUMMARY_PREFIX}\n{summary}")
        # Through the parent's lane so the note never lands inside a running turn.
        await self.lanes.enqueue(
            resolve_session_lane(parent_key),
            lambda: self.sessions.append(parent_key, summary_msg),
        )
        if cleanup == "delete":
            await self.sessions.clear(child_key)
