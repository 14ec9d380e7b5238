"""Tests for Agent — the run loop end to end with scripted providers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from turnloop.agent import Agent
from turnloop.config import AgentConfig
from turnloop.context_window.compaction import SUMMARY_PREFIX, SUMMARY_SYSTEM_PROMPT
from turnloop.errors import ProviderError
from turnloop.events import AgentEvent, EventStream
from turnloop.messages import Message, MessageRole
from turnloop.provider import (
    LLMProvider,
    MessageComplete,
    ProviderCapabilities,
    ProviderRequest,
    ProviderResponse,
    ScriptedLLMProvider,
    StreamEvent,
    TokenUsage,
    text_response,
    tool_use_response,
)
from turnloop.session_store import SessionStore
from turnloop.skills import Skill, StaticSkillMatcher
from turnloop.subagents import SUBAGENT_SUMMARY_PREFIX
from turnloop.tool_policy import SandboxSettings, ToolPolicy
from turnloop.tools import (
    FunctionTool,
    MemoryEntry,
    ToolContext,
    memory_search_tool,
    sessions_spawn_tool,
)

MAIN_KEY = "agent:main:main"


# ---------------------------------------------------------------------------
# Fixtures and fakes
# ---------------------------------------------------------------------------


class FakeMemory:
    def __init__(self, entries: list[MemoryEntry] | None = None) -> None:
        self.entries = entries or []

    async def search(self, query: str, limit: int = 5) -> list[MemoryEntry]:
        return [e for e in self.entries if query.lower() in e.content.lower()][:limit]

    async def add(self, content: str, source: str, tags: list[str]) -> None:
        self.entries.append(MemoryEntry(content=content, source=source, tags=tags))


class BrokenMemory(FakeMemory):
    async def add(self, content: str, source: str, tags: list[str]) -> None:
        raise OSError("disk full")


class SummaryRoutingProvider(LLMProvider):
    """Answers summary requests itself; run requests come from a script."""

    def __init__(self, script: list[ProviderResponse], summary: str | Exception) -> None:
        self.run_provider = ScriptedLLMProvider(script)
        self.summary = summary
        self.summary_requests: list[ProviderRequest] = []

    def name(self) -> str:
        return "routing"

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities()

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamEvent]:
        if request.system_prompt == SUMMARY_SYSTEM_PROMPT:
            self.summary_requests.append(request)
            if isinstance(self.summary, Exception):
                raise self.summary
            yield MessageComplete(response=text_response(self.summary))
            return
        async for event in self.run_provider.stream(request):
            yield event


async def _echo(tool_input: dict[str, Any], ctx: ToolContext) -> str:
    return f"echo:{tool_input.get('text', '')}"


async def _fail(tool_input: dict[str, Any], ctx: ToolContext) -> str:
    raise ValueError("bad input")


ECHO = FunctionTool("echo", _echo, description="Echo text back")
FAIL = FunctionTool("fail", _fail, description="Always fails")


@pytest.fixture
def config(tmp_path: Path) -> AgentConfig:
    return AgentConfig(session_dir=str(tmp_path / "sessions"), workspace_dir=str(tmp_path))


def _agent(provider: LLMProvider, config: AgentConfig, **kwargs: Any) -> Agent:
    return Agent(provider, config, **kwargs)


def _roles(messages: list[Message]) -> list[str]:
    return [str(m.role) for m in messages]


# ---------------------------------------------------------------------------
# Basic runs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_single_turn_text(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider([text_response("Hello!")])
    agent = _agent(provider, config)

    result = await agent.run("main", "hi")

    assert result.text == "Hello!"
    assert result.turns == 1
    assert result.tool_calls == 0
    history = agent.get_history("main")
    assert _roles(history) == ["user", "assistant"]
    assert history[0].content == "hi"
    assert history[1].text_blocks()[0].text == "Hello!"

    request = provider.requests[0]
    assert request.model == config.model
    assert request.system_prompt == config.system_prompt
    assert request.cache_system_prompt
    assert request.messages[-1].content == "hi"


@pytest.mark.asyncio
async def test_tool_loop_persists_results(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider([
        tool_use_response([("t1", "echo", {"text": "ping"})], text="Checking."),
        text_response("pong received"),
    ])
    agent = _agent(provider, config, tools=[ECHO])

    result = await agent.run("main", "ping please")

    assert result.text == "pong received"
    assert result.turns == 2
    assert result.tool_calls == 1
    history = agent.get_history("main")
    assert _roles(history) == ["user", "assistant", "user", "assistant"]
    tool_result = history[2].tool_results()[0]
    assert tool_result.tool_use_id == "t1"
    assert tool_result.content == "echo:ping"
    assert provider.requests[1].messages[-1].tool_results()[0].content == "echo:ping"
    assert [t.name for t in provider.requests[0].tools] == ["echo"]


@pytest.mark.asyncio
async def test_parallel_tool_calls_keep_request_order(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider([
        tool_use_response([("a", "echo", {"text": "1"}), ("b", "echo", {"text": "2"})]),
        text_response("both done"),
    ])
    agent = _agent(provider, config, tools=[ECHO])

    result = await agent.run("main", "go")

    assert result.tool_calls == 2
    results = agent.get_history("main")[2].tool_results()
    assert [(r.tool_use_id, r.content) for r in results] == [("a", "echo:1"), ("b", "echo:2")]


@pytest.mark.asyncio
async def test_final_text_from_last_turn_within_max_turns(config: AgentConfig) -> None:
    config.max_turns = 3
    provider = ScriptedLLMProvider([
        tool_use_response([("t1", "echo", {"text": "a"})], text="first"),
        tool_use_response([("t2", "echo", {"text": "b"})], text="second"),
        text_response("third"),
    ])
    agent = _agent(provider, config, tools=[ECHO])

    result = await agent.run("main", "go")

    assert result.turns == 3
    assert result.tool_calls == 2
    assert result.text == "third"


@pytest.mark.asyncio
async def test_max_turns_stops_with_tool_calls_pending(config: AgentConfig) -> None:
    config.max_turns = 2
    provider = ScriptedLLMProvider([
        tool_use_response([("t1", "echo", {"text": "a"})]),
        tool_use_response([("t2", "echo", {"text": "b"})]),
        text_response("never requested"),
    ])
    agent = _agent(provider, config, tools=[ECHO])

    result = await agent.run("main", "go")

    assert result.turns == 2
    assert result.tool_calls == 2
    assert result.text == ""
    assert provider.remaining == 1
    # The last tool results are still persisted.
    assert agent.get_history("main")[-1].tool_results()[0].content == "echo:b"


@pytest.mark.asyncio
async def test_max_turns_below_one_still_runs_once(config: AgentConfig) -> None:
    config.max_turns = 0
    agent = _agent(ScriptedLLMProvider([text_response("ok")]), config)
    assert (await agent.run("main", "hi")).turns == 1


# ---------------------------------------------------------------------------
# Tool failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_to_model(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider([
        tool_use_response([("t1", "nope", {})]),
        text_response("sorry"),
    ])
    agent = _agent(provider, config, tools=[ECHO])

    result = await agent.run("main", "go")

    assert result.text == "sorry"
    assert agent.get_history("main")[2].tool_results()[0].content == "Unknown tool: nope"


@pytest.mark.asyncio
async def test_tool_exception_becomes_error_result(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider([
        tool_use_response([("t1", "fail", {})]),
        text_response("recovered"),
    ])
    agent = _agent(provider, config, tools=[FAIL])

    result = await agent.run("main", "go")

    assert result.text == "recovered"
    assert agent.get_history("main")[2].tool_results()[0].content == "Tool error: bad input"


# ---------------------------------------------------------------------------
# Provider failures and events
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_provider_error_fails_run_with_error_event(config: AgentConfig) -> None:
    agent = _agent(ScriptedLLMProvider([ProviderError("service down")]), config)
    events: list[AgentEvent] = []

    with pytest.raises(ProviderError, match="service down"):
        await agent.run("main", "hi", observer=events.append)

    last = events[-1]
    assert last.stream == EventStream.LIFECYCLE
    assert last.phase == "error"
    assert "service down" in last.data["error"]
    # The user message was persisted before the failure.
    assert _roles(agent.get_history("main")) == ["user"]


@pytest.mark.asyncio
async def test_unexpected_provider_exception_is_wrapped(config: AgentConfig) -> None:
    agent = _agent(ScriptedLLMProvider([RuntimeError("socket closed")]), config)
    with pytest.raises(ProviderError, match="socket closed") as info:
        await agent.run("main", "hi")
    assert info.value.provider == "scripted"


@pytest.mark.asyncio
async def test_observer_sees_ordered_run_events(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider([
        tool_use_response([("t1", "echo", {"text": "x"})], text="Using echo."),
        text_response("Done."),
    ])
    agent = _agent(provider, config, tools=[ECHO])
    events: list[AgentEvent] = []

    result = await agent.run("main", "go", observer=events.append)

    assert [e.seq for e in events] == list(range(1, len(events) + 1))
    assert {e.run_id for e in events} == {result.run_id}
    assert all(e.session_key == MAIN_KEY for e in events)
    assert (events[0].stream, events[0].phase) == (EventStream.LIFECYCLE, "start")
    assert (events[-1].stream, events[-1].phase) == (EventStream.LIFECYCLE, "end")
    assert events[-1].data["turns"] == 2

    deltas = [e.data["delta"] for e in events if "delta" in e.data]
    assert deltas == ["Using echo.", "Done."]
    tool_phases = [(e.phase, e.data["name"]) for e in events if e.stream == EventStream.TOOL]
    assert tool_phases == [("start", "echo"), ("end", "echo")]
    tool_end = next(e for e in events if e.stream == EventStream.TOOL and e.phase == "end")
    assert tool_end.data["output"] == "echo:x"


@pytest.mark.asyncio
async def test_observer_only_sees_its_own_run_on_a_shared_session(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider([text_response("first"), text_response("second")])
    agent = _agent(provider, config)
    seen_a: list[AgentEvent] = []
    seen_b: list[AgentEvent] = []

    result_a, result_b = await asyncio.gather(
        agent.run("main", "one", observer=seen_a.append),
        agent.run("main", "two", observer=seen_b.append),
    )

    assert result_a.run_id != result_b.run_id
    assert {e.run_id for e in seen_a} == {result_a.run_id}
    assert {e.run_id for e in seen_b} == {result_b.run_id}
    for seen in (seen_a, seen_b):
        ends = [e for e in seen if e.stream == EventStream.LIFECYCLE and e.phase == "end"]
        assert len(ends) == 1
        assert seen[-1] is ends[0]


@pytest.mark.asyncio
async def test_observer_is_removed_after_run(config: AgentConfig) -> None:
    agent = _agent(ScriptedLLMProvider([text_response("a")]), config)
    await agent.run("main", "hi", observer=lambda e: None)
    assert agent.events.listener_count == 0


@pytest.mark.asyncio
async def test_long_tool_output_is_truncated_in_events(config: AgentConfig) -> None:
    async def big(tool_input: dict[str, Any], ctx: ToolContext) -> str:
        return "z" * 2000

    provider = ScriptedLLMProvider([
        tool_use_response([("t1", "big", {})]),
        text_response("ok"),
    ])
    agent = _agent(provider, config, tools=[FunctionTool("big", big)])
    events: list[AgentEvent] = []

    await agent.run("main", "go", observer=events.append)

    end = next(e for e in events if e.stream == EventStream.TOOL and e.phase == "end")
    assert end.data["output"] == "z" * 500 + "..."
    assert agent.get_history("main")[2].tool_results()[0].content == "z" * 2000


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_history_survives_a_new_agent(config: AgentConfig) -> None:
    await _agent(ScriptedLLMProvider([text_response("first answer")]), config).run("main", "one")

    provider = ScriptedLLMProvider([text_response("second answer")])
    await _agent(provider, config).run("main", "two")

    sent = provider.requests[0].messages
    assert [m.text_length() for m in sent] == [3, 12, 3]
    assert sent[0].content == "one"
    assert sent[-1].content == "two"


@pytest.mark.asyncio
async def test_runs_on_one_session_are_serialized(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider([text_response("r1"), text_response("r2")])
    agent = _agent(provider, config)

    await asyncio.gather(agent.run("main", "one"), agent.run("main", "two"))

    history = agent.get_history("main")
    assert [m.text_length() for m in history] == [3, 2, 3, 2]
    assert history[0].content == "one"
    assert history[2].content == "two"
    assert len(provider.requests[1].messages) == 3


@pytest.mark.asyncio
async def test_session_id_and_explicit_key_resolve_alike(config: AgentConfig) -> None:
    agent = _agent(ScriptedLLMProvider([text_response("a"), text_response("b")]), config)
    await agent.run("main", "x")
    await agent.run(MAIN_KEY, "y")
    assert len(agent.get_history(MAIN_KEY)) == 4
    assert await agent.list_sessions() == [MAIN_KEY]


@pytest.mark.asyncio
async def test_status_and_reset(config: AgentConfig) -> None:
    usage = TokenUsage(input_tokens=10, output_tokens=4)
    agent = _agent(ScriptedLLMProvider([text_response("hi there", usage)]), config)

    await agent.run("chat-1", "hello")
    status = await agent.get_status("chat-1")

    assert status.agent_id == "main"
    assert status.session_key == "agent:main:chat-1"
    assert status.session is not None
    assert status.session.message_count == 2
    assert status.last_usage is not None
    assert status.last_usage.input_tokens == 10

    await agent.reset("chat-1")
    assert agent.get_history("chat-1") == []
    assert await agent.list_sessions() == []


@pytest.mark.asyncio
async def test_usage_accumulates_across_turns(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider([
        tool_use_response([("t1", "echo", {})], usage=TokenUsage(input_tokens=100, output_tokens=10)),
        text_response(
            "done",
            TokenUsage(input_tokens=150, output_tokens=5, cache_read_input_tokens=90),
        ),
    ])
    agent = _agent(provider, config, tools=[ECHO])

    result = await agent.run("main", "go")

    assert result.usage.input_tokens == 250
    assert result.usage.output_tokens == 15
    assert result.usage.cache_read_input_tokens == 90
    assert agent.last_usage == result.usage


# ---------------------------------------------------------------------------
# Context window
# ---------------------------------------------------------------------------


async def _seed_long_history(config: AgentConfig) -> list[Message]:
    store = SessionStore(config.session_dir)
    seeded = [Message.user(str(i) * 1000) for i in range(6)]
    for msg in seeded:
        await store.append(MAIN_KEY, msg)
    return seeded


@pytest.mark.asyncio
async def test_compaction_summary_is_sent_but_not_persisted(config: AgentConfig) -> None:
    config.context_tokens = 1000
    seeded = await _seed_long_history(config)
    provider = SummaryRoutingProvider([text_response("answer")], summary="condensed")
    agent = _agent(provider, config)
    events: list[AgentEvent] = []

    result = await agent.run("main", "next", observer=events.append)

    assert result.text == "answer"
    assert provider.summary_requests
    sent = provider.run_provider.requests[0].messages
    assert sent[0].role == MessageRole.USER
    assert sent[0].content == f"{SUMMARY_PREFIX}\ncondensed"
    assert sent[1].content == seeded[-1].content
    assert sent[2].content == "next"

    history = agent.get_history("main")
    assert len(history) == len(seeded) + 2
    assert not any(
        isinstance(m.content, str) and m.content.startswith(SUMMARY_PREFIX) for m in history
    )
    assert any(e.phase == "compaction" for e in events)


@pytest.mark.asyncio
async def test_summary_failure_falls_back_to_pruned_view(config: AgentConfig) -> None:
    config.context_tokens = 1000
    seeded = await _seed_long_history(config)
    provider = SummaryRoutingProvider(
        [text_response("answer")], summary=ProviderError("summarizer down")
    )
    agent = _agent(provider, config)

    result = await agent.run("main", "next")

    assert result.text == "answer"
    sent = provider.run_provider.requests[0].messages
    assert [m.content for m in sent] == [seeded[-1].content, "next"]


@pytest.mark.asyncio
async def test_short_history_is_sent_whole(config: AgentConfig) -> None:
    provider = SummaryRoutingProvider([text_response("a")], summary="unused")
    await _agent(provider, config).run("main", "hi")
    assert provider.summary_requests == []


# ---------------------------------------------------------------------------
# Skills
# ---------------------------------------------------------------------------

REVIEW = Skill(
    id="review",
    name="Review",
    prompt="Review the file carefully.",
    description="Code review",
    triggers=["/review"],
)


@pytest.mark.asyncio
async def test_skill_rewrites_user_message(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider([text_response("looks good")])
    agent = _agent(provider, config, skills=StaticSkillMatcher([REVIEW]))

    result = await agent.run("main", "/review main.py")

    assert result.skill_triggered == "review"
    expected = "Review the file carefully.\n\nUser request: main.py"
    assert agent.get_history("main")[0].content == expected
    assert "## Skills" in provider.requests[0].system_prompt


@pytest.mark.asyncio
async def test_skills_disabled_leaves_message(config: AgentConfig) -> None:
    config.enable_skills = False
    provider = ScriptedLLMProvider([text_response("ok")])
    agent = _agent(provider, config, skills=StaticSkillMatcher([REVIEW]))

    result = await agent.run("main", "/review main.py")

    assert result.skill_triggered is None
    assert agent.get_history("main")[0].content == "/review main.py"
    assert "## Skills" not in provider.requests[0].system_prompt


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_memory_search_counts_and_run_is_remembered(config: AgentConfig) -> None:
    memory = FakeMemory([MemoryEntry(content="Deploys happen on Friday", score=0.8)])
    provider = ScriptedLLMProvider([
        tool_use_response([("m1", "memory_search", {"query": "deploy"})]),
        text_response("On Friday."),
    ])
    agent = _agent(provider, config, tools=[memory_search_tool()], memory=memory)

    result = await agent.run("main", "When do we deploy?")

    assert result.memories_used == 1
    assert "## Memory" in provider.requests[0].system_prompt
    assert "Deploys happen on Friday" in agent.get_history("main")[2].tool_results()[0].content
    stored = memory.entries[-1]
    assert stored.content == "Q: When do we deploy?\nA: On Friday."
    assert stored.source == "agent"
    assert stored.tags == [MAIN_KEY]


@pytest.mark.asyncio
async def test_memory_disabled_hides_memory_tools(config: AgentConfig) -> None:
    config.enable_memory = False
    memory = FakeMemory()
    provider = ScriptedLLMProvider([text_response("ok")])
    agent = _agent(provider, config, tools=[memory_search_tool(), ECHO], memory=memory)

    await agent.run("main", "hi")

    assert [t.name for t in provider.requests[0].tools] == ["echo"]
    assert "## Memory" not in provider.requests[0].system_prompt
    assert memory.entries == []


@pytest.mark.asyncio
async def test_memory_write_failure_does_not_fail_run(config: AgentConfig) -> None:
    agent = _agent(ScriptedLLMProvider([text_response("ok")]), config, memory=BrokenMemory())
    assert (await agent.run("main", "hi")).text == "ok"


@pytest.mark.asyncio
async def test_memory_detached_mid_run_is_not_written(config: AgentConfig) -> None:
    memory = FakeMemory()
    agent = _agent(ScriptedLLMProvider([text_response("ok")]), config, memory=memory)

    def detach(event: AgentEvent) -> None:
        if event.stream == EventStream.ASSISTANT:
            agent.memory = None

    result = await agent.run("main", "hi", observer=detach)

    assert result.text == "ok"
    assert memory.entries == []


# ---------------------------------------------------------------------------
# Tool policy
# ---------------------------------------------------------------------------


def _named(name: str) -> FunctionTool:
    return FunctionTool(name, _echo)


@pytest.mark.asyncio
async def test_tool_policy_filters_offered_tools(config: AgentConfig) -> None:
    config.tool_policy = ToolPolicy(deny=["exec"])
    provider = ScriptedLLMProvider([
        tool_use_response([("t1", "exec", {})]),
        text_response("blocked"),
    ])
    agent = _agent(provider, config, tools=[_named("read"), _named("exec")])

    await agent.run("main", "run ls")

    assert [t.name for t in provider.requests[0].tools] == ["read"]
    # A denied tool cannot be called even if the model asks for it.
    assert agent.get_history("main")[2].tool_results()[0].content == "Unknown tool: exec"


@pytest.mark.asyncio
async def test_sandbox_denies_exec_and_is_described(config: AgentConfig) -> None:
    config.sandbox = SandboxSettings(enabled=True)
    provider = ScriptedLLMProvider([text_response("ok")])
    agent = _agent(provider, config, tools=[_named("read"), _named("exec"), _named("write")])

    await agent.run("main", "hi")

    request = provider.requests[0]
    assert [t.name for t in request.tools] == ["read", "write"]
    assert "Sandbox mode active: workspace is writable, command execution is disabled." in (
        request.system_prompt
    )


def test_set_tools_replaces_tool_set(config: AgentConfig) -> None:
    agent = _agent(ScriptedLLMProvider(), config, tools=[ECHO])
    agent.set_tools([FAIL])
    assert [t.name for t in agent.tools] == ["fail"]
    assert [t.name for t in agent.resolve_tools_for_run()] == ["fail"]


# ---------------------------------------------------------------------------
# Subagents
# ---------------------------------------------------------------------------


def _subagent_script(task: str, cleanup: str = "keep"):
    def respond(request: ProviderRequest) -> ProviderResponse:
        first = request.messages[0].content
        if first == task:
            return text_response("child findings")
        if request.messages[-1].tool_results():
            return text_response("spawned")
        return tool_use_response([("s1", "sessions_spawn", {"task": task, "cleanup": cleanup})])

    return [respond, respond, respond]


@pytest.mark.asyncio
async def test_subagent_summary_is_posted_to_parent(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider(_subagent_script("research lanes"))
    agent = _agent(provider, config, tools=[sessions_spawn_tool()])
    subagent_events: list[AgentEvent] = []
    agent.events.subscribe(
        lambda e: subagent_events.append(e) if e.stream == EventStream.SUBAGENT else None
    )

    result = await agent.run("main", "go")
    await agent.aclose(timeout=5)

    assert result.text == "spawned"
    history = agent.get_history("main")
    spawn_result = history[2].tool_results()[0].content
    assert spawn_result.startswith("Subagent started: run_id=")
    assert "session_key=agent:main:subagent:" in spawn_result
    assert history[-1].content == f"{SUBAGENT_SUMMARY_PREFIX}\nchild findings"
    assert _roles(history) == ["user", "assistant", "user", "assistant", "user"]

    assert [e.phase for e in subagent_events] == ["summary"]
    assert subagent_events[0].session_key == MAIN_KEY
    assert subagent_events[0].data["summary"] == "child findings"
    assert subagent_events[0].data["parent_run_id"] == result.run_id
    sessions = await agent.list_sessions()
    assert MAIN_KEY in sessions
    assert any(":subagent:" in key for key in sessions)


@pytest.mark.asyncio
async def test_subagent_cleanup_delete_removes_child_session(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider(_subagent_script("short job", cleanup="delete"))
    agent = _agent(provider, config, tools=[sessions_spawn_tool()])

    await agent.run("main", "go")
    await agent.aclose(timeout=5)

    assert await agent.list_sessions() == [MAIN_KEY]


@pytest.mark.asyncio
async def test_subagent_session_cannot_spawn(config: AgentConfig) -> None:
    provider = ScriptedLLMProvider([
        tool_use_response([("s1", "sessions_spawn", {"task": "nested"})]),
        text_response("ok"),
    ])
    agent = _agent(provider, config, tools=[sessions_spawn_tool()])

    await agent.run("agent:main:subagent:abc", "work")

    content = agent.get_history("agent:main:subagent:abc")[2].tool_results()[0].content
    assert content == "Tool error: subagent sessions cannot spawn subagents"
    assert agent.subagents.pending == []
