"""Agent events — tagged run events fanned out to subscribers."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventStream(StrEnum):
    LIFECYCLE = "lifecycle"
    TURN = "turn"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SUBAGENT = "subagent"


@dataclass
class AgentEvent:
    """One event of a run. ``seq`` increases by one per event of the same run."""

    run_id: str
    seq: int
    ts: float
    stream: EventStream
    data: dict[str, Any] = field(default_factory=dict)
    session_key: str | None = None
    agent_id: str | None = None

    @property
    def phase(self) -> str | None:
        return self.data.get("phase")


Listener = Callable[[AgentEvent], None]

_TERMINAL_PHASES = frozenset({"end", "error"})


class EventBus:
    """Synchronous fan-out of :class:`AgentEvent` to listeners.

    A listener that raises is logged and skipped; it never affects other
    listeners or the emitting run.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._seq: dict[str, int] = {}

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; the returned callable unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(
        self,
        run_id: str,
        stream: EventStream,
        data: dict[str, Any] | None = None,
        session_key: str | None = None,
        agent_id: str | None = None,
    ) -> AgentEvent:
        seq = self._seq.get(run_id, 0) + 1
        self._seq[run_id] = seq
        event = AgentEvent(
            run_id=run_id,
            seq=seq,
            ts=time.time(),
            stream=stream,
            data=dict(data or {}),
            session_key=session_key,
            agent_id=agent_id,
        )
        if stream == EventStream.LIFECYCLE and event.phase in _TERMINAL_PHASES:
            self._seq.pop(run_id, None)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("event listener failed for %s/%s", stream, run_id)
        return event

    def channel(self, run_id: str | None = None) -> EventChannel:
        """Open an async-iterable channel of events, optionally for one run."""
        return EventChannel(self, run_id)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


_CLOSED = object()


class EventChannel:
    """Queue-backed async iterator over bus events.

    Usage::

        async with bus.channel(run_id) as events:
            async for event in events:
                ...

    With a *run_id*, the channel closes itself after that run's terminal
    lifecycle event.
    """

    def __init__(self, bus: EventBus, run_id: str | None = None) -> None:
        self._run_id = run_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._unsubscribe = bus.subscribe(self._push)

    def _push(self, event: AgentEvent) -> None:
        if self._run_id is not None and event.run_id != self._run_id:
            return
        self._queue.put_nowait(event)
        if (
            self._run_id is not None
            and event.stream == EventStream.LIFECYCLE
            and event.phase in _TERMINAL_PHASES
        ):
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> EventChannel:
        return self

    async def __anext__(self) -> AgentEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> EventChannel:
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.close()
