"""Lane scheduler — named FIFO queues with per-lane concurrency limits.

A lane runs at most ``concurrency(lane)`` tasks at once and starts them in
submission order. Lanes are independent of each other; a task may enqueue
into another lane, which is how "one run per session, N runs globally" is
built::

    await lanes.enqueue(
        resolve_session_lane(key),
        lambda: lanes.enqueue(resolve_global_lane(), do_run),
    )
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .telemetry import trace_lane_task

logger = logging.getLogger(__name__)

T = TypeVar("T")

SESSION_LANE_PREFIX = "session:"
DEFAULT_GLOBAL_LANE = "global"
DEFAULT_MAIN_SESSION = "main"


def resolve_session_lane(key: str) -> str:
    cleaned = (key or "").strip() or DEFAULT_MAIN_SESSION
    if cleaned.startswith(SESSION_LANE_PREFIX):
        return cleaned
    return f"{SESSION_LANE_PREFIX}{cleaned}"


def resolve_global_lane(lane: str | None = None) -> str:
    cleaned = (lane or "").strip()
    return cleaned or DEFAULT_GLOBAL_LANE


@dataclass
class _QueueEntry:
    task: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    enqueued_at: float


@dataclass
class _LaneState:
    name: str
    max_concurrent: int
    queue: deque[_QueueEntry] = field(default_factory=deque)
    active: int = 0


class LaneScheduler:
    """Single-process lane scheduler bound to the running asyncio loop."""

    def __init__(self, default_concurrency: int = 1, warn_after_seconds: float = 2.0) -> None:
        self._default = max(1, math.floor(default_concurrency))
        self._warn_after = warn_after_seconds
        self._lanes: dict[str, _LaneState] = {}
        self._running: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Configuration / inspection
    # ------------------------------------------------------------------

    def set_concurrency(self, lane: str, concurrency: float) -> None:
        """Set the limit for *lane*, floored and clamped to at least 1."""
        state = self._lane(lane)
        state.max_concurrent = max(1, math.floor(concurrency))
        self._drain(state)

    def concurrency(self, lane: str) -> int:
        state = self._lanes.get(lane)
        return state.max_concurrent if state else self._default

    def queue_size(self, lane: str) -> int:
        state = self._lanes.get(lane)
        return len(state.queue) if state else 0

    def active_count(self, lane: str) -> int:
        state = self._lanes.get(lane)
        return state.active if state else 0

    @property
    def lanes(self) -> list[str]:
        return list(self._lanes)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def enqueue(self, lane: str, task: Callable[[], Awaitable[T]]) -> T:
        """Run *task* in *lane* and return its result (or raise its error)."""
        loop = asyncio.get_running_loop()
        state = self._lane(lane)
        entry = _QueueEntry(task=task, future=loop.create_future(), enqueued_at=loop.time())
        state.queue.append(entry)
        logger.debug(
            "lane %s: enqueued (queued=%d active=%d)", state.name, len(state.queue), state.active
        )
        self._drain(state)
        return await entry.future

    def _lane(self, name: str) -> _LaneState:
        state = self._lanes.get(name)
        if state is None:
            state = self._lanes[name] = _LaneState(name=name, max_concurrent=self._default)
        return state

    def _drain(self, state: _LaneState) -> None:
        while state.active < state.max_concurrent and state.queue:
            entry = state.queue.popleft()
            state.active += 1
            runner = asyncio.ensure_future(self._run(state, entry))
            self._running.add(runner)
            runner.add_done_callback(self._running.discard)
        self._forget_if_idle(state)

    async def _run(self, state: _LaneState, entry: _QueueEntry) -> None:
        waited = asyncio.get_running_loop().time() - entry.enqueued_at
        if waited >= self._warn_after:
            logger.warning(
                "lane %s: task waited %.2fs (queued=%d)", state.name, waited, len(state.queue)
            )
        try:
            with trace_lane_task(state.name):
                result = await entry.task()
        except asyncio.CancelledError:
            entry.future.cancel()
            raise
        except Exception as exc:
            if not entry.future.done():
                entry.future.set_exception(exc)
        else:
            if not entry.future.done():
                entry.future.set_result(result)
        finally:
            state.active -= 1
            self._drain(state)

    def _forget_if_idle(self, state: _LaneState) -> None:
        if (
            state.active == 0
            and not state.queue
            and state.max_concurrent == self._default
            and self._lanes.get(state.name) is state
        ):
            del self._lanes[state.name]
