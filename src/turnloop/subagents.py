"""Subagent tracking — background child runs that report back to a parent session."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SUBAGENT_SUMMARY_MAX_CHARS = 600
SUBAGENT_SUMMARY_PREFIX = "[Subagent summary]"


@dataclass
class SubagentHandle:
    """A running (or finished) child run."""

    session_key: str
    parent_session_key: str
    task: str
    label: str | None
    cleanup: str
    future: asyncio.Task[Any]

    @property
    def done(self) -> bool:
        return self.future.done()


class SubagentTracker:
    """Keeps references to child-run tasks so none are orphaned."""

    def __init__(self) -> None:
        self._handles: dict[str, SubagentHandle] = {}

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        session_key: str,
        parent_session_key: str,
        task: str,
        label: str | None = None,
        cleanup: str = "keep",
    ) -> SubagentHandle:
        future = asyncio.ensure_future(coro)
        handle = SubagentHandle(
            session_key=session_key,
            parent_session_key=parent_session_key,
            task=task,
            label=label,
            cleanup=cleanup,
            future=future,
        )
        self._handles[session_key] = handle
        future.add_done_callback(lambda f: self._finished(session_key, f))
        logger.debug("subagent %s spawned from %s", session_key, parent_session_key)
        return handle

    def _finished(self, session_key: str, future: asyncio.Task[Any]) -> None:
        self._handles.pop(session_key, None)
        if future.cancelled():
            logger.info("subagent %s cancelled", session_key)
        elif future.exception() is not None:
            logger.error("subagent %s failed: %s", session_key, future.exception())

    @property
    def pending(self) -> list[SubagentHandle]:
        return [h for h in self._handles.values() if not h.done]

    async def join(self, timeout: float | None = None) -> bool:
        """Wait for pending subagents; False if some were still running at *timeout*."""
        futures = [h.future for h in self.pending]
        if not futures:
            return True
        _, still_pending = await asyncio.wait(futures, timeout=timeout)
        return not still_pending

    async def cancel_all(self) -> int:
        handles = self.pending
        for handle in handles:
            handle.future.cancel()
        if handles:
            await asyncio.gather(*(h.future for h in handles), return_exceptions=True)
        return len(handles)


def truncate_summary(text: str) -> str:
    return text[:SUBAGENT_SUMMARY_MAX_CHARS]
