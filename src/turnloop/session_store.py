"""Session store — JSONL-backed, cached, append-only message logs per session key."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, unquote

from pydantic import ValidationError

from .errors import StorageError
from .messages import Message, MessageRole

logger = logging.getLogger(__name__)

_SUFFIX = ".jsonl"
_DEFAULT_SESSION_DIR = "./.turnloop/sessions"


@dataclass
class SessionStats:
    """Aggregate counters for a single session log."""

    message_count: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    total_chars: int = 0


def encode_session_key(key: str) -> str:
    """Percent-encode *key* into a flat file name (no separators, no dots)."""
    return quote(key, safe="").replace(".", "%2E")


def decode_session_key(file_name: str) -> str:
    return unquote(file_name)


class SessionStore:
    """Owns every session log under one root directory.

    ``load`` and ``get`` hand out the cached list itself, so callers that
    need an independent working copy must copy it.
    """

    def __init__(self, session_dir: str | Path | None = None) -> None:
        self._root = Path(session_dir or _DEFAULT_SESSION_DIR)
        self._cache: dict[str, list[Message]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        return self._root / f"{encode_session_key(key)}{_SUFFIX}"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load(self, key: str) -> list[Message]:
        """Return the cached log for *key*, reading it from disk on first use."""
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        messages = await asyncio.to_thread(self._read, key)
        # A concurrent append may have populated the cache meanwhile.
        return self._cache.setdefault(key, messages)

    def get(self, key: str) -> list[Message]:
        """Cache-only read; never touches the disk."""
        return self._cache.get(key, [])

    async def list(self) -> list[str]:
        """Return every session key persisted under the root."""
        return await asyncio.to_thread(self._list_keys)

    async def get_stats(self, key: str) -> SessionStats:
        messages = await self.load(key)
        stats = SessionStats(message_count=len(messages))
        for msg in messages:
            if msg.role == MessageRole.USER:
                stats.user_messages += 1
            elif msg.role == MessageRole.ASSISTANT:
                stats.assistant_messages += 1
            stats.total_chars += msg.text_length()
        return stats

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def append(self, key: str, message: Message) -> None:
        """Persist *message* to the log, then add it to the cache."""
        async with self._key_lock(key):
            messages = await self.load(key)
            await asyncio.to_thread(self._write_line, key, message.to_json_line())
            messages.append(message)

    async def clear(self, key: str) -> None:
        """Delete the log and evict the cache. Missing sessions are ignored."""
        async with self._key_lock(key):
            await asyncio.to_thread(self._delete, key)
            self._cache.pop(key, None)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _key_lock(self, key: str) -> AsyncIterator[None]:
        """Hold the per-key lock; it is dropped once no caller holds or awaits it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users.pop(key) - 1
            if remaining:
                self._lock_users[key] = remaining
            else:
                del self._locks[key]

    # ------------------------------------------------------------------
    # Blocking helpers (run in a worker thread)
    # ------------------------------------------------------------------

    def _read(self, key: str) -> list[Message]:
        path = self.path_for(key)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StorageError(f"Failed to read session log {path}: {exc}", key) from exc

        messages: list[Message] = []
        for lineno, raw_line in enumerate(raw.splitlines(), start=1):
            try:
                line = raw_line.decode("utf-8").strip()
                if line:
                    messages.append(Message.from_json_line(line))
            except (UnicodeDecodeError, ValidationError):
                logger.warning("Skipping malformed line %d in %s", lineno, path)
        return messages

    def _write_line(self, key: str, line: str) -> None:
        path = self.path_for(key)
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError as exc:
            raise StorageError(f"Failed to append to session log {path}: {exc}", key) from exc

    def _delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete session log {path}: {exc}", key) from exc

    def _list_keys(self) -> list[str]:
        if not self._root.is_dir():
            return []
        try:
            names = [p.name for p in self._root.iterdir() if p.name.endswith(_SUFFIX)]
        except OSError as exc:
            raise StorageError(f"Failed to list sessions in {self._root}: {exc}") from exc
        return sorted(decode_session_key(n[: -len(_SUFFIX)]) for n in names)
