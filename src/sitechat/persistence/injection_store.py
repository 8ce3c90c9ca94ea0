from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from sitechat.persistence.store import MemoryStore

DEFAULT_TTL_SECONDS = 600


@runtime_checkable
class PendingInjectionStore(Protocol):
    async def put(self, session_id: str, payload: dict[str, Any], ttl: float = DEFAULT_TTL_SECONDS) -> None: ...

    async def take_once(self, session_id: str) -> dict[str, Any] | None: ...


class InMemoryPendingInjectionStore:
    """Process-local pending injections. Each payload can be taken at most once."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[dict[str, Any], float]] = {}
        self._lock = asyncio.Lock()

    async def put(self, session_id: str, payload: dict[str, Any], ttl: float = DEFAULT_TTL_SECONDS) -> None:
        async with self._lock:
            self._purge_expired_locked()
            if session_id in self._entries:
                logger.warning(f"Replacing unconsumed pending injection for session {session_id}")
            self._entries[session_id] = (payload, self._clock() + ttl)
        logger.debug(f"Stored pending injection for session {session_id} (ttl={ttl}s)")

    async def take_once(self, session_id: str) -> dict[str, Any] | None:
        async with self._lock:
            entry = self._entries.pop(session_id, None)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at <= self._clock():
            logger.info(f"Pending injection for session {session_id} expired before it was taken")
            return None
        logger.debug(f"Retrieved and cleared pending injection for session {session_id}")
        return payload

    async def purge_expired(self) -> int:
        async with self._lock:
            return self._purge_expired_locked()

    def __len__(self) -> int:
        return len(self._entries)

    def _purge_expired_locked(self) -> int:
        now = self._clock()
        expired = [sid for sid, (_, expires_at) in self._entries.items() if expires_at <= now]
        for sid in expired:
            del self._entries[sid]
        return len(expired)


class SqlitePendingInjectionStore:
    """Pending injections kept in the memory database, deleted on read."""

    def __init__(self, store: MemoryStore, *, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock
        self._lock = asyncio.Lock()

    async def put(self, session_id: str, payload: dict[str, Any], ttl: float = DEFAULT_TTL_SECONDS) -> None:
        async with self._lock:
            with self._store.transaction():
                self._store.execute(
                    "DELETE FROM pending_injections WHERE expires_at <= ?",
                    (self._clock(),),
                )
                self._store.execute(
                    """
                    INSERT OR REPLACE INTO pending_injections (session_id, payload_json, created_at, expires_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        session_id,
                        json.dumps(payload, ensure_ascii=True),
                        datetime.now(UTC).isoformat(timespec="seconds"),
                        self._clock() + ttl,
                    ),
                )

    async def take_once(self, session_id: str) -> dict[str, Any] | None:
        async with self._lock:
            with self._store.transaction():
                row = self._store.execute(
                    "SELECT payload_json, expires_at FROM pending_injections WHERE session_id = ?",
                    (session_id,),
                ).fetchone()
                if row is None:
                    return None
                self._store.execute(
                    "DELETE FROM pending_injections WHERE session_id = ?",
                    (session_id,),
                )
        if float(row["expires_at"]) <= self._clock():
            return None
        return json.loads(row["payload_json"])
