from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class SessionStore(Protocol):
    async def get_active_session(self, user_id: str) -> dict[str, Any] | None: ...


class InMemorySessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get_active_session(self, user_id: str) -> dict[str, Any] | None:
        async with self._lock:
            session = self._sessions.get(user_id)
            return dict(session) if session is not None else None

    async def set_active_session(self, user_id: str, session: dict[str, Any] | None) -> None:
        async with self._lock:
            if session is None:
                self._sessions.pop(user_id, None)
            else:
                self._sessions[user_id] = dict(session)
