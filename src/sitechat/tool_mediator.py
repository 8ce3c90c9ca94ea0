from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any

from loguru import logger

from sitechat.models import ToolInvocation, new_id
from sitechat.persistence.injection_store import DEFAULT_TTL_SECONDS, PendingInjectionStore
from sitechat.persistence.session_store import SessionStore
from sitechat.stream_events import EventChannel

PENDING_MARKER = "hasPendingInjection"
PENDING_PAYLOAD_KEY = "pendingPayload"

DEFAULT_SESSION_MUTATING_TOOLS = frozenset({
    "startInfoCollection",
    "collectWebsiteUrl",
    "collectGoogleMapsUrl",
    "collectDescription",
    "updateCollectedInfo",
    "finalizeCollection",
    "deleteSession",
})


class ToolCallMediator:
    """Side-channel actions for tool results.

    ``filter_result`` runs as each tool finishes and strips any large pending
    payload out of the result before it can reach model context or history.
    ``observe`` is called once per tool result, in provider order, and queues
    the side effects: session broadcasts and pending-injection writes. A single
    worker applies them in order so the text lane never waits on them.
    """

    def __init__(
        self,
        *,
        channel: EventChannel,
        injection_store: PendingInjectionStore,
        session_store: SessionStore | None = None,
        user_id: str | None = None,
        session_mutating_tools: Iterable[str] = DEFAULT_SESSION_MUTATING_TOOLS,
        injection_ttl: float = DEFAULT_TTL_SECONDS,
        log=logger,
    ):
        self._channel = channel
        self._injection_store = injection_store
        self._session_store = session_store
        self._user_id = user_id
        self._session_mutating_tools = frozenset(session_mutating_tools)
        self._injection_ttl = injection_ttl
        self._log = log
        self._stashed: dict[str, dict[str, Any]] = {}
        self._observed: set[str] = set()
        self._queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._closed = False
        self.injected_session_ids: list[str] = []

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def filter_result(self, invocation: ToolInvocation) -> Any:
        result = invocation.result
        if not isinstance(result, dict) or not result.get(PENDING_MARKER):
            return result

        sanitized = {k: v for k, v in result.items() if k != PENDING_PAYLOAD_KEY}
        payload = result.get(PENDING_PAYLOAD_KEY)
        if payload is None:
            self._log.warning(
                f"Tool {invocation.tool_name} flagged a pending injection without a payload"
            )
            return sanitized

        session_id = str(result.get("sessionId") or new_id())
        sanitized["sessionId"] = session_id
        self._stashed[invocation.tool_call_id] = {
            "session_id": session_id,
            "payload": payload,
            "summary": _summary_fields(sanitized),
            "tool_name": invocation.tool_name,
        }
        return sanitized

    def observe(self, invocation: ToolInvocation) -> None:
        if self._closed or invocation.tool_call_id in self._observed:
            return
        self._observed.add(invocation.tool_call_id)

        stashed = self._stashed.pop(invocation.tool_call_id, None)
        if stashed is not None:
            self._queue.put_nowait(("inject", stashed))

        if invocation.tool_name in self._session_mutating_tools and not invocation.is_error:
            self._queue.put_nowait(("session", {"tool_name": invocation.tool_name}))

    async def drain(self) -> None:
        if self._task is None:
            while not self._queue.empty():
                await self._apply(*self._queue.get_nowait())
                self._queue.task_done()
            return
        await self._queue.join()

    async def close(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            action, data = await self._queue.get()
            try:
                await self._apply(action, data)
            finally:
                self._queue.task_done()

    async def _apply(self, action: str, data: dict[str, Any]) -> None:
        try:
            if action == "inject":
                await self._inject(data)
            elif action == "session":
                await self._broadcast_session(data["tool_name"])
        except Exception as ex:
            self._log.error(f"Side-channel action {action!r} failed: {ex}")

    async def _inject(self, data: dict[str, Any]) -> None:
        session_id = data["session_id"]
        await self._injection_store.put(session_id, data["payload"], self._injection_ttl)
        self.injected_session_ids.append(session_id)
        self._log.info(f"Deferred pending injection from {data['tool_name']} for session {session_id}")
        self._channel.emit_annotation("templateInjection", {"sessionId": session_id, **data["summary"]})

    async def _broadcast_session(self, tool_name: str) -> None:
        if self._session_store is None or not self._user_id:
            return
        session = await self._session_store.get_active_session(self._user_id)
        if session is None:
            self._log.debug(f"No active session to broadcast after {tool_name}")
            return
        self._channel.emit_annotation("sessionUpdate", {"session": session, "toolName": tool_name})


def _summary_fields(result: dict[str, Any]) -> dict[str, Any]:
    summary: dict[str, Any] = {}
    for key in ("generation", "status", "message"):
        if key in result:
            summary[key] = result[key]
    return summary
