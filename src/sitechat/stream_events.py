from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

TEXT = "text"
ANNOTATION = "annotation"
PROGRESS = "progress"
ERROR = "error"
FINISH = "finish"

ANNOTATION_TYPES = ("usage", "chatSummary", "codeContext", "sessionUpdate", "templateInjection")


@dataclass(frozen=True)
class StreamEvent:
    kind: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> str:
        payload = json.dumps(self.data, ensure_ascii=False, separators=(",", ":"))
        return f"event: {self.kind}\ndata: {payload}\n\n"


_CLOSED = object()


class EventChannel:
    """Outward event stream for one exchange.

    Text deltas and side-channel annotations share one queue, so emitting never
    waits on the consumer. Events emitted after ``close`` are dropped.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._progress_order = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: StreamEvent) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(event)
        return True

    def emit_text(self, delta: str) -> bool:
        if not delta:
            return False
        return self.emit(StreamEvent(TEXT, {"delta": delta}))

    def emit_annotation(self, annotation_type: str, payload: dict[str, Any]) -> bool:
        if annotation_type not in ANNOTATION_TYPES:
            raise ValueError(f"Unknown annotation type: {annotation_type!r}")
        return self.emit(StreamEvent(ANNOTATION, {"type": annotation_type, **payload}))

    def emit_progress(self, label: str, status: str, message: str = "", *, order: int | None = None) -> bool:
        if order is None:
            self._progress_order += 1
            order = self._progress_order
        return self.emit(
            StreamEvent(PROGRESS, {"label": label, "status": status, "order": order, "message": message})
        )

    def emit_error(self, payload: dict[str, Any]) -> bool:
        return self.emit(StreamEvent(ERROR, payload))

    def emit_finish(self, payload: dict[str, Any]) -> bool:
        return self.emit(StreamEvent(FINISH, payload))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def drain_nowait(self) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _CLOSED:
                events.append(item)
        return events
