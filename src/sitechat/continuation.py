from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from sitechat.errors import MaxSegmentsReachedError
from sitechat.models import FINISH_LENGTH, CumulativeUsage, Message, StreamSegment

DEFAULT_MAX_SEGMENTS = 4

CONTINUE_PROMPT = (
    "Continue from where you left off. Begin immediately after the last character "
    "of your previous message and do not repeat any content."
)


class SegmentState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    NEEDS_CONTINUATION = "needs_continuation"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class ContinuationResult:
    text: str
    segments: list[StreamSegment] = field(default_factory=list)
    finish_reason: str = "stop"


SegmentCall = Callable[[Any], Awaitable[StreamSegment]]
ContinueWith = Callable[[Any, StreamSegment], Any]


def append_continuation(in_flight: list[Message], segment: StreamSegment) -> list[Message]:
    """Extend a message list with the cut-off text and a request to continue."""
    return in_flight + [
        Message.create("assistant", segment.text, annotations={"hidden", "no-store"}),
        Message.create("user", CONTINUE_PROMPT, annotations={"hidden", "no-store"}),
    ]


class SegmentContinuationController:
    """Stitches provider calls cut short by the output-length cap into one response.

    Calls are strictly sequential: each continuation is issued with the previous
    segment's partial text plus a continuation request appended to the message
    list. Every segment's usage is added to ``usage`` as it completes.

    ``continue_with`` builds the next in-flight input from the previous one and
    the cut-off segment; the controller never inspects that input itself.
    """

    def __init__(
        self,
        call_segment: SegmentCall,
        *,
        usage: CumulativeUsage,
        max_segments: int = DEFAULT_MAX_SEGMENTS,
        continue_with: ContinueWith = append_continuation,
        provider: str | None = None,
        log=logger,
    ):
        if max_segments < 1:
            raise ValueError("max_segments must be at least 1")
        self._call_segment = call_segment
        self._usage = usage
        self._max_segments = max_segments
        self._continue_with = continue_with
        self._provider = provider
        self._log = log
        self._state = SegmentState.IDLE
        self._calls = 0

    @property
    def state(self) -> SegmentState:
        return self._state

    @property
    def calls(self) -> int:
        return self._calls

    @property
    def remaining_segments(self) -> int:
        return self._max_segments - self._calls

    async def run(self, messages: Any) -> ContinuationResult:
        if self._state is not SegmentState.IDLE:
            raise RuntimeError(f"Controller already used (state={self._state.value})")

        in_flight = messages
        segments: list[StreamSegment] = []

        while True:
            self._state = SegmentState.CALLING
            self._calls += 1
            try:
                segment = await self._call_segment(in_flight)
            except BaseException:
                self._state = SegmentState.FAILED
                raise

            segments.append(segment)
            self._usage.add(segment.usage)

            if segment.finish_reason != FINISH_LENGTH:
                self._state = SegmentState.COMPLETE
                return ContinuationResult(
                    text="".join(s.text for s in segments),
                    segments=segments,
                    finish_reason=segment.finish_reason,
                )

            if self._calls >= self._max_segments:
                self._state = SegmentState.FAILED
                self._log.error(
                    f"Segment budget exhausted after {self._calls} calls; response still truncated"
                )
                raise MaxSegmentsReachedError(self._max_segments, self._provider)

            self._state = SegmentState.NEEDS_CONTINUATION
            self._log.info(
                f"Segment {self._calls} cut off by output limit "
                f"({len(segment.text):,} chars); continuing, {self.remaining_segments} segment(s) left"
            )
            in_flight = self._continue_with(in_flight, segment)
