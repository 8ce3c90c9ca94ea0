import asyncio
import unittest

from sitechat.continuation import CONTINUE_PROMPT, SegmentContinuationController, SegmentState
from sitechat.errors import MaxSegmentsReachedError
from sitechat.models import CumulativeUsage, Message, StreamSegment, Usage


class _ScriptedCalls:
    def __init__(self, segments: list[StreamSegment]):
        self._segments = list(segments)
        self.received: list = []

    async def __call__(self, messages) -> StreamSegment:
        self.received.append(messages if isinstance(messages, str) else list(messages))
        return self._segments.pop(0)


def _segment(text: str, finish_reason: str, prompt: int = 10, completion: int = 5) -> StreamSegment:
    return StreamSegment(text=text, finish_reason=finish_reason, usage=Usage.of(prompt, completion))


class SegmentContinuationControllerTests(unittest.TestCase):
    def test_stitches_segments_and_sums_usage(self) -> None:
        calls = _ScriptedCalls([
            _segment("<div>", "length", 100, 50),
            _segment("hello", "length", 160, 40),
            _segment("</div>", "stop", 210, 10),
        ])
        usage = CumulativeUsage()
        controller = SegmentContinuationController(calls, usage=usage, max_segments=4)

        result = asyncio.run(controller.run([Message.create("user", "Build a page")]))

        self.assertEqual("<div>hello</div>", result.text)
        self.assertEqual("stop", result.finish_reason)
        self.assertEqual(3, len(result.segments))
        self.assertEqual(3, controller.calls)
        self.assertEqual(SegmentState.COMPLETE, controller.state)
        self.assertEqual(470, usage.prompt_tokens)
        self.assertEqual(100, usage.completion_tokens)
        self.assertEqual(570, usage.total_tokens)

    def test_continuation_appends_partial_and_prompt(self) -> None:
        calls = _ScriptedCalls([_segment("part one", "length"), _segment(" part two", "stop")])
        controller = SegmentContinuationController(calls, usage=CumulativeUsage())
        original = [Message.create("user", "Write a long page")]

        asyncio.run(controller.run(original))

        self.assertEqual(1, len(calls.received[0]))
        second = calls.received[1]
        self.assertEqual(3, len(second))
        self.assertEqual(("assistant", "part one"), (second[1].role, second[1].content))
        self.assertEqual(("user", CONTINUE_PROMPT), (second[2].role, second[2].content))
        for synthetic in second[1:]:
            self.assertIn("no-store", synthetic.annotations)
        # The caller's list is not mutated
        self.assertEqual(1, len(original))

    def test_custom_continuation_builder(self) -> None:
        calls = _ScriptedCalls([_segment("one", "length"), _segment(" two", "stop")])
        built: list[tuple[str, str]] = []

        def continue_with(in_flight, segment):
            built.append((in_flight, segment.text))
            return in_flight + "|continued"

        controller = SegmentContinuationController(calls, usage=CumulativeUsage(), continue_with=continue_with)

        result = asyncio.run(controller.run("opaque"))

        self.assertEqual("one two", result.text)
        self.assertEqual([("opaque", "one")], built)
        self.assertEqual(["opaque", "opaque|continued"], calls.received)

    def test_raises_after_exactly_max_segments(self) -> None:
        calls = _ScriptedCalls([_segment(str(i), "length") for i in range(5)])
        usage = CumulativeUsage()
        controller = SegmentContinuationController(calls, usage=usage, max_segments=4, provider="openai")

        with self.assertRaises(MaxSegmentsReachedError) as ctx:
            asyncio.run(controller.run([Message.create("user", "hi")]))

        self.assertEqual(4, len(calls.received))
        self.assertEqual(SegmentState.FAILED, controller.state)
        self.assertEqual(0, controller.remaining_segments)
        self.assertEqual("max_segments", ctx.exception.code)
        self.assertEqual("openai", ctx.exception.classified.provider)
        self.assertEqual(60, usage.total_tokens)

    def test_non_length_reasons_complete(self) -> None:
        for reason in ("stop", "tool-calls", "error"):
            with self.subTest(reason=reason):
                controller = SegmentContinuationController(
                    _ScriptedCalls([_segment("x", reason)]), usage=CumulativeUsage()
                )
                result = asyncio.run(controller.run([Message.create("user", "hi")]))
                self.assertEqual(reason, result.finish_reason)
                self.assertEqual(1, controller.calls)

    def test_call_failure_marks_failed(self) -> None:
        async def failing(messages):
            raise RuntimeError("boom")

        controller = SegmentContinuationController(failing, usage=CumulativeUsage())
        with self.assertRaises(RuntimeError):
            asyncio.run(controller.run([Message.create("user", "hi")]))
        self.assertEqual(SegmentState.FAILED, controller.state)

    def test_controller_is_single_use(self) -> None:
        controller = SegmentContinuationController(
            _ScriptedCalls([_segment("x", "stop")]), usage=CumulativeUsage()
        )
        asyncio.run(controller.run([Message.create("user", "hi")]))
        with self.assertRaises(RuntimeError):
            asyncio.run(controller.run([Message.create("user", "again")]))

    def test_rejects_zero_budget(self) -> None:
        with self.assertRaises(ValueError):
            SegmentContinuationController(_ScriptedCalls([]), usage=CumulativeUsage(), max_segments=0)


if __name__ == "__main__":
    unittest.main()
