import asyncio
import json
import unittest

from sitechat.models import ToolInvocation
from sitechat.persistence import InMemoryPendingInjectionStore, InMemorySessionStore
from sitechat.stream_events import EventChannel
from sitechat.tool_mediator import ToolCallMediator

_PAYLOAD = {"files": {"src/App.tsx": "export default function App() {}" * 200}}


def _injection_result(session_id: str | None = "s1") -> dict:
    result = {
        "hasPendingInjection": True,
        "pendingPayload": _PAYLOAD,
        "status": "generated",
        "generation": 3,
        "message": "Template ready",
    }
    if session_id is not None:
        result["sessionId"] = session_id
    return result


class _FailingInjectionStore:
    async def put(self, session_id, payload, ttl=600):
        raise RuntimeError("store unavailable")

    async def take_once(self, session_id):
        return None


class ToolCallMediatorTests(unittest.TestCase):
    def test_payload_is_stripped_and_deferred(self) -> None:
        async def scenario():
            channel = EventChannel()
            store = InMemoryPendingInjectionStore()
            mediator = ToolCallMediator(channel=channel, injection_store=store)
            await mediator.start()

            invocation = ToolInvocation("generateTemplate", "call-1", {}, result=_injection_result())
            invocation.result = mediator.filter_result(invocation)
            mediator.observe(invocation)
            await mediator.drain()
            await mediator.close()

            first = await store.take_once("s1")
            second = await store.take_once("s1")
            return invocation, channel.drain_nowait(), first, second, mediator.injected_session_ids

        invocation, events, first, second, injected = asyncio.run(scenario())

        self.assertNotIn("pendingPayload", json.dumps(invocation.result))
        self.assertEqual("s1", invocation.result["sessionId"])
        self.assertEqual(_PAYLOAD, first)
        self.assertIsNone(second)
        self.assertEqual(["s1"], injected)
        self.assertEqual(1, len(events))
        self.assertEqual(
            {"type": "templateInjection", "sessionId": "s1", "generation": 3, "status": "generated",
             "message": "Template ready"},
            events[0].data,
        )

    def test_session_id_is_generated_when_missing(self) -> None:
        async def scenario():
            mediator = ToolCallMediator(channel=EventChannel(), injection_store=InMemoryPendingInjectionStore())
            invocation = ToolInvocation("generateTemplate", "call-1", {}, result=_injection_result(None))
            return mediator.filter_result(invocation)

        result = asyncio.run(scenario())
        self.assertTrue(result["sessionId"])
        self.assertNotIn("pendingPayload", result)

    def test_results_without_marker_pass_through(self) -> None:
        async def scenario():
            mediator = ToolCallMediator(channel=EventChannel(), injection_store=InMemoryPendingInjectionStore())
            plain = {"status": "ok", "pendingPayload": "left alone"}
            return plain, mediator.filter_result(ToolInvocation("x", "c", {}, result=plain))

        plain, filtered = asyncio.run(scenario())
        self.assertIs(plain, filtered)

    def test_session_mutating_tool_broadcasts_session(self) -> None:
        async def scenario():
            channel = EventChannel()
            sessions = InMemorySessionStore()
            await sessions.set_active_session("u1", {"id": "sess-9", "step": "description"})
            mediator = ToolCallMediator(
                channel=channel,
                injection_store=InMemoryPendingInjectionStore(),
                session_store=sessions,
                user_id="u1",
            )
            await mediator.start()
            mediator.observe(ToolInvocation("collectDescription", "c1", {}, result={"ok": True}))
            mediator.observe(ToolInvocation("readFile", "c2", {}, result="content"))
            mediator.observe(ToolInvocation("collectWebsiteUrl", "c3", {}, result="bad", is_error=True))
            await mediator.drain()
            await mediator.close()
            return channel.drain_nowait()

        events = asyncio.run(scenario())

        self.assertEqual(1, len(events))
        self.assertEqual("sessionUpdate", events[0].data["type"])
        self.assertEqual("collectDescription", events[0].data["toolName"])
        self.assertEqual({"id": "sess-9", "step": "description"}, events[0].data["session"])

    def test_duplicate_observation_is_ignored(self) -> None:
        async def scenario():
            store = InMemoryPendingInjectionStore()
            channel = EventChannel()
            mediator = ToolCallMediator(channel=channel, injection_store=store)
            invocation = ToolInvocation("generateTemplate", "call-1", {}, result=_injection_result())
            invocation.result = mediator.filter_result(invocation)
            mediator.observe(invocation)
            mediator.observe(invocation)
            await mediator.drain()
            return channel.drain_nowait()

        events = asyncio.run(scenario())
        self.assertEqual(1, len(events))

    def test_store_failure_is_contained(self) -> None:
        async def scenario():
            channel = EventChannel()
            mediator = ToolCallMediator(channel=channel, injection_store=_FailingInjectionStore())
            await mediator.start()
            invocation = ToolInvocation("generateTemplate", "call-1", {}, result=_injection_result())
            invocation.result = mediator.filter_result(invocation)
            mediator.observe(invocation)
            await mediator.drain()
            await mediator.close()
            return channel.drain_nowait(), mediator.injected_session_ids

        events, injected = asyncio.run(scenario())
        self.assertEqual([], events)
        self.assertEqual([], injected)


if __name__ == "__main__":
    unittest.main()
