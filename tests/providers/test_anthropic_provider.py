import asyncio
import unittest
from types import SimpleNamespace

from sitechat.providers.anthropic_provider import AnthropicProvider, _split_system
from tests.fakes import FakeTool


class _FakeStream:
    def __init__(self, events: list[object]):
        self._events = events
        self.closed = False

    def __aiter__(self):
        self._iter = iter(self._events)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration

    async def close(self):
        self.closed = True


class _FakeMessages:
    def __init__(self, stream=None, create_response=None):
        self._stream = stream
        self._create_response = create_response
        self.requests: list[dict] = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if kwargs.get("stream"):
            return self._stream
        return self._create_response


class _FakeClient:
    def __init__(self, stream=None, create_response=None):
        self.messages = _FakeMessages(stream, create_response)


def _text_delta(index: int, text: str):
    return SimpleNamespace(type="content_block_delta", index=index, delta=SimpleNamespace(type="text_delta", text=text))


def _message_start(input_tokens: int):
    return SimpleNamespace(
        type="message_start",
        message=SimpleNamespace(usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=1)),
    )


def _message_delta(stop_reason: str, output_tokens: int):
    return SimpleNamespace(
        type="message_delta",
        delta=SimpleNamespace(stop_reason=stop_reason),
        usage=SimpleNamespace(output_tokens=output_tokens),
    )


class AnthropicProviderTests(unittest.TestCase):
    def _make_provider(self, stream=None, create_response=None) -> AnthropicProvider:
        provider = AnthropicProvider.__new__(AnthropicProvider)
        provider._client = _FakeClient(stream, create_response)
        return provider

    def _collect(self, provider, messages=None, tools=()):
        async def scenario():
            return [
                event
                async for event in provider.stream_step(
                    "m", 100, 0.5, "sys", messages or [{"role": "user", "content": "hi"}], list(tools)
                )
            ]

        return asyncio.run(scenario())

    def test_convert_tools(self) -> None:
        provider = self._make_provider()
        result = provider.convert_tools([FakeTool("readFile")])
        self.assertEqual("readFile", result[0]["name"])
        self.assertEqual("readFile tool", result[0]["description"])
        self.assertIn("properties", result[0]["input_schema"])

    def test_stream_text_and_tool_use(self) -> None:
        stream = _FakeStream([
            _message_start(10),
            SimpleNamespace(type="content_block_start", index=0, content_block=SimpleNamespace(type="text")),
            _text_delta(0, "Hello"),
            SimpleNamespace(
                type="content_block_start",
                index=1,
                content_block=SimpleNamespace(type="tool_use", id="t1", name="readFile"),
            ),
            SimpleNamespace(
                type="content_block_delta",
                index=1,
                delta=SimpleNamespace(type="input_json_delta", partial_json='{"path": '),
            ),
            SimpleNamespace(
                type="content_block_delta",
                index=1,
                delta=SimpleNamespace(type="input_json_delta", partial_json='"src/App.tsx"}'),
            ),
            _message_delta("tool_use", 7),
        ])
        provider = self._make_provider(stream=stream)

        events = self._collect(provider)

        self.assertEqual(["text-delta", "tool-call", "finish"], [e.type for e in events])
        self.assertEqual("Hello", events[0].text)
        self.assertEqual("readFile", events[1].invocation.tool_name)
        self.assertEqual({"path": "src/App.tsx"}, events[1].invocation.args)
        self.assertEqual("tool-calls", events[2].finish_reason)
        self.assertEqual(17, events[2].usage.total_tokens)
        self.assertTrue(stream.closed)

    def test_max_tokens_maps_to_length(self) -> None:
        stream = _FakeStream([_message_start(3), _text_delta(0, "cut"), _message_delta("max_tokens", 100)])
        events = self._collect(self._make_provider(stream=stream))
        self.assertEqual("length", events[-1].finish_reason)

    def test_stream_closed_when_consumer_stops(self) -> None:
        stream = _FakeStream([_message_start(3), _text_delta(0, "a"), _text_delta(0, "b")])
        provider = self._make_provider(stream=stream)

        async def scenario():
            gen = provider.stream_step("m", 10, 0, "", [{"role": "user", "content": "hi"}], [])
            first = await gen.__anext__()
            await gen.aclose()
            return first

        first = asyncio.run(scenario())
        self.assertEqual("a", first.text)
        self.assertTrue(stream.closed)

    def test_system_messages_move_to_system_prompt(self) -> None:
        stream = _FakeStream([_message_start(1), _message_delta("end_turn", 1)])
        provider = self._make_provider(stream=stream)

        self._collect(
            provider,
            messages=[
                {"role": "system", "content": "2 earlier messages omitted to fit context window"},
                {"role": "user", "content": "hi"},
            ],
        )

        request = provider._client.messages.requests[0]
        self.assertEqual("sys\n\n2 earlier messages omitted to fit context window", request["system"])
        self.assertEqual([{"role": "user", "content": "hi"}], request["messages"])
        self.assertNotIn("tools", request)

    def test_split_system_without_prompt(self) -> None:
        system, messages = _split_system("", [{"role": "user", "content": "hi"}])
        self.assertEqual("", system)
        self.assertEqual(1, len(messages))

    def test_create_message_returns_text_and_usage(self) -> None:
        response = SimpleNamespace(
            content=[SimpleNamespace(type="text", text="Summary text")],
            usage=SimpleNamespace(input_tokens=20, output_tokens=4),
        )
        provider = self._make_provider(create_response=response)

        text, usage = asyncio.run(provider.create_message("m", 100, 0, [{"role": "user", "content": "sum"}]))

        self.assertEqual("Summary text", text)
        self.assertEqual(24, usage.total_tokens)


if __name__ == "__main__":
    unittest.main()
