import json
from collections.abc import AsyncIterator

import anthropic
from loguru import logger
from tenacity import retry

from sitechat.models import (
    FINISH_LENGTH,
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    ProviderEvent,
    ToolInvocation,
    Usage,
)
from sitechat.providers.common import default_retry_kwargs, to_internal_tools
from sitechat.tool import Tool

_RETRYABLE = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
    anthropic.InternalServerError,
)

_FINISH_REASON_MAP = {
    "end_turn": FINISH_STOP,
    "stop_sequence": FINISH_STOP,
    "max_tokens": FINISH_LENGTH,
    "tool_use": FINISH_TOOL_CALLS,
}


def _split_system(system_prompt: str, messages: list[dict]) -> tuple[str, list[dict]]:
    """Move system-role history entries into the system prompt; the Messages API rejects them inline."""
    system_parts = [system_prompt] if system_prompt else []
    out: list[dict] = []
    for msg in messages:
        if msg.get("role") == "system":
            content = msg.get("content", "")
            system_parts.append(content if isinstance(content, str) else json.dumps(content))
            continue
        out.append(msg)
    return "\n\n".join(system_parts), out


class AnthropicProvider:
    name = "anthropic"

    def __init__(self, api_key: str):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        return to_internal_tools(tools)

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def _open_stream(self, **kwargs):
        return await self._client.messages.create(stream=True, **kwargs)

    async def stream_step(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> AsyncIterator[ProviderEvent]:
        system, api_messages = _split_system(system_prompt, messages)
        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(api_messages)}, tools={len(tools)}"
        )
        kwargs: dict = dict(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=api_messages,
        )
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = tools

        stream = await self._open_stream(**kwargs)

        input_tokens = 0
        output_tokens = 0
        stop_reason: str | None = None
        # index -> {"id", "name", "json_parts"}
        tool_blocks: dict[int, dict] = {}

        try:
            async for event in stream:
                if event.type == "message_start":
                    usage = getattr(event.message, "usage", None)
                    if usage is not None:
                        input_tokens = usage.input_tokens or 0
                        output_tokens = getattr(usage, "output_tokens", 0) or 0
                elif event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        tool_blocks[event.index] = {"id": block.id, "name": block.name, "json_parts": []}
                elif event.type == "content_block_delta":
                    if event.delta.type == "text_delta":
                        yield ProviderEvent.text_delta(event.delta.text)
                    elif event.delta.type == "input_json_delta" and event.index in tool_blocks:
                        tool_blocks[event.index]["json_parts"].append(event.delta.partial_json)
                elif event.type == "message_delta":
                    stop_reason = event.delta.stop_reason or stop_reason
                    if event.usage is not None:
                        output_tokens = event.usage.output_tokens or output_tokens
        finally:
            await stream.close()

        logger.debug(
            f"API response: stop_reason={stop_reason}, "
            f"input_tokens={input_tokens}, output_tokens={output_tokens}"
        )

        for idx in sorted(tool_blocks):
            acc = tool_blocks[idx]
            raw_args = "".join(acc["json_parts"])
            try:
                args = json.loads(raw_args) if raw_args else {}
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse tool call arguments: {raw_args[:200]}")
                args = {}
            yield ProviderEvent.tool_call(ToolInvocation(tool_name=acc["name"], tool_call_id=acc["id"], args=args))

        finish_reason = _FINISH_REASON_MAP.get(stop_reason or "end_turn", FINISH_STOP)
        yield ProviderEvent.finish(finish_reason, Usage.of(input_tokens, output_tokens))

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> tuple[str, Usage]:
        """Non-streaming message creation (used for chat summaries)."""
        system, api_messages = _split_system("", messages)
        logger.debug(f"Auxiliary API request: model={model}, messages={len(api_messages)}")
        kwargs: dict = dict(model=model, max_tokens=max_tokens, temperature=temperature, messages=api_messages)
        if system:
            kwargs["system"] = system
        response = await self._client.messages.create(**kwargs)
        usage = response.usage
        logger.debug(
            f"Auxiliary API response: input_tokens={usage.input_tokens}, "
            f"output_tokens={usage.output_tokens}"
        )
        text = "".join(block.text for block in response.content if block.type == "text")
        return text, Usage.of(usage.input_tokens, usage.output_tokens)
