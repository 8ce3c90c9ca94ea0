import json
from collections.abc import AsyncIterator

import openai
from loguru import logger
from tenacity import retry

from sitechat.models import (
    FINISH_ERROR,
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
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.InternalServerError,
)

# Map OpenAI finish reasons to normalized finish reasons.
_FINISH_REASON_MAP = {
    "stop": FINISH_STOP,
    "tool_calls": FINISH_TOOL_CALLS,
    "function_call": FINISH_TOOL_CALLS,
    "length": FINISH_LENGTH,
    "content_filter": FINISH_ERROR,
}


def _to_openai_messages(
    system_prompt: str,
    messages: list[dict],
) -> list[dict]:
    """Convert internal (Anthropic-style) messages to OpenAI chat format."""
    out: list[dict] = []

    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        role = msg["role"]
        content = msg.get("content", "")

        if role == "assistant":
            if isinstance(content, str):
                out.append({"role": "assistant", "content": content})
                continue

            text_parts: list[str] = []
            tool_calls: list[dict] = []
            for block in content:
                if block.get("type") == "text":
                    text_parts.append(block["text"])
                elif block.get("type") == "tool_use":
                    tool_calls.append({
                        "id": block["id"],
                        "type": "function",
                        "function": {
                            "name": block["name"],
                            "arguments": json.dumps(block["input"]),
                        },
                    })

            oai_msg: dict = {"role": "assistant", "content": "\n".join(text_parts) if text_parts else None}
            if tool_calls:
                oai_msg["tool_calls"] = tool_calls
            out.append(oai_msg)

        elif role == "user":
            if isinstance(content, str):
                out.append({"role": "user", "content": content})
                continue

            # Content is a list of blocks; tool_result blocks become tool messages
            text_parts_user: list[str] = []
            for block in content:
                if isinstance(block, str):
                    text_parts_user.append(block)
                elif block.get("type") == "text":
                    text_parts_user.append(block["text"])
                elif block.get("type") == "tool_result":
                    tool_content = block.get("content", "")
                    if not isinstance(tool_content, str):
                        tool_content = json.dumps(tool_content)
                    out.append({
                        "role": "tool",
                        "tool_call_id": block["tool_use_id"],
                        "content": tool_content,
                    })

            if text_parts_user:
                out.append({"role": "user", "content": "\n".join(text_parts_user)})

        else:
            out.append({"role": role, "content": content if isinstance(content, str) else str(content)})

    return out


def _to_openai_tools(tools: list[dict]) -> list[dict]:
    """Convert internal tool dicts to OpenAI function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {}),
            },
        }
        for t in tools
    ]


class OpenAIProvider:
    name = "openai"

    def __init__(self, api_key: str):
        self._client = openai.AsyncOpenAI(api_key=api_key)

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        return to_internal_tools(tools)

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def _open_stream(self, **kwargs):
        return await self._client.chat.completions.create(**kwargs)

    async def stream_step(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> AsyncIterator[ProviderEvent]:
        oai_messages = _to_openai_messages(system_prompt, messages)
        oai_tools = _to_openai_tools(tools)

        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(oai_messages)}, tools={len(oai_tools)}"
        )
        kwargs: dict = dict(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=oai_messages,
            stream=True,
            stream_options={"include_usage": True},
        )
        if oai_tools:
            kwargs["tools"] = oai_tools

        stream = await self._open_stream(**kwargs)

        text_len = 0
        # tool_calls_acc: index -> {"id", "name", "arguments_parts"}
        tool_calls_acc: dict[int, dict] = {}
        finish_reason: str | None = None
        usage = Usage()

        try:
            async for chunk in stream:
                if getattr(chunk, "usage", None) is not None:
                    usage = Usage.of(chunk.usage.prompt_tokens, chunk.usage.completion_tokens)

                choice = chunk.choices[0] if chunk.choices else None
                if choice is None:
                    continue

                if choice.finish_reason:
                    finish_reason = choice.finish_reason

                delta = choice.delta
                if delta is None:
                    continue

                if delta.content:
                    text_len += len(delta.content)
                    yield ProviderEvent.text_delta(delta.content)

                # Tool calls arrive incrementally by index
                if delta.tool_calls:
                    for tc_delta in delta.tool_calls:
                        idx = tc_delta.index
                        if idx not in tool_calls_acc:
                            tool_calls_acc[idx] = {"id": "", "name": "", "arguments_parts": []}
                        acc = tool_calls_acc[idx]
                        if tc_delta.id:
                            acc["id"] = tc_delta.id
                        if tc_delta.function:
                            if tc_delta.function.name:
                                acc["name"] = tc_delta.function.name
                            if tc_delta.function.arguments:
                                acc["arguments_parts"].append(tc_delta.function.arguments)
        finally:
            await stream.close()

        for idx in sorted(tool_calls_acc):
            acc = tool_calls_acc[idx]
            raw_args = "".join(acc["arguments_parts"])
            try:
                parsed_input = json.loads(raw_args) if raw_args else {}
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse tool call arguments: {raw_args[:200]}")
                parsed_input = {}
            yield ProviderEvent.tool_call(
                ToolInvocation(tool_name=acc["name"], tool_call_id=acc["id"], args=parsed_input)
            )

        normalized = _FINISH_REASON_MAP.get(finish_reason or "stop", FINISH_STOP)
        logger.debug(
            f"API response: finish_reason={normalized}, "
            f"text_len={text_len}, tool_calls={len(tool_calls_acc)}"
        )
        yield ProviderEvent.finish(normalized, usage)

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> tuple[str, Usage]:
        """Non-streaming message creation (used for chat summaries)."""
        oai_messages = _to_openai_messages("", messages)
        logger.debug(f"Auxiliary API request: model={model}, messages={len(oai_messages)}")
        response = await self._client.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=oai_messages,
        )
        text = response.choices[0].message.content or ""
        usage = Usage()
        if getattr(response, "usage", None) is not None:
            usage = Usage.of(response.usage.prompt_tokens, response.usage.completion_tokens)
        logger.debug(f"Auxiliary API response: len={len(text)}, total_tokens={usage.total_tokens}")
        return text, usage
