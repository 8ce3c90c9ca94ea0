from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

from loguru import logger

from sitechat.models import FINISH_TOOL_CALLS, ProviderEvent, ToolInvocation, Usage
from sitechat.token_budget import TokenEstimator, estimate_provider_tokens, estimate_text_tokens
from sitechat.tool import Tool

ResultFilter = Callable[[ToolInvocation], Any]

TOOL_CHOICES = ("auto", "none")


class StepRunner:
    """Runs a provider call across tool-use steps as one event stream.

    Each step streams text deltas straight through. When a step ends asking for
    tools, ``tool-call`` events are yielded before the tools run concurrently,
    then ``tool-result`` events in the order the provider requested them, and the
    next step is issued with the tool exchange appended. The stream ends with one
    ``finish`` event whose usage sums every step.

    With a ``token_ceiling`` every step is fitted before submission: tool results
    added after the caller's messages are clipped, oldest first, and if that is
    not enough the oldest step-local exchanges are dropped.
    """

    def __init__(
        self,
        *,
        provider: Any,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        tool_map: dict[str, Tool],
        tool_choice: str = "auto",
        max_steps: int = 5,
        max_tool_result_chars: int = 40_000,
        token_ceiling: int | None = None,
        estimator: TokenEstimator = estimate_text_tokens,
        result_filter: ResultFilter | None = None,
        log=logger,
    ) -> None:
        if tool_choice not in TOOL_CHOICES:
            raise ValueError(f"tool_choice must be one of {TOOL_CHOICES}, got {tool_choice!r}")
        self._provider = provider
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._system_prompt = system_prompt
        self._tool_map = tool_map
        self._tool_choice = tool_choice
        if tool_map and tool_choice == "auto":
            self._converted_tools = provider.convert_tools(list(tool_map.values()))
        else:
            self._converted_tools = []
        self._max_steps = max(1, max_steps)
        self._max_tool_result_chars = max_tool_result_chars
        self._token_ceiling = token_ceiling
        self._estimator = estimator
        self._result_filter = result_filter
        self._log = log
        self._step_messages: list[dict] = []
        self._base_count = 0
        self.usage = Usage()
        self.last_prompt_tokens = 0

    @property
    def exchange(self) -> list[dict]:
        """Messages added after the caller's own in the latest stream: completed tool steps only."""
        return list(self._step_messages[self._base_count:])

    async def stream(self, messages: list[dict], carried: Iterable[dict] = ()) -> AsyncIterator[ProviderEvent]:
        """Stream one provider call.

        ``carried`` is a step-local tail from an earlier, interrupted call. It is
        replayed after ``messages`` and is subject to the same fitting as new tool
        results.
        """
        self._step_messages = list(messages) + list(carried)
        self._base_count = len(messages)
        self.usage = Usage()
        self.last_prompt_tokens = 0

        for step in range(1, self._max_steps + 1):
            text_parts: list[str] = []
            calls: list[ToolInvocation] = []
            step_usage = Usage()
            finish_reason = "stop"

            self._step_messages = self.fit_to_ceiling(self._step_messages, self._base_count)
            self.last_prompt_tokens = estimate_provider_tokens(self._step_messages, self._estimator)

            async for event in self._provider.stream_step(
                self._model,
                self._max_tokens,
                self._temperature,
                self._system_prompt,
                list(self._step_messages),
                self._converted_tools,
            ):
                if event.type == "text-delta":
                    text_parts.append(event.text)
                    yield event
                elif event.type == "tool-call" and event.invocation is not None:
                    calls.append(event.invocation)
                elif event.type == "finish":
                    finish_reason = event.finish_reason or "stop"
                    step_usage = event.usage or Usage()
                elif event.type == "error":
                    yield event
                    return

            self.usage = self.usage + step_usage

            if finish_reason != FINISH_TOOL_CALLS or not calls:
                yield ProviderEvent.finish(finish_reason, self.usage)
                return

            for invocation in calls:
                yield ProviderEvent.tool_call(invocation)

            results = await self.execute_tools(calls)
            for invocation in results:
                yield ProviderEvent.tool_result(invocation)

            self._step_messages.append({"role": "assistant", "content": self._assistant_blocks(text_parts, results)})
            self._step_messages.append({"role": "user", "content": [self._result_block(inv) for inv in results]})

            if step == self._max_steps:
                self._log.info(f"Reached max steps ({self._max_steps}) with tool calls still pending")

        yield ProviderEvent.finish(FINISH_TOOL_CALLS, self.usage)

    def fit_to_ceiling(self, messages: list[dict], base_count: int) -> list[dict]:
        """Fit ``messages`` under the token ceiling, touching only entries from ``base_count`` on."""
        if self._token_ceiling is None:
            return messages
        overflow = estimate_provider_tokens(messages, self._estimator) - self._token_ceiling
        if overflow <= 0:
            return messages

        fitted = list(messages)
        clipped = 0
        for index in range(base_count, len(fitted)):
            if overflow <= 0:
                break
            content = fitted[index].get("content")
            if not isinstance(content, list):
                continue
            blocks = []
            for block in content:
                if overflow > 0 and block.get("type") == "tool_result" and isinstance(block.get("content"), str):
                    before = self._estimator(block["content"])
                    reduced = self._clip_result(block["content"], max(0, before - overflow))
                    after = self._estimator(reduced)
                    if after < before:
                        block = {**block, "content": reduced}
                        overflow -= before - after
                        clipped += 1
                blocks.append(block)
            fitted[index] = {**fitted[index], "content": blocks}

        if clipped:
            self._log.warning(f"Clipped {clipped} tool result(s) to fit the context window")

        dropped = 0
        while overflow > 0 and len(fitted) > base_count:
            width = 2 if self._is_tool_use(fitted[base_count]) and len(fitted) > base_count + 1 else 1
            removed = fitted[base_count:base_count + width]
            del fitted[base_count:base_count + width]
            overflow -= estimate_provider_tokens(removed, self._estimator)
            dropped += width

        if dropped:
            self._log.error(f"Dropped {dropped} step message(s) that still overflowed the context window")
        if overflow > 0:
            self._log.error(f"Messages exceed the token ceiling by ~{overflow:,} tokens before any tool step")
        return fitted

    async def execute_tools(self, calls: list[ToolInvocation]) -> list[ToolInvocation]:
        async def run_one(invocation: ToolInvocation) -> ToolInvocation:
            tool = self._tool_map.get(invocation.tool_name)
            if tool is None:
                invocation.result = f'Error: unknown tool "{invocation.tool_name}"'
                invocation.is_error = True
                return invocation
            try:
                invocation.result = await tool.execute(invocation.args)
            except Exception as ex:
                self._log.warning(f"Tool {invocation.tool_name} failed: {ex}")
                invocation.result = f'Error executing tool "{invocation.tool_name}": {ex}'
                invocation.is_error = True
                return invocation
            if self._result_filter is not None:
                invocation.result = self._result_filter(invocation)
            return invocation

        return list(await asyncio.gather(*(run_one(c) for c in calls)))

    @staticmethod
    def _is_tool_use(message: dict) -> bool:
        content = message.get("content")
        return (
            message.get("role") == "assistant"
            and isinstance(content, list)
            and any(block.get("type") == "tool_use" for block in content)
        )

    def _clip_result(self, result: str, keep_tokens: int) -> str:
        notice = f"\n\n[OUTPUT TRUNCATED TO FIT CONTEXT WINDOW: {len(result):,} characters originally]"
        body_tokens = keep_tokens - self._estimator(notice)
        if body_tokens <= 0:
            return ""
        body = result.encode("utf-8")[: body_tokens * 4].decode("utf-8", errors="ignore")
        return body + notice

    def _assistant_blocks(self, text_parts: list[str], calls: list[ToolInvocation]) -> list[dict]:
        blocks: list[dict] = []
        text = "".join(text_parts)
        if text:
            blocks.append({"type": "text", "text": text})
        for inv in calls:
            blocks.append({"type": "tool_use", "id": inv.tool_call_id, "name": inv.tool_name, "input": inv.args})
        return blocks

    def _result_block(self, invocation: ToolInvocation) -> dict:
        content = invocation.result
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False, default=str)
        block = {
            "type": "tool_result",
            "tool_use_id": invocation.tool_call_id,
            "content": self._truncate_tool_result(content, invocation.tool_name),
        }
        if invocation.is_error:
            block["is_error"] = True
        return block

    def _truncate_tool_result(self, result: str, tool_name: str) -> str:
        if self._max_tool_result_chars <= 0 or len(result) <= self._max_tool_result_chars:
            return result

        original_length = len(result)
        truncated = result[: self._max_tool_result_chars]
        message = (
            f"\n\n[OUTPUT TRUNCATED: Showing {self._max_tool_result_chars:,} "
            f"of {original_length:,} characters from {tool_name}]"
        )
        self._log.warning(
            f"{tool_name} output truncated from {original_length:,} "
            f"to {self._max_tool_result_chars:,} chars"
        )
        return truncated + message
