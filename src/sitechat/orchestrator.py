from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from sitechat.chat_summary import create_chat_summary
from sitechat.context_selection import DEFAULT_MAX_FILES, ContextSelectionError, select_context
from sitechat.continuation import CONTINUE_PROMPT, DEFAULT_MAX_SEGMENTS, SegmentContinuationController
from sitechat.errors import (
    ClassifiedError,
    ErrorCategory,
    OrchestrationError,
    StreamStalledError,
    classify_error,
)
from sitechat.message_merge import merge_message
from sitechat.models import ChatRequest, CumulativeUsage, Message, RecoveryState, StreamSegment, Usage, new_id
from sitechat.persistence.conversation_store import ConversationStore
from sitechat.persistence.injection_store import DEFAULT_TTL_SECONDS, PendingInjectionStore
from sitechat.persistence.session_store import SessionStore
from sitechat.provider import LLMProvider
from sitechat.recovery import (
    DEFAULT_BASE_RETRY_DELAY_MS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY_MS,
    DEFAULT_TIMEOUT_MS,
    StreamRecoveryMonitor,
)
from sitechat.step_runner import StepRunner
from sitechat.stream_events import EventChannel, StreamEvent
from sitechat.system_prompt import build_system_prompt
from sitechat.token_budget import (
    DEFAULT_PRESERVED_TAIL,
    DEFAULT_TOKEN_CEILING,
    DEFAULT_WARNING_THRESHOLD,
    BudgetResult,
    TokenBudgetGuard,
    estimate_text_tokens,
)
from sitechat.tool_mediator import DEFAULT_SESSION_MUTATING_TOOLS, ToolCallMediator
from sitechat.tool_registry import ToolRegistry

CHAT_MODES = ("discuss", "build")

_ORDER_SUMMARY = 1
_ORDER_CONTEXT = 2
_ORDER_RESPONSE = 3


@dataclass
class OrchestratorSettings:
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 8192
    temperature: float = 1.0
    token_ceiling: int = DEFAULT_TOKEN_CEILING
    token_warning_threshold: int = DEFAULT_WARNING_THRESHOLD
    preserved_tail_messages: int = DEFAULT_PRESERVED_TAIL
    max_segments: int = DEFAULT_MAX_SEGMENTS
    stream_timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_stream_retries: int = DEFAULT_MAX_RETRIES
    stream_retry_base_delay_ms: int = DEFAULT_BASE_RETRY_DELAY_MS
    stream_retry_max_delay_ms: int = DEFAULT_MAX_RETRY_DELAY_MS
    max_steps: int = 5
    max_tool_result_chars: int = 40_000
    session_mutating_tools: frozenset[str] = DEFAULT_SESSION_MUTATING_TOOLS
    pending_injection_ttl: float = DEFAULT_TTL_SECONDS
    context_max_files: int = DEFAULT_MAX_FILES
    summary_max_tokens: int = 2048


@dataclass
class ExchangeContext:
    """State owned by one exchange. Never shared across requests."""

    exchange_id: str
    chat_id: str | None
    log: Any
    usage: CumulativeUsage = field(default_factory=CumulativeUsage)
    delivered: list[str] = field(default_factory=list)
    aborted: bool = False

    @property
    def delivered_text(self) -> str:
        return "".join(self.delivered)


@dataclass
class ExchangeResult:
    exchange_id: str
    messages: list[Message]
    assistant_message: Message | None
    usage: Usage
    finish_reason: str | None = None
    error: ClassifiedError | None = None
    aborted: bool = False
    truncated: bool = False
    injected_session_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _InFlight:
    """Input of one segment: history fitted by the budget guard, then a provider-format tail."""

    history: list[Message]
    tail: tuple[dict, ...] = ()


def _continuation_turns(text: str) -> list[dict]:
    turns = [{"role": "assistant", "content": text}] if text else []
    turns.append({"role": "user", "content": CONTINUE_PROMPT})
    return turns


def _continue_in_flight(in_flight: _InFlight, segment: StreamSegment) -> _InFlight:
    text = segment.text if segment.tail_text is None else segment.tail_text
    return _InFlight(in_flight.history, tuple(segment.exchange) + tuple(_continuation_turns(text)))


class Exchange:
    """Handle for one running exchange: its outward events, abort and result."""

    def __init__(self, context: ExchangeContext, channel: EventChannel, history: list[Message] | None = None):
        self.context = context
        self.channel = channel
        self._history = list(history or [])
        self._task: asyncio.Task | None = None

    @property
    def id(self) -> str:
        return self.context.exchange_id

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def _attach(self, task: asyncio.Task) -> None:
        self._task = task
        # A task cancelled before its first step never runs its own cleanup.
        task.add_done_callback(lambda _: self.channel.close())

    async def events(self) -> AsyncIterator[StreamEvent]:
        async for event in self.channel:
            yield event

    def abort(self) -> None:
        """Stop the exchange. A no-op once it has finished or was already aborted."""
        if self._task is None or self._task.done() or self.context.aborted:
            return
        self.context.aborted = True
        self.context.log.info("Exchange aborted by client")
        self._task.cancel()

    async def wait(self) -> ExchangeResult:
        assert self._task is not None
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
        return ExchangeResult(
            exchange_id=self.context.exchange_id,
            messages=self._history,
            assistant_message=None,
            usage=self.context.usage.snapshot(),
            aborted=True,
        )


class Orchestrator:
    def __init__(
        self,
        *,
        providers: dict[str, LLMProvider],
        default_provider: str,
        tool_registry: ToolRegistry | None = None,
        injection_store: PendingInjectionStore,
        session_store: SessionStore | None = None,
        conversation_store: ConversationStore | None = None,
        settings: OrchestratorSettings | None = None,
    ):
        self._providers = providers
        self._default_provider = default_provider
        self._tool_registry = tool_registry or ToolRegistry()
        self._injection_store = injection_store
        self._session_store = session_store
        self._conversation_store = conversation_store
        self._settings = settings or OrchestratorSettings()

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    def start(self, request: ChatRequest) -> Exchange:
        exchange_id = new_id()
        context = ExchangeContext(
            exchange_id=exchange_id,
            chat_id=request.chat_id,
            log=logger.bind(exchange_id=exchange_id, chat_id=request.chat_id),
        )
        exchange = Exchange(context, EventChannel(), request.messages)
        run = _ExchangeRun(self, request, exchange)
        exchange._attach(asyncio.create_task(run.run()))
        return exchange

    async def run(self, request: ChatRequest) -> tuple[ExchangeResult, list[StreamEvent]]:
        """Run one exchange to completion, collecting every outward event."""
        exchange = self.start(request)
        events = [event async for event in exchange.events()]
        return await exchange.wait(), events

    def _resolve_provider(self, name: str | None) -> tuple[str, LLMProvider]:
        key = (name or self._default_provider).strip().lower()
        provider = self._providers.get(key)
        if provider is None:
            raise OrchestrationError(
                ClassifiedError(
                    category=ErrorCategory.UNKNOWN,
                    retryable=False,
                    status_code=400,
                    message=f"Unknown provider: {key!r}",
                    provider=key,
                    code="unknown_provider",
                )
            )
        return key, provider


class _ExchangeRun:
    def __init__(self, orchestrator: Orchestrator, request: ChatRequest, exchange: Exchange):
        self._orch = orchestrator
        self._settings = orchestrator.settings
        self._request = request
        self._exchange = exchange
        self._ctx = exchange.context
        self._channel = exchange.channel
        self._log = exchange.context.log
        self._provider_name: str | None = request.provider
        self._provider: LLMProvider | None = None
        self._model = request.model or self._settings.model
        self._guard: TokenBudgetGuard | None = None
        self._runner: StepRunner | None = None
        self._mediator: ToolCallMediator | None = None
        self._monitor: StreamRecoveryMonitor | None = None
        self._consumer: asyncio.Task | None = None
        self._stalled = False
        self._truncated = False
        self._system_tokens = 0

    async def run(self) -> ExchangeResult:
        history: list[Message] = []
        try:
            self._provider_name, self._provider = self._orch._resolve_provider(self._request.provider)
            history = self._canonical_history(self._request.messages)
            if not history:
                raise ValueError("Request has no messages")

            summary, context_files = await self._auxiliary_calls(history)
            system_prompt = build_system_prompt(
                self._request.chat_mode, summary=summary, context_files=context_files
            )
            system_tokens = estimate_text_tokens(system_prompt)
            if system_tokens >= self._settings.token_ceiling // 2 and context_files:
                self._log.warning(f"System prompt too large (~{system_tokens:,} tokens); dropping code context")
                system_prompt = build_system_prompt(self._request.chat_mode, summary=summary)
                system_tokens = estimate_text_tokens(system_prompt)

            self._system_tokens = system_tokens
            self._guard = TokenBudgetGuard(
                max(1, self._settings.token_ceiling - system_tokens),
                self._settings.token_warning_threshold,
                preserved_tail=self._settings.preserved_tail_messages,
            )
            self._mediator = ToolCallMediator(
                channel=self._channel,
                injection_store=self._orch._injection_store,
                session_store=self._orch._session_store,
                user_id=self._request.user_id,
                session_mutating_tools=self._settings.session_mutating_tools,
                injection_ttl=self._settings.pending_injection_ttl,
                log=self._log,
            )
            await self._mediator.start()
            self._runner = StepRunner(
                provider=self._provider,
                model=self._model,
                max_tokens=self._settings.max_tokens,
                temperature=self._settings.temperature,
                system_prompt=system_prompt,
                tool_map=self._enabled_tools(),
                tool_choice=self._tool_choice(),
                max_steps=self._settings.max_steps,
                max_tool_result_chars=self._settings.max_tool_result_chars,
                token_ceiling=self._guard.ceiling,
                result_filter=self._mediator.filter_result,
                log=self._log,
            )
            self._monitor = StreamRecoveryMonitor(
                timeout_ms=self._settings.stream_timeout_ms,
                max_retries=self._settings.max_stream_retries,
                base_retry_delay_ms=self._settings.stream_retry_base_delay_ms,
                max_retry_delay_ms=self._settings.stream_retry_max_delay_ms,
                on_timeout=self._on_stall,
                on_recovery=self._on_recovery,
                log=self._log,
            )

            self._channel.emit_progress("response", "in-progress", "Generating response", order=_ORDER_RESPONSE)
            controller = SegmentContinuationController(
                self._stream_segment,
                usage=self._ctx.usage,
                max_segments=self._settings.max_segments,
                continue_with=_continue_in_flight,
                provider=self._provider_name,
                log=self._log,
            )
            result = await controller.run(_InFlight(history))
            await self._mediator.drain()

            assistant = Message.create("assistant", result.text)
            messages = merge_message(history, assistant, log=self._log)
            self._channel.emit_annotation("usage", {"usage": self._ctx.usage.to_dict()})
            self._channel.emit_progress("response", "complete", "Response generated", order=_ORDER_RESPONSE)
            self._channel.emit_finish({
                "finishReason": result.finish_reason,
                "messageId": assistant.id,
                "segments": len(result.segments),
            })
            self._persist(messages)
            self._log.info(
                f"Exchange complete: {len(result.segments)} segment(s), {len(result.text):,} chars, "
                f"usage={self._ctx.usage.to_dict()}"
            )
            return self._result(messages, assistant, finish_reason=result.finish_reason)

        except asyncio.CancelledError:
            if not self._ctx.aborted:
                raise
            return self._aborted_result(history)

        except Exception as ex:
            if self._ctx.aborted:
                return self._aborted_result(history)
            classified = classify_error(ex, self._provider_name)
            if isinstance(ex, OrchestrationError):
                self._log.error(f"Exchange failed ({classified.code or classified.category.value}): {ex}")
            else:
                self._log.exception(f"Exchange failed ({classified.category.value}): {ex}")
            self._channel.emit_error(classified.to_payload())
            partial = self._partial_message()
            messages = merge_message(history, partial, log=self._log) if partial else history
            return self._result(messages, partial, error=classified)

        finally:
            if self._monitor is not None:
                self._monitor.stop()
            if self._consumer is not None and not self._consumer.done():
                self._consumer.cancel()
            if self._mediator is not None:
                await self._mediator.close()
            self._channel.close()

    def _canonical_history(self, incoming: Iterable[Message]) -> list[Message]:
        history: list[Message] = []
        for message in incoming:
            history = merge_message(history, message, log=self._log)
        return history

    def _enabled_tools(self) -> dict:
        if self._request.chat_mode == "discuss":
            return {}
        return self._orch._tool_registry.enabled(sorted(self._request.enabled_tools))

    def _tool_choice(self) -> str:
        if self._request.chat_mode == "discuss":
            return "none"
        return self._request.tool_choice

    async def _auxiliary_calls(self, history: list[Message]) -> tuple[str | None, dict[str, str] | None]:
        if not self._request.context_optimization:
            return None, None

        user_turns = sum(1 for m in history if m.role == "user")
        want_summary = user_turns > 1
        want_context = bool(self._request.files)

        async def nothing() -> None:
            return None

        summary, context_files = await asyncio.gather(
            self._summarize(history) if want_summary else nothing(),
            self._select_context(history) if want_context else nothing(),
        )
        return summary, context_files

    async def _summarize(self, history: list[Message]) -> str | None:
        self._channel.emit_progress("summary", "in-progress", "Analysing request", order=_ORDER_SUMMARY)
        try:
            summary, usage = await create_chat_summary(
                self._provider,
                self._model,
                history[:-1],
                max_tokens=self._settings.summary_max_tokens,
            )
        except Exception as ex:
            self._log.warning(f"Chat summary failed: {ex}. Continuing without summary.")
            self._channel.emit_progress("summary", "complete", "Summary skipped", order=_ORDER_SUMMARY)
            return None
        self._ctx.usage.add(usage)
        self._channel.emit_annotation("chatSummary", {"summary": summary, "messageId": history[-1].id})
        self._channel.emit_progress("summary", "complete", "Analysis complete", order=_ORDER_SUMMARY)
        return summary

    async def _select_context(self, history: list[Message]) -> dict[str, str] | None:
        self._channel.emit_progress("context", "in-progress", "Determining files to read", order=_ORDER_CONTEXT)
        try:
            files = select_context(
                history,
                self._request.files,
                recently_edited=self._request.recently_edited,
                max_files=self._settings.context_max_files,
            )
        except ContextSelectionError as ex:
            self._log.warning(f"Context selection failed: {ex}")
            self._channel.emit_progress("context", "complete", "No relevant files", order=_ORDER_CONTEXT)
            return None
        self._channel.emit_annotation("codeContext", {"files": sorted(files)})
        self._channel.emit_progress("context", "complete", f"Selected {len(files)} files", order=_ORDER_CONTEXT)
        return files

    def _budgeted(self, messages: list[Message]) -> list[Message]:
        budget: BudgetResult = self._guard.apply(messages)
        if budget.over_warning:
            self._log.warning(
                f"History is ~{budget.tokens_before:,} tokens, over the warning threshold "
                f"({self._settings.token_warning_threshold:,})"
            )
        if budget.emergency:
            self._log.error(
                f"Emergency truncation: even the last {self._settings.preserved_tail_messages} messages exceed "
                f"the ceiling; sending only the newest message (~{budget.tokens_after:,} tokens)"
            )
        elif budget.truncated:
            self._log.info(
                f"Truncated history from ~{budget.tokens_before:,} to ~{budget.tokens_after:,} tokens, "
                f"{budget.omitted_count} message(s) omitted"
            )
        self._truncated = self._truncated or budget.truncated
        return budget.messages

    async def _stream_segment(self, in_flight: _InFlight) -> StreamSegment:
        carried = list(in_flight.tail)
        texts: list[str] = []

        while True:
            parts: list[str] = []
            tail_parts: list[str] = []
            outcome: dict[str, Any] = {}
            base = [m.to_provider_dict() for m in self._budgeted(in_flight.history)]
            self._stalled = False
            self._monitor.start_monitoring()
            self._consumer = asyncio.create_task(self._consume(base, carried, parts, tail_parts, outcome))
            try:
                await asyncio.wait({self._consumer})
            except asyncio.CancelledError:
                self._consumer.cancel()
                raise
            finally:
                self._monitor.stop()

            consumer, self._consumer = self._consumer, None
            texts.extend(parts)

            if not consumer.cancelled():
                consumer.result()
                return StreamSegment(
                    text="".join(texts),
                    finish_reason=outcome.get("finish_reason", "stop"),
                    usage=outcome.get("usage") or Usage(),
                    exchange=tuple(self._runner.exchange),
                    tail_text="".join(tail_parts),
                )

            if not self._stalled:
                raise asyncio.CancelledError()
            partial = "".join(tail_parts)
            self._count_stalled_usage(partial)
            if self._monitor.exhausted:
                raise StreamStalledError(self._monitor.state.retry_count, self._provider_name)

            await self._monitor.recover()
            # Completed tool steps are replayed, never re-run.
            carried = self._runner.exchange
            if partial:
                carried += _continuation_turns(partial)

    async def _consume(
        self,
        base: list[dict],
        carried: list[dict],
        parts: list[str],
        tail_parts: list[str],
        outcome: dict[str, Any],
    ) -> None:
        async for event in self._runner.stream(base, carried):
            self._monitor.update_activity()
            if event.type == "text-delta":
                if self._ctx.aborted:
                    return
                parts.append(event.text)
                tail_parts.append(event.text)
                self._ctx.delivered.append(event.text)
                self._channel.emit_text(event.text)
            elif event.type == "tool-call":
                # Only provider silence is a stall; tool execution is not watched.
                self._monitor.stop()
                self._log.debug(f"Tool call {event.invocation.tool_name} ({event.invocation.tool_call_id})")
            elif event.type == "tool-result":
                self._monitor.start_monitoring()
                tail_parts.clear()
                self._mediator.observe(event.invocation)
            elif event.type == "finish":
                outcome["finish_reason"] = event.finish_reason
                outcome["usage"] = event.usage
            elif event.type == "error":
                raise event.error

    def _count_stalled_usage(self, partial: str) -> None:
        # A stalled call never reports usage; completed steps are exact, the stalled one estimated.
        stalled = Usage.of(self._system_tokens + self._runner.last_prompt_tokens, estimate_text_tokens(partial))
        usage = self._runner.usage + stalled
        self._ctx.usage.add(usage)
        self._log.warning(
            f"Stalled call counted as ~{usage.total_tokens:,} tokens "
            f"({stalled.total_tokens:,} estimated for the unfinished step)"
        )

    def _on_stall(self, state: RecoveryState, terminal: bool) -> None:
        self._stalled = True
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()

    def _on_recovery(self, state: RecoveryState) -> None:
        self._log.info(f"Re-issuing stalled call (recovery attempt {state.retry_count}/{state.max_retries})")

    def _partial_message(self) -> Message | None:
        text = self._ctx.delivered_text
        if not text:
            return None
        return Message.create("assistant", text, annotations={"partial"})

    def _aborted_result(self, history: list[Message]) -> ExchangeResult:
        text = self._ctx.delivered_text
        assistant = Message.create("assistant", text, annotations={"aborted"}) if text else None
        messages = merge_message(history, assistant, log=self._log) if assistant else history
        self._log.info(f"Exchange aborted after {len(text):,} delivered chars")
        return self._result(messages, assistant, aborted=True)

    def _persist(self, messages: list[Message]) -> None:
        store = self._orch._conversation_store
        if store is None or not self._request.chat_id:
            return
        store.append_messages(self._request.chat_id, messages)

    def _result(
        self,
        messages: list[Message],
        assistant: Message | None,
        *,
        finish_reason: str | None = None,
        error: ClassifiedError | None = None,
        aborted: bool = False,
    ) -> ExchangeResult:
        return ExchangeResult(
            exchange_id=self._ctx.exchange_id,
            messages=messages,
            assistant_message=assistant,
            usage=self._ctx.usage.snapshot(),
            finish_reason=finish_reason,
            error=error,
            aborted=aborted,
            truncated=self._truncated,
            injected_session_ids=list(self._mediator.injected_session_ids) if self._mediator else [],
        )
