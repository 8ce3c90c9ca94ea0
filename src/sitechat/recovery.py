from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum

from loguru import logger
from tenacity import RetryCallState, wait_exponential, wait_random

from sitechat.models import RecoveryState

DEFAULT_TIMEOUT_MS = 45_000
DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_RETRY_DELAY_MS = 1_000
DEFAULT_MAX_RETRY_DELAY_MS = 30_000
RETRY_JITTER = 0.3


class MonitorPhase(str, Enum):
    IDLE = "idle"
    MONITORING = "monitoring"
    EXHAUSTED = "exhausted"
    STOPPED = "stopped"


class StreamRecoveryMonitor:
    """Watches a provider stream for stalls.

    Advisory only: when no activity is seen for ``timeout_ms`` the monitor calls
    ``on_timeout`` once for that stall. The caller aborts and re-issues the call.
    The first ``max_retries`` stalls are recoverable; the next one marks the
    monitor exhausted and the caller must treat the failure as terminal.

    Before re-issuing a recoverable stall the caller awaits ``recover()``, which
    backs off exponentially with up to 30% jitter and then calls ``on_recovery``.
    """

    def __init__(
        self,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_retry_delay_ms: int = DEFAULT_BASE_RETRY_DELAY_MS,
        max_retry_delay_ms: int = DEFAULT_MAX_RETRY_DELAY_MS,
        on_timeout: Callable[[RecoveryState, bool], None] | None = None,
        on_recovery: Callable[[RecoveryState], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        log=logger,
    ):
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        self._clock = clock
        self._on_timeout = on_timeout
        self._on_recovery = on_recovery
        self._sleep = sleep
        self._log = log
        self._state = RecoveryState(
            last_activity_timestamp=clock(),
            retry_count=0,
            max_retries=max(0, max_retries),
            timeout_ms=timeout_ms,
            base_retry_delay_ms=max(0, base_retry_delay_ms),
            max_retry_delay_ms=max(0, max_retry_delay_ms),
        )
        self._phase = MonitorPhase.IDLE
        self._stalls = 0
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> RecoveryState:
        return self._state

    @property
    def phase(self) -> MonitorPhase:
        return self._phase

    @property
    def exhausted(self) -> bool:
        return self._phase is MonitorPhase.EXHAUSTED

    @property
    def stalls(self) -> int:
        return self._stalls

    def start_monitoring(self, *, watch: bool = True) -> None:
        if self._phase is MonitorPhase.EXHAUSTED:
            return
        self._phase = MonitorPhase.MONITORING
        self._state.last_activity_timestamp = self._clock()
        if watch and self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._watch())

    def update_activity(self) -> None:
        self._state.last_activity_timestamp = self._clock()

    def poll(self, now: float | None = None) -> bool:
        """Check for a stall at ``now``. Returns True if a stall was handled."""
        if self._phase is not MonitorPhase.MONITORING:
            return False
        now = self._clock() if now is None else now
        idle_ms = (now - self._state.last_activity_timestamp) * 1000
        if idle_ms < self._state.timeout_ms:
            return False
        self._handle_stall(now)
        return True

    def stop(self) -> None:
        """Stop watching. Idempotent; a later ``start_monitoring`` re-arms unless exhausted."""
        if self._phase is not MonitorPhase.EXHAUSTED:
            self._phase = MonitorPhase.STOPPED
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def retry_delay(self, attempt: int | None = None) -> float:
        """Backoff in seconds before recovery ``attempt`` (default: the latest one)."""
        retry_state = RetryCallState(None, None, (), {})
        retry_state.attempt_number = max(1, attempt or self._state.retry_count)
        backoff = wait_exponential(
            multiplier=self._state.base_retry_delay_ms / 1000,
            max=self._state.max_retry_delay_ms / 1000,
        )(retry_state)
        return backoff + wait_random(0, backoff * RETRY_JITTER)(retry_state)

    async def recover(self) -> float:
        """Wait out the backoff for the latest stall, then signal ``on_recovery``."""
        if self._phase is MonitorPhase.EXHAUSTED:
            raise RuntimeError("Recovery budget exhausted")
        delay = self.retry_delay()
        self._log.info(f"Waiting {delay * 1000:.0f}ms before recovery attempt {self._state.retry_count}")
        await self._sleep(delay)
        if self._on_recovery is not None:
            self._on_recovery(self._state)
        return delay

    def status(self) -> dict:
        return {
            "phase": self._phase.value,
            "retryCount": self._state.retry_count,
            "maxRetries": self._state.max_retries,
            "lastActivity": self._state.last_activity_timestamp,
            "timeSinceLastActivityMs": int((self._clock() - self._state.last_activity_timestamp) * 1000),
        }

    def _handle_stall(self, now: float) -> None:
        self._stalls += 1
        terminal = self._state.retry_count >= self._state.max_retries
        if terminal:
            self._phase = MonitorPhase.EXHAUSTED
            self._log.error(
                f"Stream stalled for {self._state.timeout_ms}ms with no recovery attempts left "
                f"({self._state.retry_count}/{self._state.max_retries})"
            )
        else:
            self._state.retry_count += 1
            # Re-arm from the stall so the re-issued call gets a full window.
            self._state.last_activity_timestamp = now
            self._log.warning(
                f"Stream stalled for {self._state.timeout_ms}ms; "
                f"recovery attempt {self._state.retry_count}/{self._state.max_retries}"
            )

        if self._on_timeout is not None:
            self._on_timeout(self._state, terminal)

    async def _watch(self) -> None:
        try:
            while self._phase is MonitorPhase.MONITORING:
                deadline = self._state.last_activity_timestamp + self._state.timeout_ms / 1000
                await asyncio.sleep(max(0.0, deadline - self._clock()))
                self.poll()
        finally:
            if self._task is asyncio.current_task():
                self._task = None
