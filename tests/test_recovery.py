import asyncio
import unittest

from sitechat.recovery import MonitorPhase, StreamRecoveryMonitor


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StreamRecoveryMonitorTests(unittest.TestCase):
    def _make(self, clock: _Clock, max_retries: int = 2):
        fired: list[tuple[int, bool]] = []
        monitor = StreamRecoveryMonitor(
            timeout_ms=45_000,
            max_retries=max_retries,
            on_timeout=lambda state, terminal: fired.append((state.retry_count, terminal)),
            clock=clock,
        )
        monitor.start_monitoring(watch=False)
        return monitor, fired

    def test_steady_activity_never_fires(self) -> None:
        clock = _Clock()
        monitor, fired = self._make(clock)

        for _ in range(30):
            clock.advance(10)
            monitor.update_activity()
            self.assertFalse(monitor.poll())

        self.assertEqual([], fired)
        self.assertEqual(0, monitor.state.retry_count)

    def test_stall_fires_once_and_rearms(self) -> None:
        clock = _Clock()
        monitor, fired = self._make(clock)

        clock.advance(44)
        self.assertFalse(monitor.poll())
        clock.advance(1)
        self.assertTrue(monitor.poll())
        # Same instant: already handled
        self.assertFalse(monitor.poll())

        self.assertEqual([(1, False)], fired)
        self.assertEqual(MonitorPhase.MONITORING, monitor.phase)

    def test_retry_budget_exhausts_on_third_stall(self) -> None:
        clock = _Clock()
        monitor, fired = self._make(clock, max_retries=2)

        for _ in range(3):
            clock.advance(45)
            monitor.poll()

        self.assertEqual([(1, False), (2, False), (2, True)], fired)
        self.assertTrue(monitor.exhausted)
        self.assertEqual(2, monitor.state.retry_count)
        self.assertEqual(3, monitor.stalls)

        # Exhausted monitors stay quiet and cannot be re-armed
        clock.advance(100)
        self.assertFalse(monitor.poll())
        monitor.start_monitoring(watch=False)
        self.assertEqual(MonitorPhase.EXHAUSTED, monitor.phase)
        self.assertEqual(3, len(fired))

    def test_stop_is_idempotent_and_rearmable(self) -> None:
        clock = _Clock()
        monitor, fired = self._make(clock)

        monitor.stop()
        monitor.stop()
        clock.advance(100)
        self.assertFalse(monitor.poll())
        self.assertEqual(MonitorPhase.STOPPED, monitor.phase)

        monitor.start_monitoring(watch=False)
        self.assertFalse(monitor.poll())
        clock.advance(45)
        self.assertTrue(monitor.poll())
        self.assertEqual(1, len(fired))

    def test_status_reports_idle_time(self) -> None:
        clock = _Clock()
        monitor, _ = self._make(clock)
        clock.advance(2.5)

        status = monitor.status()

        self.assertEqual("monitoring", status["phase"])
        self.assertEqual(2500, status["timeSinceLastActivityMs"])
        self.assertEqual(2, status["maxRetries"])

    def test_watch_task_fires_on_real_timer(self) -> None:
        async def scenario():
            fired = asyncio.Event()
            monitor = StreamRecoveryMonitor(
                timeout_ms=20,
                max_retries=2,
                on_timeout=lambda state, terminal: fired.set(),
            )
            monitor.start_monitoring()
            await asyncio.wait_for(fired.wait(), timeout=2)
            monitor.stop()
            return monitor

        monitor = asyncio.run(scenario())
        self.assertGreaterEqual(monitor.stalls, 1)

    def test_retry_delay_backs_off_exponentially_with_jitter(self) -> None:
        monitor = StreamRecoveryMonitor(base_retry_delay_ms=1000, max_retry_delay_ms=3000, clock=_Clock())

        for attempt, base in ((1, 1.0), (2, 2.0), (3, 3.0), (6, 3.0)):
            delay = monitor.retry_delay(attempt)
            self.assertGreaterEqual(delay, base)
            self.assertLessEqual(delay, base * 1.3)

    def test_recover_waits_then_signals(self) -> None:
        clock = _Clock()
        slept: list[float] = []
        recovered: list[int] = []

        async def fake_sleep(seconds: float) -> None:
            slept.append(seconds)

        monitor = StreamRecoveryMonitor(
            timeout_ms=45_000,
            max_retries=2,
            base_retry_delay_ms=500,
            on_recovery=lambda state: recovered.append(state.retry_count),
            clock=clock,
            sleep=fake_sleep,
        )
        monitor.start_monitoring(watch=False)
        clock.advance(45)
        monitor.poll()
        clock.advance(45)
        monitor.poll()

        asyncio.run(monitor.recover())

        self.assertEqual([2], recovered)
        self.assertEqual(1, len(slept))
        self.assertGreaterEqual(slept[0], 1.0)
        self.assertLessEqual(slept[0], 1.3)

    def test_recover_refused_once_exhausted(self) -> None:
        clock = _Clock()
        monitor, _ = self._make(clock, max_retries=0)
        clock.advance(45)
        monitor.poll()

        with self.assertRaises(RuntimeError):
            asyncio.run(monitor.recover())

    def test_rejects_non_positive_timeout(self) -> None:
        with self.assertRaises(ValueError):
            StreamRecoveryMonitor(timeout_ms=0)


if __name__ == "__main__":
    unittest.main()
