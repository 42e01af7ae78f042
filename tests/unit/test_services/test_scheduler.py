"""Unit tests for the bounded task scheduler."""

import asyncio
import unittest

import pytest
from conftest import FakeClock

from codeguardian.config.settings import ReviewOptions
from codeguardian.exceptions import (
    CallCancelled,
    CallTimeout,
    InvalidRequest,
    ProviderError,
    QuotaExhausted,
    TerminalCallError,
)
from codeguardian.services.scheduler import PoolConfig, TaskScheduler
from codeguardian.utils.rate_limiter import RetryPolicy


def _scheduler(
    clock: FakeClock,
    *,
    model_limit: int = 2,
    attempts: int = 3,
    timeout: float = 5.0,
) -> TaskScheduler:
    return TaskScheduler(
        PoolConfig("model", model_limit, timeout, RetryPolicy(max_attempts=attempts)),
        PoolConfig("platform", 2, timeout, RetryPolicy(max_attempts=attempts)),
        clock=clock,
    )


class _Flaky:
    """Fails with ``errors`` in turn, then returns ``value``."""

    def __init__(self, errors: list[Exception], value: str = "ok") -> None:
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


@pytest.mark.asyncio
class TestBoundedPool(unittest.IsolatedAsyncioTestCase):
    """Tests for ordering, concurrency and retries of a single pool."""

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.scheduler = _scheduler(self.clock)

    async def test_results_follow_submission_order(self):
        finished: list[int] = []

        def make(index: int):
            async def task() -> int:
                # later submissions finish first
                await asyncio.sleep(0.01 * (4 - index))
                finished.append(index)
                return index

            return task

        results = await self.scheduler.model.map_ordered([make(i) for i in range(4)])

        self.assertEqual([r.value for r in results], [0, 1, 2, 3])
        self.assertNotEqual(finished, [0, 1, 2, 3])

    async def test_concurrency_never_exceeds_the_limit(self):
        async def task() -> None:
            await asyncio.sleep(0.01)

        await self.scheduler.model.map_ordered([task for _ in range(6)])

        self.assertEqual(self.scheduler.model.peak_in_flight, 2)
        self.assertEqual(self.scheduler.model.calls_started, 6)

    async def test_transient_failures_are_retried_with_backoff(self):
        flaky = _Flaky([CallTimeout("slow"), ProviderError("503")])

        result = await self.scheduler.model.submit(flaky, label="flaky")

        self.assertTrue(result.ok)
        self.assertEqual(result.value, "ok")
        self.assertEqual(result.attempts, 3)
        self.assertEqual(len(self.clock.sleeps), 2)
        self.assertLessEqual(self.clock.sleeps[0], self.clock.sleeps[1] * 2)

    async def test_exhausted_retries_carry_the_last_error(self):
        flaky = _Flaky([ProviderError("500"), ProviderError("502"), ProviderError("504")])

        result = await self.scheduler.model.submit(flaky)

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, TerminalCallError)
        self.assertIsInstance(result.error.last_error, ProviderError)
        self.assertEqual(str(result.error.last_error), "504")
        self.assertEqual(result.attempts, 3)
        self.assertEqual(flaky.calls, 3)

    async def test_non_retryable_failure_uses_one_attempt(self):
        flaky = _Flaky([InvalidRequest("bad prompt")])

        result = await self.scheduler.model.submit(flaky)

        self.assertIsInstance(result.error, TerminalCallError)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(flaky.calls, 1)
        self.assertEqual(self.clock.sleeps, [])

    async def test_unclassified_exceptions_are_classified(self):
        flaky = _Flaky([RuntimeError("connection reset")])

        result = await self.scheduler.model.submit(flaky)

        self.assertTrue(result.ok)
        self.assertEqual(flaky.calls, 2)

    async def test_per_call_timeout(self):
        scheduler = _scheduler(self.clock, attempts=1, timeout=0.01)

        async def hangs() -> None:
            await asyncio.sleep(10)

        result = await scheduler.platform.submit(hangs, label="hang")

        self.assertIsInstance(result.error, TerminalCallError)
        self.assertIsInstance(result.error.last_error, CallTimeout)

    async def test_unwrap(self):
        ok = await self.scheduler.model.submit(_Flaky([]))
        failed = await self.scheduler.model.submit(_Flaky([InvalidRequest("bad")]))

        self.assertEqual(ok.unwrap(), "ok")
        with self.assertRaises(TerminalCallError):
            failed.unwrap()


@pytest.mark.asyncio
class TestTaskSchedulerAbort(unittest.IsolatedAsyncioTestCase):
    """Tests for quota exhaustion and caller-level cancellation."""

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.scheduler = _scheduler(self.clock)

    async def test_model_quota_exhaustion_stops_model_calls_only(self):
        result = await self.scheduler.model.submit(_Flaky([QuotaExhausted("no credit")]))

        self.assertIsInstance(result.error, QuotaExhausted)
        self.assertIs(self.scheduler.quota_error, result.error)
        self.assertTrue(self.scheduler.aborted)

        never = _Flaky([])
        skipped = await self.scheduler.model.submit(never)
        self.assertIsInstance(skipped.error, CallCancelled)
        self.assertEqual(never.calls, 0)

        published = await self.scheduler.platform.submit(_Flaky([], value="posted"))
        self.assertEqual(published.value, "posted")

    async def test_platform_quota_exhaustion_stops_both_pools(self):
        await self.scheduler.platform.submit(_Flaky([QuotaExhausted("api quota")]))

        model = await self.scheduler.model.submit(_Flaky([]))
        platform = await self.scheduler.platform.submit(_Flaky([]))

        self.assertIsInstance(model.error, CallCancelled)
        self.assertIsInstance(platform.error, CallCancelled)

    async def test_abort_cancels_in_flight_calls_and_keeps_completed_results(self):
        release = asyncio.Event()

        async def quick() -> str:
            return "done"

        async def blocked() -> str:
            await release.wait()
            return "late"

        completed = await self.scheduler.model.submit(quick)
        pending = asyncio.ensure_future(self.scheduler.model.submit(blocked))
        await asyncio.sleep(0)

        self.scheduler.abort("caller gave up")
        result = await pending

        self.assertEqual(completed.value, "done")
        self.assertIsInstance(result.error, CallCancelled)
        self.assertEqual(self.scheduler.abort_reason, "caller gave up")

    async def test_abort_interrupts_backoff(self):
        gate = asyncio.Event()

        class SlowClock(FakeClock):
            async def sleep(self, seconds: float) -> None:
                self.sleeps.append(seconds)
                await gate.wait()

        scheduler = _scheduler(SlowClock())
        pending = asyncio.ensure_future(
            scheduler.model.submit(_Flaky([ProviderError("503")]))
        )
        await asyncio.sleep(0.01)

        scheduler.abort()
        result = await pending

        self.assertIsInstance(result.error, CallCancelled)

    async def test_abort_after_deadline(self):
        handle = self.scheduler.abort_after(0.01)
        await asyncio.sleep(0.05)

        self.assertTrue(self.scheduler.aborted)
        self.assertIn("deadline", self.scheduler.abort_reason)
        handle.cancel()


def test_from_options_builds_both_pools() -> None:
    options = ReviewOptions(
        model_concurrency=3,
        platform_concurrency=5,
        model_timeout_seconds=12.0,
        platform_retries=0,
    )

    scheduler = TaskScheduler.from_options(options, clock=FakeClock())

    assert scheduler.model.config.max_concurrency == 3
    assert scheduler.model.config.timeout == 12.0
    assert scheduler.platform.config.max_concurrency == 5
    # zero retries still allows the first attempt
    assert scheduler.platform.config.policy.max_attempts == 1
