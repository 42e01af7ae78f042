"""Bounded task scheduler for model and platform API calls.

Two independent pools (model provider and hosting platform), each with its
own concurrency ceiling, per-call timeout and retry policy. ``submit`` never
raises for call failures: it returns a ``CallResult`` so one unit's failure
cannot take down the others, and ``map_ordered`` hands results back in
submission order regardless of completion order.
"""

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from codeguardian.config.settings import ReviewOptions
from codeguardian.exceptions import (
    CallCancelled,
    CallError,
    CallTimeout,
    QuotaExhausted,
    TerminalCallError,
)
from codeguardian.utils.rate_limiter import (
    AsyncioClock,
    CallAttempt,
    Clock,
    RetryPolicy,
    classify_exception,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Classifier = Callable[[BaseException], CallError]


@dataclass(frozen=True)
class CallResult(Generic[T]):
    """Outcome of a scheduled call: either a value or a terminal error."""

    value: T | None = None
    error: CallError | None = None
    label: str = ""
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


@dataclass(frozen=True)
class PoolConfig:
    name: str
    max_concurrency: int
    timeout: float
    policy: RetryPolicy


class BoundedPool:
    """Concurrency-limited executor with per-call timeout and retries."""

    def __init__(
        self,
        config: PoolConfig,
        abort_event: asyncio.Event,
        classify: Classifier = classify_exception,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        on_quota_exhausted: Callable[[QuotaExhausted], None] | None = None,
    ) -> None:
        self.config = config
        self.classify = classify
        self.clock = clock or AsyncioClock()
        self._rng = rng
        self._abort = abort_event
        self._on_quota_exhausted = on_quota_exhausted
        self._semaphore = asyncio.Semaphore(max(1, config.max_concurrency))
        self.in_flight = 0
        self.peak_in_flight = 0
        self.calls_started = 0

    @property
    def name(self) -> str:
        return self.config.name

    def _cancelled(self, label: str, attempts: int) -> CallResult:
        return CallResult(
            error=CallCancelled(f"{self.name} call {label!r} cancelled", attempts=attempts),
            label=label,
            attempts=attempts,
        )

    async def submit(self, task: Callable[[], Awaitable[T]], label: str = "") -> CallResult[T]:
        """Run ``task`` under this pool's limits and retry policy."""
        attempt = CallAttempt(self.config.policy, rng=self._rng)
        while True:
            if self._abort.is_set():
                return self._cancelled(label, attempt.attempt - 1)

            async with self._semaphore:
                if self._abort.is_set():
                    return self._cancelled(label, attempt.attempt - 1)
                self.in_flight += 1
                self.calls_started += 1
                self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
                try:
                    value = await self._run_once(task, label)
                except CallCancelled:
                    return self._cancelled(label, attempt.attempt)
                except Exception as exc:
                    error = self.classify(exc)
                else:
                    attempt.record_success()
                    return CallResult(value=value, label=label, attempts=attempt.attempt)
                finally:
                    self.in_flight -= 1

            if isinstance(error, QuotaExhausted):
                logger.error(f"{self.name} quota exhausted during {label!r}: {error}")
                error.attempts = attempt.attempt
                if self._on_quota_exhausted is not None:
                    self._on_quota_exhausted(error)
                return CallResult(error=error, label=label, attempts=attempt.attempt)

            delay = attempt.record_failure(error)
            if delay is None:
                if error.retryable:
                    logger.error(
                        f"All {attempt.attempt} {self.name} attempts for {label!r} "
                        f"exhausted. Last error: {error}"
                    )
                else:
                    logger.error(f"Non-retriable {self.name} error for {label!r}: {error}")
                return CallResult(
                    error=TerminalCallError(error, attempt.attempt),
                    label=label,
                    attempts=attempt.attempt,
                )

            logger.warning(
                f"{self.name} attempt {attempt.attempt}/{self.config.policy.max_attempts} "
                f"for {label!r} failed with {type(error).__name__}: {error}. "
                f"Retrying in {delay:.1f}s..."
            )
            if not await self._sleep_unless_aborted(delay):
                return self._cancelled(label, attempt.attempt)
            attempt.start_retry()

    async def map_ordered(
        self,
        tasks: Sequence[Callable[[], Awaitable[T]]],
        labels: Sequence[str] | None = None,
    ) -> list[CallResult[T]]:
        """Submit all tasks concurrently; results follow submission order."""
        labels = labels or [f"{self.name}-{i}" for i in range(len(tasks))]
        return list(
            await asyncio.gather(
                *(self.submit(task, label) for task, label in zip(tasks, labels))
            )
        )

    async def _run_once(self, task: Callable[[], Awaitable[T]], label: str) -> T:
        call = asyncio.ensure_future(task())
        abort_wait = asyncio.ensure_future(self._abort.wait())
        try:
            done, _ = await asyncio.wait(
                {call, abort_wait},
                timeout=self.config.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            abort_wait.cancel()

        if call in done:
            return call.result()

        call.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await call
        if self._abort.is_set():
            raise CallCancelled(f"{self.name} call {label!r} aborted in flight")
        raise CallTimeout(f"{self.name} call {label!r} exceeded {self.config.timeout}s")

    async def _sleep_unless_aborted(self, delay: float) -> bool:
        sleeper = asyncio.ensure_future(self.clock.sleep(delay))
        abort_wait = asyncio.ensure_future(self._abort.wait())
        done, pending = await asyncio.wait(
            {sleeper, abort_wait}, return_when=asyncio.FIRST_COMPLETED
        )
        for future in pending:
            future.cancel()
        return not self._abort.is_set()


class TaskScheduler:
    """Owns the model and platform pools of one review run."""

    def __init__(
        self,
        model: PoolConfig,
        platform: PoolConfig,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        model_classify: Classifier = classify_exception,
        platform_classify: Classifier = classify_exception,
    ) -> None:
        self._abort = asyncio.Event()
        self._platform_abort = asyncio.Event()
        self.abort_reason: str | None = None
        self.quota_error: QuotaExhausted | None = None
        self.model = BoundedPool(
            model,
            self._abort,
            classify=model_classify,
            clock=clock,
            rng=rng,
            on_quota_exhausted=self._quota_exhausted,
        )
        self.platform = BoundedPool(
            platform,
            self._platform_abort,
            classify=platform_classify,
            clock=clock,
            rng=rng,
            on_quota_exhausted=self._platform_quota_exhausted,
        )

    @classmethod
    def from_options(
        cls,
        options: ReviewOptions,
        *,
        clock: Clock | None = None,
        model_classify: Classifier = classify_exception,
        platform_classify: Classifier = classify_exception,
    ) -> "TaskScheduler":
        return cls(
            PoolConfig(
                name="model",
                max_concurrency=options.model_concurrency,
                timeout=options.model_timeout_seconds,
                policy=RetryPolicy(max_attempts=max(1, options.model_retries)),
            ),
            PoolConfig(
                name="platform",
                max_concurrency=options.platform_concurrency,
                timeout=options.platform_timeout_seconds,
                policy=RetryPolicy(max_attempts=max(1, options.platform_retries)),
            ),
            clock=clock,
            model_classify=model_classify,
            platform_classify=platform_classify,
        )

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self, reason: str = "aborted by caller", *, platform: bool = False) -> None:
        """
        Cancel pending and in-flight model calls; completed results are kept.

        Platform calls keep running unless ``platform`` is set, so results
        that already completed can still be published.
        """
        if not self._abort.is_set():
            logger.warning(f"Aborting scheduled calls: {reason}")
            self.abort_reason = reason
            self._abort.set()
        if platform and not self._platform_abort.is_set():
            self._platform_abort.set()

    def abort_after(self, seconds: float) -> asyncio.TimerHandle:
        """Caller-level deadline for the whole run."""
        loop = asyncio.get_running_loop()
        return loop.call_later(seconds, self.abort, f"deadline of {seconds}s reached")

    def _quota_exhausted(self, error: QuotaExhausted) -> None:
        if self.quota_error is None:
            self.quota_error = error
        self.abort(f"quota exhausted: {error}")

    def _platform_quota_exhausted(self, error: QuotaExhausted) -> None:
        if self.quota_error is None:
            self.quota_error = error
        self.abort(f"platform quota exhausted: {error}", platform=True)
