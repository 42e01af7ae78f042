"""Retry and backoff primitives for model and platform API calls."""

import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Protocol

from codeguardian.exceptions import (
    CallError,
    CallTimeout,
    InvalidRequest,
    ProviderError,
    RateLimited,
)

logger = logging.getLogger(__name__)


class Clock(Protocol):
    """Time source used by the scheduler, replaceable in tests."""

    async def sleep(self, seconds: float) -> None: ...

    def monotonic(self) -> float: ...


class AsyncioClock:
    """Real clock backed by ``asyncio.sleep``."""

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with jitter.

    Attributes:
        max_attempts: Total attempts including the first one
        initial_delay: Delay in seconds before the first retry
        max_delay: Upper bound for a single delay
        multiplier: Growth factor between retries
        jitter: Randomize each delay between 50% and 100% of its value
    """

    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before retrying after ``attempt`` (1-based) failed."""
        delay = min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + (rng or random).random() / 2
        return delay


class AttemptPhase(str, enum.Enum):
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class CallAttempt:
    """
    Per-call retry state machine.

    ``Attempting(n) -> Succeeded | Retrying(n+1) | Failed``. The scheduler
    drives it: ``record_failure`` returns the backoff delay when the call
    should be retried, or ``None`` once it has failed for good.
    """

    policy: RetryPolicy
    rng: random.Random | None = None
    attempt: int = 1
    phase: AttemptPhase = AttemptPhase.ATTEMPTING
    errors: list[CallError] = field(default_factory=list)

    @property
    def last_error(self) -> CallError | None:
        return self.errors[-1] if self.errors else None

    @property
    def done(self) -> bool:
        return self.phase in (AttemptPhase.SUCCEEDED, AttemptPhase.FAILED)

    def record_success(self) -> None:
        self.phase = AttemptPhase.SUCCEEDED

    def record_failure(self, error: CallError) -> float | None:
        self.errors.append(error)
        if not error.retryable or self.attempt >= self.policy.max_attempts:
            self.phase = AttemptPhase.FAILED
            return None

        delay = self.policy.delay_for(self.attempt, self.rng)
        if isinstance(error, RateLimited) and error.retry_after:
            delay = max(delay, error.retry_after)
        self.phase = AttemptPhase.RETRYING
        return delay

    def start_retry(self) -> None:
        self.attempt += 1
        self.phase = AttemptPhase.ATTEMPTING


def classify_exception(exc: BaseException) -> CallError:
    """
    Map an arbitrary exception onto the call error taxonomy.

    Already-classified errors pass through. Otherwise the message is
    inspected for rate limiting (429), timeouts, connection problems and
    gateway errors; anything else is treated as non-retryable.
    """
    if isinstance(exc, CallError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return CallTimeout("call timed out", cause=exc)

    error_str = str(exc).lower()
    if "429" in error_str or "rate limit" in error_str:
        return RateLimited(str(exc), cause=exc)
    if "timeout" in error_str or "timed out" in error_str:
        return CallTimeout(str(exc), cause=exc)
    if any(
        marker in error_str for marker in ("connection", "500", "502", "503", "504")
    ):
        return ProviderError(str(exc), cause=exc)
    return InvalidRequest(f"{type(exc).__name__}: {exc}", cause=exc)
