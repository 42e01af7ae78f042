"""Unit tests for retry policy, attempt state and error classification."""

import asyncio
import random

import pytest

from codeguardian.exceptions import (
    CallTimeout,
    InvalidRequest,
    ProviderError,
    QuotaExhausted,
    RateLimited,
)
from codeguardian.utils.rate_limiter import (
    AttemptPhase,
    CallAttempt,
    RetryPolicy,
    classify_exception,
)


class TestRetryPolicy:
    def test_exponential_delays_without_jitter(self) -> None:
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=False)

        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_within_half_and_full_delay(self) -> None:
        policy = RetryPolicy(initial_delay=4.0, jitter=True)
        rng = random.Random(42)

        for _ in range(50):
            assert 2.0 <= policy.delay_for(1, rng) <= 4.0


class TestCallAttempt:
    def test_retries_transient_errors_until_attempts_run_out(self) -> None:
        attempt = CallAttempt(RetryPolicy(max_attempts=2, jitter=False))

        assert attempt.record_failure(CallTimeout("slow")) == 1.0
        assert attempt.phase is AttemptPhase.RETRYING
        attempt.start_retry()
        assert attempt.attempt == 2

        assert attempt.record_failure(CallTimeout("slow again")) is None
        assert attempt.phase is AttemptPhase.FAILED
        assert str(attempt.last_error) == "slow again"

    def test_non_retryable_error_fails_immediately(self) -> None:
        attempt = CallAttempt(RetryPolicy(max_attempts=5))

        assert attempt.record_failure(InvalidRequest("bad")) is None
        assert attempt.done
        assert attempt.attempt == 1

    def test_retry_after_extends_the_delay(self) -> None:
        attempt = CallAttempt(RetryPolicy(initial_delay=1.0, jitter=False))

        assert attempt.record_failure(RateLimited(retry_after=30.0)) == 30.0

    def test_success(self) -> None:
        attempt = CallAttempt(RetryPolicy())
        attempt.record_success()

        assert attempt.done
        assert attempt.phase is AttemptPhase.SUCCEEDED


class TestClassifyException:
    @pytest.mark.parametrize(
        ("exc", "expected"),
        [
            (asyncio.TimeoutError(), CallTimeout),
            (RuntimeError("HTTP 429 Too Many Requests"), RateLimited),
            (RuntimeError("rate limit reached"), RateLimited),
            (RuntimeError("read timed out"), CallTimeout),
            (RuntimeError("connection reset by peer"), ProviderError),
            (RuntimeError("502 Bad Gateway"), ProviderError),
            (ValueError("unexpected"), InvalidRequest),
        ],
    )
    def test_maps_by_type_and_message(self, exc: BaseException, expected: type) -> None:
        assert isinstance(classify_exception(exc), expected)

    def test_classified_errors_pass_through(self) -> None:
        error = QuotaExhausted("no credit")

        assert classify_exception(error) is error

    def test_keeps_the_cause(self) -> None:
        exc = RuntimeError("connection refused")

        assert classify_exception(exc).cause is exc
