"""Error taxonomy for review runs.

File- and chunk-level failures are recorded on the run result and never abort
the run. Only ``QuotaExhausted`` is treated as a run-level failure.
"""


class CodeGuardianError(Exception):
    """Base class for all codeguardian errors."""


class ParseError(CodeGuardianError):
    """A diff section could not be parsed. Aborts that file only."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class OversizedLineError(ParseError):
    """A single diff line does not fit in the chunk token budget."""

    def __init__(self, path: str, position: int, tokens: int, budget: int) -> None:
        super().__init__(
            f"Line at diff position {position} needs {tokens} tokens "
            f"but the chunk budget is {budget}",
            path=path,
        )
        self.position = position
        self.tokens = tokens
        self.budget = budget


class StateConflict(CodeGuardianError):
    """Stored head revision is not an ancestor of the current head."""

    def __init__(self, stored_head: str, new_head: str) -> None:
        super().__init__(
            f"Previously reviewed head {stored_head[:7]} is not an ancestor "
            f"of {new_head[:7]}"
        )
        self.stored_head = stored_head
        self.new_head = new_head


class CallError(CodeGuardianError):
    """Failure of a single model or platform call."""

    retryable = False

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.attempts = attempts


class TransientCallError(CallError):
    """Failure worth retrying (timeouts, rate limits, 5xx)."""

    retryable = True


class RateLimited(TransientCallError):
    def __init__(
        self,
        message: str = "rate limited",
        cause: BaseException | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.retry_after = retry_after


class CallTimeout(TransientCallError):
    pass


class ProviderError(TransientCallError):
    """Server-side or connection failure of the remote service."""


class InvalidRequest(CallError):
    """The request itself is malformed; retrying cannot help."""


class AuthenticationFailed(InvalidRequest):
    pass


class QuotaExhausted(CallError):
    """Quota or budget is permanently exhausted for this run."""


class TerminalCallError(CallError):
    """A call gave up: retries exhausted or a non-retryable failure.

    ``last_error`` is the final classified failure.
    """

    def __init__(self, last_error: CallError, attempts: int) -> None:
        super().__init__(
            f"Call failed after {attempts} attempt(s): {last_error}",
            cause=last_error.cause or last_error,
            attempts=attempts,
        )
        self.last_error = last_error


class CallCancelled(CallError):
    """The call was aborted before it completed."""
