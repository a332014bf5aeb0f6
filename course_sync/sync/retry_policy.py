"""
Retry policy for failed jobs.

Turns a classified failure plus the job's execution count into a decision:
retry after a delay, or escalate to the dead letter path. The rules form one
ordered table; the first matching row wins.

    kind                          decision
    ----------------------------  ------------------------------------------------
    RATE_LIMIT                    Retry(retry_after or backoff)
    NETWORK, API, NOT_FOUND       Retry(backoff) while executions < 5, else Escalate
    AUTHENTICATION, CIRCUIT_OPEN  Escalate (needs manual intervention)
    INVALID_ARGUMENT              Escalate (caller error, never transient)
    anything else                 Retry(backoff) while executions < 3, else Escalate

Backoff is ``min(2 ** executions, 600)`` seconds.
"""

from dataclasses import dataclass
from typing import Optional, Union

from course_sync.core.config import settings
from course_sync.sync.errors import ErrorKind, classify_error


@dataclass(frozen=True)
class Retry:
    delay_seconds: int


@dataclass(frozen=True)
class Escalate:
    reason: str


RetryDecision = Union[Retry, Escalate]


@dataclass(frozen=True)
class RetryPolicy:
    api_max_executions: int = 5
    default_max_executions: int = 3
    max_backoff_seconds: int = 600
    rate_limit_max_executions: Optional[int] = None

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            api_max_executions=settings.RETRY_API_MAX_EXECUTIONS,
            default_max_executions=settings.RETRY_DEFAULT_MAX_EXECUTIONS,
            max_backoff_seconds=settings.RETRY_MAX_BACKOFF_SECONDS,
            rate_limit_max_executions=settings.RATE_LIMIT_MAX_EXECUTIONS,
        )

    def backoff(self, executions: int) -> int:
        """Exponential backoff: 2^executions seconds, capped."""
        # Compare exponents first so huge execution counts never build huge ints
        if executions >= self.max_backoff_seconds.bit_length():
            return self.max_backoff_seconds
        return min(2 ** max(executions, 0), self.max_backoff_seconds)

    def decide(self, kind: ErrorKind, executions: int, retry_after: Optional[float] = None) -> RetryDecision:
        """
        Decide what to do with a failed job.

        Args:
            kind: Classified error kind
            executions: Attempts already made for this job
            retry_after: Provider-supplied wait (rate limits only)
        """
        if kind == ErrorKind.RATE_LIMIT:
            if self.rate_limit_max_executions is not None and executions >= self.rate_limit_max_executions:
                return Escalate(f"rate limited {executions} times")
            if retry_after:
                return Retry(int(retry_after))
            return Retry(self.backoff(executions))

        if kind in (ErrorKind.NETWORK, ErrorKind.API, ErrorKind.NOT_FOUND):
            if executions < self.api_max_executions:
                return Retry(self.backoff(executions))
            return Escalate(f"{kind.value} after {executions} executions")

        if kind in (ErrorKind.AUTHENTICATION, ErrorKind.CIRCUIT_OPEN):
            return Escalate(f"{kind.value} requires manual intervention")

        if kind == ErrorKind.INVALID_ARGUMENT:
            return Escalate("invalid job arguments")

        if executions < self.default_max_executions:
            return Retry(self.backoff(executions))
        return Escalate(f"failed after {executions} executions")

    def decide_for(self, error: BaseException, executions: int) -> RetryDecision:
        """Classify ``error`` and decide in one step."""
        return self.decide(classify_error(error), executions, getattr(error, "retry_after", None))
