"""
Error taxonomy for course synchronization.

Every failure the sync pipeline can observe is mapped onto a closed set of
kinds (``ErrorKind``). Retry decisions match on the kind, never on the
exception class hierarchy, so adding a new exception type cannot silently
change retry behavior.

Hierarchy:
    SyncError
    ├── ApiError
    │   ├── RateLimitError
    │   ├── AuthenticationError
    │   └── NotFoundError
    ├── NetworkError
    ├── DataValidationError
    └── CircuitOpenError    (raised by the breaker itself, not the provider)

Outside the hierarchy:
    InvalidSyncTypeError    caller error (unknown sync type)
    StaleReferenceError     job references an entity that no longer exists
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy.exc import DBAPIError


class ErrorKind(str, Enum):
    """Closed classification of observable failures."""

    RATE_LIMIT = "RateLimitError"
    AUTHENTICATION = "AuthenticationError"
    NOT_FOUND = "NotFoundError"
    API = "ApiError"
    NETWORK = "NetworkError"
    DATA_VALIDATION = "DataValidationError"
    CIRCUIT_OPEN = "CircuitOpenError"
    INVALID_ARGUMENT = "InvalidSyncTypeError"
    STALE_REFERENCE = "StaleReferenceError"
    DEADLOCK = "Deadlock"
    OTHER = "Other"


# Kinds that need a human (bad credentials, provider presumed down)
CRITICAL_ERROR_KINDS = frozenset({ErrorKind.AUTHENTICATION.value, ErrorKind.CIRCUIT_OPEN.value})


class SyncError(Exception):
    """Root of all sync errors."""

    kind: ErrorKind = ErrorKind.OTHER

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
            "retry_after": self.retry_after,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class ApiError(SyncError):
    kind = ErrorKind.API


class RateLimitError(ApiError):
    kind = ErrorKind.RATE_LIMIT


class AuthenticationError(ApiError):
    kind = ErrorKind.AUTHENTICATION


class NotFoundError(ApiError):
    kind = ErrorKind.NOT_FOUND


class NetworkError(SyncError):
    kind = ErrorKind.NETWORK


class DataValidationError(SyncError):
    kind = ErrorKind.DATA_VALIDATION


class CircuitOpenError(SyncError):
    """Raised by the circuit breaker without calling the provider."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, message: str = "Circuit breaker is open", retry_after: float = 0, **kwargs):
        super().__init__(message, retry_after=retry_after, **kwargs)

    @property
    def retry_after_seconds(self) -> int:
        return int(self.retry_after or 0)


class InvalidSyncTypeError(ValueError):
    """Unknown sync type passed to a sync job. Retrying can never succeed."""

    def __init__(self, sync_type: Any):
        super().__init__(f"Unknown sync type: {sync_type}")
        self.sync_type = sync_type


class StaleReferenceError(Exception):
    """A job argument references an entity that no longer exists."""


def is_deadlock(error: BaseException) -> bool:
    """True for database deadlock / serialization failures."""
    if not isinstance(error, DBAPIError):
        return False
    text = str(error.orig if error.orig is not None else error).lower()
    return "deadlock" in text or "could not serialize access" in text


def classify_error(error: BaseException) -> ErrorKind:
    """Map any exception onto an ErrorKind."""
    if isinstance(error, SyncError):
        return error.kind
    if isinstance(error, InvalidSyncTypeError):
        return ErrorKind.INVALID_ARGUMENT
    if isinstance(error, StaleReferenceError):
        return ErrorKind.STALE_REFERENCE
    if is_deadlock(error):
        return ErrorKind.DEADLOCK
    return ErrorKind.OTHER


def error_kind_name(error: BaseException) -> str:
    """
    Name used for counters, logs and dead letter records.

    Taxonomy errors report their kind; anything else reports its class name so
    unknown failures stay distinguishable in summaries.
    """
    kind = classify_error(error)
    if kind in (ErrorKind.OTHER, ErrorKind.DEADLOCK):
        return type(error).__name__
    return kind.value
