"""In-memory tracking of recent sync failures.

Keeps the most recent errors in a fixed-size ring for inspection and a
cumulative per-kind counter that is never trimmed. Process-local; resets on
restart. For durable failure history, query the failed job table.
"""

import traceback
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Deque, Optional

from course_sync.core.config import settings
from course_sync.core.logging_config import get_logger
from course_sync.core.typing import utc_now
from course_sync.sync.errors import CRITICAL_ERROR_KINDS, error_kind_name

logger = get_logger(__name__)

MAX_BACKTRACE_FRAMES = 5


def format_backtrace(error: BaseException, limit: int) -> list[str]:
    """Innermost-first frame lines of ``error``'s traceback, at most ``limit``."""
    if error.__traceback__ is None:
        return []
    frames = traceback.extract_tb(error.__traceback__)
    return [f"{frame.filename}:{frame.lineno}:in `{frame.name}`" for frame in reversed(frames)][:limit]


@dataclass(frozen=True)
class ErrorRecord:
    error_kind: str
    message: str
    context: dict[str, Any]
    timestamp: datetime
    backtrace: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_kind": self.error_kind,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "backtrace": self.backtrace,
        }


@dataclass
class ErrorTracker:
    """Thread-safe store of recent errors and per-kind counts."""

    capacity: int = 100

    _lock: Lock = field(default_factory=Lock, init=False, repr=False)
    _errors: Deque[ErrorRecord] = field(init=False, repr=False)
    _counts: Counter = field(default_factory=Counter, init=False, repr=False)

    def __post_init__(self):
        self._errors = deque(maxlen=self.capacity)

    def record_error(self, error: BaseException, context: Optional[dict[str, Any]] = None) -> ErrorRecord:
        """Record one observed failure and emit a structured log line for it."""
        record = ErrorRecord(
            error_kind=error_kind_name(error),
            message=str(error),
            context=dict(context or {}),
            timestamp=utc_now(),
            backtrace=format_backtrace(error, MAX_BACKTRACE_FRAMES),
        )

        with self._lock:
            # deque(maxlen) drops the oldest entry once capacity is reached
            self._errors.append(record)
            self._counts[record.error_kind] += 1

        logger.error(
            "courses_sync_error",
            error_kind=record.error_kind,
            message=record.message,
            context=record.context,
            backtrace=record.backtrace,
        )
        return record

    @property
    def recent_errors(self) -> list[ErrorRecord]:
        with self._lock:
            return list(self._errors)

    def error_summary(self) -> dict[str, Any]:
        with self._lock:
            recent = list(self._errors)
            counts = dict(self._counts)
        most_frequent = max(counts.items(), key=lambda item: item[1])[0] if counts else None
        return {
            "total_errors": len(recent),
            "error_kind_counts": counts,
            "last_10_errors": [record.to_dict() for record in recent[-10:]],
            "most_frequent_error_kind": most_frequent,
        }

    def has_critical_errors(self) -> bool:
        with self._lock:
            return any(kind in CRITICAL_ERROR_KINDS for kind in self._counts)

    def clear(self) -> None:
        with self._lock:
            self._errors.clear()
            self._counts.clear()


# Process-wide tracker shared by sync passes and the job runner
sync_error_tracker = ErrorTracker(capacity=settings.ERROR_TRACKER_CAPACITY)
