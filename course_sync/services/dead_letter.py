"""
Dead Letter Sink

Durable record of jobs that will not be retried automatically any more.

Each commit:
    1. logs a structured ``job_dead_letter`` event
    2. inserts one FailedJob row (single transaction)
    3. alerts when the job class is in the configured critical set
    4. prunes rows beyond the retention bound, oldest first

Pruning runs after the insert has committed and never fails the commit. Pass
an executor to move it off the caller's thread entirely.

Usage:
    sink = DeadLetterSink(critical_job_classes={"CoursesSyncJob"})
    sink.commit(
        job_class="CoursesSyncJob",
        job_id="a1b2...",
        arguments=["update", {}],
        error_kind="AuthenticationError",
        error_message="Authentication failed",
        backtrace=["course_sync/sync/provider.py:88:in `fetch_course`"],
        failed_at=datetime.now(timezone.utc),
        executions=1,
    )
"""

import json
from concurrent.futures import Executor
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import delete, func
from sqlmodel import Session, select

from course_sync.core.config import settings
from course_sync.core.logging_config import get_logger
from course_sync.core.typing import col, utc_now
from course_sync.models.failed_job import FailedJob
from course_sync.services.alerts import AlertNotifier, DiscordAlertNotifier
from course_sync.sync.errors import ErrorKind

logger = get_logger(__name__)

MAX_BACKTRACE_FRAMES = 10

# Retrying these by hand cannot succeed without an operator fixing something first
NON_RETRYABLE_ERROR_KINDS = frozenset(
    {
        ErrorKind.AUTHENTICATION.value,
        ErrorKind.CIRCUIT_OPEN.value,
        ErrorKind.INVALID_ARGUMENT.value,
        ErrorKind.STALE_REFERENCE.value,
    }
)


def is_retryable(failed_job: FailedJob) -> bool:
    """Whether an operator may re-enqueue this failed job as-is."""
    return failed_job.error_kind not in NON_RETRYABLE_ERROR_KINDS


class DeadLetterSink:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        critical_job_classes: Optional[Iterable[str]] = None,
        notifier: Optional[AlertNotifier] = None,
        retention: Optional[int] = None,
        prune_executor: Optional[Executor] = None,
    ):
        if session_factory is None:
            from course_sync.db import session_factory as default_session_factory

            session_factory = default_session_factory
        self._session_factory = session_factory
        self.critical_job_classes = frozenset(
            settings.CRITICAL_JOB_CLASSES if critical_job_classes is None else critical_job_classes
        )
        self.notifier = notifier or DiscordAlertNotifier()
        self.retention = settings.FAILED_JOB_RETENTION if retention is None else retention
        self._prune_executor = prune_executor

    def commit(
        self,
        job_class: str,
        job_id: str,
        arguments: Any,
        error_kind: str,
        error_message: str,
        backtrace: Optional[list[str]],
        failed_at: datetime,
        executions: int,
    ) -> FailedJob:
        """Persist one permanently failed job. No deduplication by job_id."""
        logger.error(
            "job_dead_letter",
            job_class=job_class,
            job_id=job_id,
            error_kind=error_kind,
            message=error_message,
            failed_at=failed_at.isoformat(),
            executions=executions,
            arguments=arguments,
        )

        record = FailedJob(
            job_class=job_class,
            job_id=job_id,
            arguments=json.dumps(arguments, default=str),
            error_kind=error_kind,
            error_message=error_message,
            backtrace="\n".join(backtrace[:MAX_BACKTRACE_FRAMES]) if backtrace else None,
            failed_at=failed_at,
            executions=executions,
        )
        with self._session_factory() as session:
            session.add(record)
            session.commit()
            session.refresh(record)

        if self.is_critical(job_class):
            self._alert(record)

        self._schedule_prune()
        return record

    def is_critical(self, job_class: str) -> bool:
        return job_class in self.critical_job_classes

    def _alert(self, record: FailedJob) -> None:
        try:
            self.notifier.notify_critical_job_failure(
                record.job_class, record.job_id, record.error_kind, record.error_message
            )
        except Exception as e:
            # The record is already durable; a broken alert channel must not undo that
            logger.warning("critical_job_alert_failed", job_id=record.job_id, error=str(e))

    def _schedule_prune(self) -> None:
        if self._prune_executor is not None:
            self._prune_executor.submit(self._prune_quietly)
        else:
            self._prune_quietly()

    def _prune_quietly(self) -> None:
        try:
            self.prune()
        except Exception as e:
            logger.warning("failed_job_prune_failed", error=str(e))

    def prune(self, keep_count: Optional[int] = None) -> int:
        """
        Delete the oldest records beyond ``keep_count`` (default: retention).

        Returns:
            Number of records deleted
        """
        keep = self.retention if keep_count is None else keep_count
        with self._session_factory() as session:
            total = session.exec(select(func.count()).select_from(FailedJob)).one()
            excess = total - keep
            if excess <= 0:
                return 0

            oldest_ids = list(
                session.exec(select(FailedJob.id).order_by(col(FailedJob.id).asc()).limit(excess)).all()
            )
            session.execute(delete(FailedJob).where(col(FailedJob.id).in_(oldest_ids)))
            session.commit()

        logger.info("failed_jobs_pruned", deleted=len(oldest_ids), kept=keep)
        return len(oldest_ids)

    def count(self) -> int:
        with self._session_factory() as session:
            return session.exec(select(func.count()).select_from(FailedJob)).one()

    def recent(self, limit: int = 50) -> list[FailedJob]:
        """Most recent failures first."""
        with self._session_factory() as session:
            stmt = select(FailedJob).order_by(col(FailedJob.failed_at).desc(), col(FailedJob.id).desc()).limit(limit)
            return list(session.exec(stmt).all())

    def error_summary(self, since: Optional[datetime] = None) -> dict[str, int]:
        """Failure counts per error kind since ``since`` (default: last 24 hours)."""
        return self._grouped_counts(FailedJob.error_kind, since)

    def job_failure_summary(self, since: Optional[datetime] = None) -> dict[str, int]:
        """Failure counts per job class since ``since`` (default: last 24 hours)."""
        return self._grouped_counts(FailedJob.job_class, since)

    def _grouped_counts(self, column, since: Optional[datetime]) -> dict[str, int]:
        since = since or utc_now() - timedelta(hours=24)
        stmt = (
            select(column, func.count())
            .where(col(FailedJob.failed_at) >= since)
            .group_by(column)
            .order_by(func.count().desc())
        )
        with self._session_factory() as session:
            return {key: count for key, count in session.exec(stmt).all()}


__all__ = ["DeadLetterSink", "is_retryable", "NON_RETRYABLE_ERROR_KINDS"]
