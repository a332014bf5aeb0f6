"""
Job Monitoring Service

Operational view over the job queue and the failed job table: health check,
status report, manual retry of dead-lettered jobs, and periodic cleanup.

Usage:
    monitor = JobMonitoringService()

    status = monitor.health_check()
    if not status["healthy"]:
        print(status["issues"])

    monitor.retry_failed_jobs(limit=50)
"""

from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from course_sync.core.logging_config import get_logger
from course_sync.core.typing import as_utc, col, utc_now
from course_sync.models.failed_job import FailedJob
from course_sync.models.sync_job import JobStatus, SyncJob
from course_sync.services.dead_letter import DeadLetterSink, is_retryable
from course_sync.services.job_queue import cleanup_old_jobs, count_stuck_jobs, get_queue_sizes
from course_sync.services.jobs import JOB_REGISTRY

logger = get_logger(__name__)

# Health thresholds
MAX_FAILED_JOBS = 100
MAX_QUEUE_SIZE = 1000
STUCK_JOB_MINUTES = 60


class JobMonitoringService:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        sink: Optional[DeadLetterSink] = None,
    ):
        if session_factory is None:
            from course_sync.db import session_factory as default_session_factory

            session_factory = default_session_factory
        self._session_factory = session_factory
        self.sink = sink or DeadLetterSink(session_factory=session_factory)

    def health_check(self) -> dict[str, Any]:
        """
        Check failed job volume, stuck jobs and queue backlog.

        Returns:
            {"healthy": bool, "issues": [str, ...]}
        """
        issues: list[str] = []

        failed_jobs = self.sink.count()
        if failed_jobs > MAX_FAILED_JOBS:
            issues.append(f"High number of failed jobs: {failed_jobs}")

        with self._session_factory() as session:
            stuck_jobs = count_stuck_jobs(session, older_than_minutes=STUCK_JOB_MINUTES)
            queue_sizes = get_queue_sizes(session)

        if stuck_jobs > 0:
            issues.append(f"{stuck_jobs} jobs appear to be stuck")

        large_queues = {name: size for name, size in queue_sizes.items() if size > MAX_QUEUE_SIZE}
        if large_queues:
            issues.append(f"Large queue backlog: {large_queues}")

        if issues:
            logger.warning("job_health_check_failed", issues=issues)
        return {"healthy": not issues, "issues": issues}

    def job_status(self) -> dict[str, Any]:
        with self._session_factory() as session:
            active_jobs = session.exec(
                select(func.count())
                .select_from(SyncJob)
                .where(col(SyncJob.status).in_([JobStatus.PENDING, JobStatus.IN_PROGRESS]))
            ).one()
            queue_sizes = get_queue_sizes(session)
            performance = self._performance_metrics(session)

        recent_failures = dict(list(self.sink.error_summary().items())[:5])
        return {
            "active_jobs": active_jobs,
            "failed_jobs": self.sink.count(),
            "queue_sizes": queue_sizes,
            "recent_failures": recent_failures,
            "failures_by_job_class": self.sink.job_failure_summary(),
            "error_trends": self.error_trends(),
            "performance_metrics": performance,
        }

    def error_trends(self, days: int = 7) -> dict[str, int]:
        """Failed job counts per day, oldest first, including today."""
        today = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
        trends: dict[str, int] = {}
        with self._session_factory() as session:
            for days_ago in range(days, -1, -1):
                start = today - timedelta(days=days_ago)
                end = start + timedelta(days=1)
                count = session.exec(
                    select(func.count())
                    .select_from(FailedJob)
                    .where(col(FailedJob.failed_at) >= start, col(FailedJob.failed_at) < end)
                ).one()
                trends[start.strftime("%Y-%m-%d")] = count
        return trends

    def _performance_metrics(self, session: Session) -> dict[str, Any]:
        since = utc_now() - timedelta(hours=24)
        rows = session.exec(
            select(SyncJob.created_at, SyncJob.completed_at).where(
                col(SyncJob.status) == JobStatus.COMPLETED,
                col(SyncJob.completed_at) >= since,
            )
        ).all()
        if not rows:
            return {}

        durations = [(as_utc(finished) - as_utc(created)).total_seconds() for created, finished in rows]
        return {
            "completed_last_24h": len(rows),
            "avg_duration_seconds": round(sum(durations) / len(durations), 2),
            "min_duration_seconds": round(min(durations), 2),
            "max_duration_seconds": round(max(durations), 2),
            "throughput_per_hour": round(len(rows) / 24.0, 2),
        }

    def retry_failed_job(self, session: Session, failed_job: FailedJob) -> bool:
        """
        Re-enqueue one dead-lettered job with its original arguments.

        Returns:
            True if the job was re-enqueued
        """
        if not is_retryable(failed_job):
            logger.info("failed_job_not_retryable", job_id=failed_job.job_id, error_kind=failed_job.error_kind)
            return False

        job_cls = JOB_REGISTRY.get(failed_job.job_class)
        if job_cls is None:
            logger.error("failed_job_retry_failed", job_id=failed_job.job_id, error="unknown job class")
            return False

        try:
            job_cls.perform_later(session, *failed_job.parsed_arguments())
            failed_job.retried_at = utc_now()
            session.add(failed_job)
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("failed_job_retry_failed", job_id=failed_job.job_id, error=str(e))
            return False

        logger.info("failed_job_retried", job_class=failed_job.job_class, job_id=failed_job.job_id)
        return True

    def retry_failed_jobs(self, limit: int = 50) -> dict[str, int]:
        """
        Re-enqueue the most recent retryable failed jobs not yet retried.

        Returns:
            {"retried": N, "failed_to_retry": N}
        """
        retried = failed_to_retry = 0
        with self._session_factory() as session:
            candidates = session.exec(
                select(FailedJob)
                .where(col(FailedJob.retried_at).is_(None))
                .order_by(col(FailedJob.failed_at).desc(), col(FailedJob.id).desc())
            ).all()

            for failed_job in candidates:
                if retried + failed_to_retry >= limit:
                    break
                if not is_retryable(failed_job):
                    continue
                if self.retry_failed_job(session, failed_job):
                    retried += 1
                else:
                    failed_to_retry += 1

        return {"retried": retried, "failed_to_retry": failed_to_retry}

    def cleanup_old_data(self, days_to_keep: int = 7) -> dict[str, int]:
        """Prune the failed job table and delete finished queue rows."""
        pruned = self.sink.prune()
        with self._session_factory() as session:
            deleted = cleanup_old_jobs(session, days_to_keep=days_to_keep)["deleted"]

        logger.info("job_data_cleaned_up", failed_jobs_pruned=pruned, jobs_deleted=deleted)
        return {"failed_jobs_pruned": pruned, "jobs_deleted": deleted}


__all__ = ["JobMonitoringService"]
