"""
Job Queue Service

Persistent job queue with crash resilience. Jobs are stored in the database,
survive application restarts, and carry their own execution count so retry
decisions stay correct across re-enqueueing.

Usage:
    from course_sync.services.job_queue import (
        enqueue_job,
        claim_next_job,
        complete_job,
        retry_job,
        fail_job,
    )

    with Session(engine) as session:
        # Enqueue a new job
        job = enqueue_job(session, "CoursesSyncJob", ["update", {}])

        # Worker claims next job that is due
        job = claim_next_job(session)
        if job:
            try:
                # Run the job...
                complete_job(session, job.id)
            except Exception as e:
                retry_job(session, job.id, delay_seconds=4, error=str(e))

        # On startup, reset any stale in-progress jobs
        reset_stale_jobs(session, timeout_minutes=30)
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import case, delete, func
from sqlmodel import Session, select

from course_sync.core.typing import col, utc_now
from course_sync.models.sync_job import JobStatus, SyncJob

logger = logging.getLogger(__name__)

DEFAULT_QUEUE = "default"
LOW_PRIORITY_QUEUE = "low_priority"
CRITICAL_QUEUE = "critical"

# Lower sorts first when claiming
QUEUE_PRIORITIES = {CRITICAL_QUEUE: 0, DEFAULT_QUEUE: 1, LOW_PRIORITY_QUEUE: 2}

MAX_ERROR_LENGTH = 1000


def _truncate(error: str) -> str:
    return error[:MAX_ERROR_LENGTH] if len(error) > MAX_ERROR_LENGTH else error


def _get_job(session: Session, job_pk: int) -> Optional[SyncJob]:
    return session.exec(select(SyncJob).where(col(SyncJob.id) == job_pk)).first()


def enqueue_job(
    session: Session,
    job_class: str,
    arguments: Optional[list[Any]] = None,
    queue_name: str = DEFAULT_QUEUE,
    run_at: Optional[datetime] = None,
) -> SyncJob:
    """
    Enqueue a new job.

    Args:
        session: Database session
        job_class: Registered job class name (e.g., "CoursesSyncJob")
        arguments: JSON-serializable positional arguments for perform()
        queue_name: Logical queue ("critical", "default", "low_priority")
        run_at: Earliest execution time (default: now)

    Returns:
        The created SyncJob
    """
    job = SyncJob(
        job_class=job_class,
        arguments=json.dumps(arguments or [], default=str),
        queue_name=queue_name,
        run_at=run_at or utc_now(),
    )
    session.add(job)
    session.commit()
    session.refresh(job)

    logger.info(f"Enqueued job id={job.id} job_id={job.job_id} class={job_class} queue={queue_name}")
    return job


def claim_next_job(
    session: Session,
    queue_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[SyncJob]:
    """
    Claim the next due job for processing.

    Atomically updates the job status to IN_PROGRESS and increments its
    execution count. Jobs are ordered by queue priority, then run_at, then
    created_at.

    Args:
        session: Database session
        queue_name: Optional filter by queue
        now: Reference time for due-ness (default: now)

    Returns:
        The claimed SyncJob, or None if no job is due
    """
    now = now or utc_now()
    stmt = select(SyncJob).where(
        col(SyncJob.status) == JobStatus.PENDING,
        col(SyncJob.run_at) <= now,
    )

    if queue_name:
        stmt = stmt.where(col(SyncJob.queue_name) == queue_name)

    queue_rank = case(QUEUE_PRIORITIES, value=col(SyncJob.queue_name), else_=QUEUE_PRIORITIES[DEFAULT_QUEUE])
    stmt = stmt.order_by(
        queue_rank.asc(),
        col(SyncJob.run_at).asc(),
        col(SyncJob.created_at).asc(),
    ).limit(1)

    # Use FOR UPDATE to prevent two workers claiming the same job
    stmt = stmt.with_for_update(skip_locked=True)

    job = session.exec(stmt).first()

    if not job:
        return None

    job.status = JobStatus.IN_PROGRESS
    job.executions += 1
    job.started_at = utc_now()
    job.updated_at = utc_now()

    session.add(job)
    session.commit()
    session.refresh(job)

    logger.info(f"Claimed job id={job.id} class={job.job_class}, execution={job.executions}")
    return job


def complete_job(session: Session, job_pk: int) -> Optional[SyncJob]:
    """
    Mark a job as successfully completed.

    Returns:
        The updated SyncJob, or None if not found
    """
    job = _get_job(session, job_pk)

    if not job:
        logger.warning(f"Job id={job_pk} not found for completion")
        return None

    job.status = JobStatus.COMPLETED
    job.completed_at = utc_now()
    job.updated_at = utc_now()
    job.last_error = None

    session.add(job)
    session.commit()
    session.refresh(job)

    logger.info(f"Completed job id={job.id} class={job.job_class}")
    return job


def retry_job(
    session: Session,
    job_pk: int,
    delay_seconds: float,
    error: str,
    queue_name: Optional[str] = None,
) -> Optional[SyncJob]:
    """
    Return a failed job to the queue after ``delay_seconds``.

    The execution count is kept, so the next failure sees the full history.

    Args:
        session: Database session
        job_pk: Primary key of the job
        delay_seconds: Wait before the job becomes claimable again
        error: Error message describing the failure
        queue_name: Move the job to another queue (e.g., low_priority for rate limits)

    Returns:
        The updated SyncJob, or None if not found
    """
    job = _get_job(session, job_pk)

    if not job:
        logger.warning(f"Job id={job_pk} not found for retry")
        return None

    job.status = JobStatus.PENDING
    job.started_at = None
    job.run_at = utc_now() + timedelta(seconds=delay_seconds)
    job.last_error = _truncate(error)
    job.updated_at = utc_now()
    if queue_name:
        job.queue_name = queue_name

    session.add(job)
    session.commit()
    session.refresh(job)

    logger.info(
        f"Job id={job.id} failed (execution {job.executions}), will retry in {delay_seconds}s: {error[:100]}"
    )
    return job


def fail_job(session: Session, job_pk: int, error: str) -> Optional[SyncJob]:
    """
    Mark a job as permanently failed (escalated to the dead letter path).

    Returns:
        The updated SyncJob, or None if not found
    """
    job = _get_job(session, job_pk)

    if not job:
        logger.warning(f"Job id={job_pk} not found for failure")
        return None

    job.status = JobStatus.FAILED
    job.last_error = _truncate(error)
    job.completed_at = utc_now()
    job.updated_at = utc_now()

    session.add(job)
    session.commit()
    session.refresh(job)

    logger.warning(f"Job id={job.id} permanently failed after {job.executions} executions: {error[:100]}")
    return job


def discard_job(session: Session, job_pk: int, reason: str) -> Optional[SyncJob]:
    """
    Drop a job without retry or dead letter record.

    Returns:
        The updated SyncJob, or None if not found
    """
    job = _get_job(session, job_pk)

    if not job:
        logger.warning(f"Job id={job_pk} not found for discard")
        return None

    job.status = JobStatus.DISCARDED
    job.last_error = _truncate(reason)
    job.completed_at = utc_now()
    job.updated_at = utc_now()

    session.add(job)
    session.commit()
    session.refresh(job)

    logger.warning(f"Discarded job id={job.id} class={job.job_class}: {reason[:100]}")
    return job


def reset_stale_jobs(session: Session, timeout_minutes: int = 30) -> dict[str, int]:
    """
    Reset stale in-progress jobs to pending.

    Jobs that have been IN_PROGRESS for longer than timeout_minutes are
    considered stale (worker crashed/hung) and returned to the queue.

    This should be called on worker startup to recover from crashes.

    Returns:
        Dict with {"reset": N} count of reset jobs
    """
    cutoff = utc_now() - timedelta(minutes=timeout_minutes)

    stmt = select(SyncJob).where(
        col(SyncJob.status) == JobStatus.IN_PROGRESS,
        col(SyncJob.started_at) < cutoff,
    )

    stale_jobs = list(session.exec(stmt).all())

    for job in stale_jobs:
        job.status = JobStatus.PENDING
        job.started_at = None
        job.run_at = utc_now()
        job.updated_at = utc_now()
        job.last_error = f"Job timed out after {timeout_minutes} minutes"
        session.add(job)

    if stale_jobs:
        session.commit()
        logger.warning(f"Reset {len(stale_jobs)} stale jobs to pending")

    return {"reset": len(stale_jobs)}


def has_active_job(session: Session, job_class: str) -> bool:
    """True if a job of this class is pending or in progress."""
    stmt = select(SyncJob.id).where(
        col(SyncJob.job_class) == job_class,
        col(SyncJob.status).in_([JobStatus.PENDING, JobStatus.IN_PROGRESS]),
    )
    return session.exec(stmt.limit(1)).first() is not None


def count_stuck_jobs(session: Session, older_than_minutes: int = 60) -> int:
    """Count jobs that have been in progress for longer than ``older_than_minutes``."""
    cutoff = utc_now() - timedelta(minutes=older_than_minutes)
    stmt = (
        select(func.count())
        .select_from(SyncJob)
        .where(col(SyncJob.status) == JobStatus.IN_PROGRESS, col(SyncJob.started_at) < cutoff)
    )
    return session.exec(stmt).one()


def get_queue_stats(session: Session, queue_name: Optional[str] = None) -> dict[str, int]:
    """
    Get job queue statistics.

    Returns:
        Dict with counts per status: {"pending": N, "in_progress": N, ...}
    """
    stats: dict[str, int] = {status.value: 0 for status in JobStatus}

    stmt = select(SyncJob.status, func.count()).group_by(SyncJob.status)
    if queue_name:
        stmt = stmt.where(col(SyncJob.queue_name) == queue_name)

    for status, count in session.exec(stmt).all():
        stats[JobStatus(status).value] = count

    return stats


def get_queue_sizes(session: Session) -> dict[str, int]:
    """Pending jobs per queue name."""
    stmt = (
        select(SyncJob.queue_name, func.count())
        .where(col(SyncJob.status) == JobStatus.PENDING)
        .group_by(SyncJob.queue_name)
    )
    return {queue_name: count for queue_name, count in session.exec(stmt).all()}


def cleanup_old_jobs(session: Session, days_to_keep: int = 7) -> dict[str, int]:
    """
    Delete finished jobs older than days_to_keep.

    Failed jobs are kept in the failed job table by the dead letter sink, so
    their queue rows can go as well.

    Returns:
        Dict with {"deleted": N}
    """
    cutoff = utc_now() - timedelta(days=days_to_keep)

    stmt = delete(SyncJob).where(
        col(SyncJob.status).in_([JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.DISCARDED]),
        col(SyncJob.completed_at) < cutoff,
    )
    result = session.execute(stmt)
    session.commit()

    deleted = result.rowcount or 0
    logger.info(f"Cleaned up {deleted} finished jobs older than {days_to_keep} days")
    return {"deleted": deleted}


__all__ = [
    "enqueue_job",
    "claim_next_job",
    "complete_job",
    "retry_job",
    "fail_job",
    "discard_job",
    "reset_stale_jobs",
    "has_active_job",
    "count_stuck_jobs",
    "get_queue_stats",
    "get_queue_sizes",
    "cleanup_old_jobs",
    "DEFAULT_QUEUE",
    "LOW_PRIORITY_QUEUE",
    "CRITICAL_QUEUE",
]
