"""
Unit tests for the job queue service.

Tests cover:
1. enqueue_job - creating jobs with JSON arguments
2. claim_next_job - due-ness, queue priority ordering, execution counting
3. complete_job / retry_job / fail_job / discard_job - status transitions
4. reset_stale_jobs - stale job recovery
5. get_queue_stats / get_queue_sizes / cleanup_old_jobs
"""

from datetime import timedelta

from sqlmodel import Session, select

from course_sync.core.typing import utc_now
from course_sync.models.sync_job import JobStatus, SyncJob
from course_sync.services.job_queue import (
    claim_next_job,
    cleanup_old_jobs,
    complete_job,
    count_stuck_jobs,
    discard_job,
    enqueue_job,
    fail_job,
    get_queue_sizes,
    get_queue_stats,
    has_active_job,
    reset_stale_jobs,
    retry_job,
)


class TestEnqueueJob:
    """Tests for enqueue_job."""

    def test_enqueue_creates_pending_job(self, test_session: Session):
        job = enqueue_job(test_session, "CoursesSyncJob", ["initial", {"limit": 10}])

        assert job.id is not None
        assert len(job.job_id) == 32
        assert job.status == JobStatus.PENDING
        assert job.executions == 0
        assert job.queue_name == "default"
        assert job.parsed_arguments() == ["initial", {"limit": 10}]

    def test_enqueue_defaults_to_empty_arguments(self, test_session: Session):
        job = enqueue_job(test_session, "CoursesSyncJob")

        assert job.parsed_arguments() == []


class TestClaimNextJob:
    """Tests for claim_next_job."""

    def test_claim_increments_executions(self, test_session: Session):
        enqueue_job(test_session, "CoursesSyncJob", ["update"])

        job = claim_next_job(test_session)

        assert job.status == JobStatus.IN_PROGRESS
        assert job.executions == 1
        assert job.started_at is not None

    def test_claim_returns_none_when_empty(self, test_session: Session):
        assert claim_next_job(test_session) is None

    def test_future_jobs_not_claimed(self, test_session: Session):
        enqueue_job(test_session, "CoursesSyncJob", run_at=utc_now() + timedelta(minutes=5))

        assert claim_next_job(test_session) is None
        assert claim_next_job(test_session, now=utc_now() + timedelta(minutes=6)) is not None

    def test_critical_queue_claimed_first(self, test_session: Session):
        enqueue_job(test_session, "A", queue_name="low_priority")
        enqueue_job(test_session, "B", queue_name="default")
        enqueue_job(test_session, "C", queue_name="critical")

        claimed = [claim_next_job(test_session).job_class for _ in range(3)]

        assert claimed == ["C", "B", "A"]

    def test_queue_filter(self, test_session: Session):
        enqueue_job(test_session, "A", queue_name="default")
        enqueue_job(test_session, "B", queue_name="critical")

        job = claim_next_job(test_session, queue_name="default")

        assert job.job_class == "A"


class TestStatusTransitions:
    """Tests for complete/retry/fail/discard."""

    def test_complete(self, test_session: Session):
        job = enqueue_job(test_session, "CoursesSyncJob")
        claim_next_job(test_session)

        completed = complete_job(test_session, job.id)

        assert completed.status == JobStatus.COMPLETED
        assert completed.completed_at is not None

    def test_retry_keeps_executions_and_delays(self, test_session: Session):
        job = enqueue_job(test_session, "CoursesSyncJob")
        claim_next_job(test_session)

        retried = retry_job(test_session, job.id, delay_seconds=120, error="NetworkError: timeout")

        assert retried.status == JobStatus.PENDING
        assert retried.executions == 1
        assert retried.last_error == "NetworkError: timeout"
        assert claim_next_job(test_session) is None

        reclaimed = claim_next_job(test_session, now=utc_now() + timedelta(seconds=121))
        assert reclaimed.executions == 2

    def test_retry_can_move_queue(self, test_session: Session):
        job = enqueue_job(test_session, "CoursesSyncJob")
        claim_next_job(test_session)

        retried = retry_job(test_session, job.id, 0, "RateLimitError", queue_name="low_priority")

        assert retried.queue_name == "low_priority"

    def test_fail_truncates_error(self, test_session: Session):
        job = enqueue_job(test_session, "CoursesSyncJob")

        failed = fail_job(test_session, job.id, "x" * 5000)

        assert failed.status == JobStatus.FAILED
        assert len(failed.last_error) == 1000

    def test_discard(self, test_session: Session):
        job = enqueue_job(test_session, "CoursesSyncJob")

        discarded = discard_job(test_session, job.id, "course 42 no longer exists")

        assert discarded.status == JobStatus.DISCARDED

    def test_missing_job_returns_none(self, test_session: Session):
        assert complete_job(test_session, 999) is None
        assert retry_job(test_session, 999, 1, "x") is None
        assert fail_job(test_session, 999, "x") is None
        assert discard_job(test_session, 999, "x") is None


class TestStaleJobs:
    """Tests for stale/stuck job handling."""

    def _make_in_progress(self, session: Session, minutes_ago: int) -> SyncJob:
        job = enqueue_job(session, "CoursesSyncJob")
        job.status = JobStatus.IN_PROGRESS
        job.started_at = utc_now() - timedelta(minutes=minutes_ago)
        session.add(job)
        session.commit()
        return job

    def test_reset_stale_jobs(self, test_session: Session):
        self._make_in_progress(test_session, minutes_ago=45)
        self._make_in_progress(test_session, minutes_ago=5)

        assert reset_stale_jobs(test_session, timeout_minutes=30) == {"reset": 1}

        statuses = sorted(j.status.value for j in test_session.exec(select(SyncJob)).all())
        assert statuses == ["in_progress", "pending"]

    def test_count_stuck_jobs(self, test_session: Session):
        self._make_in_progress(test_session, minutes_ago=90)
        self._make_in_progress(test_session, minutes_ago=10)

        assert count_stuck_jobs(test_session, older_than_minutes=60) == 1


class TestStatsAndCleanup:
    """Tests for statistics and cleanup."""

    def test_queue_stats(self, test_session: Session):
        enqueue_job(test_session, "A")
        enqueue_job(test_session, "B")
        job = enqueue_job(test_session, "C")
        fail_job(test_session, job.id, "boom")

        stats = get_queue_stats(test_session)

        assert stats["pending"] == 2
        assert stats["failed"] == 1
        assert stats["completed"] == 0

    def test_queue_sizes(self, test_session: Session):
        enqueue_job(test_session, "A", queue_name="default")
        enqueue_job(test_session, "B", queue_name="default")
        enqueue_job(test_session, "C", queue_name="critical")

        assert get_queue_sizes(test_session) == {"default": 2, "critical": 1}

    def test_has_active_job(self, test_session: Session):
        assert has_active_job(test_session, "CoursesSyncJob") is False

        job = enqueue_job(test_session, "CoursesSyncJob")
        assert has_active_job(test_session, "CoursesSyncJob") is True

        complete_job(test_session, job.id)
        assert has_active_job(test_session, "CoursesSyncJob") is False

    def test_cleanup_old_jobs(self, test_session: Session):
        old = enqueue_job(test_session, "A")
        complete_job(test_session, old.id)
        old.completed_at = utc_now() - timedelta(days=10)
        test_session.add(old)
        test_session.commit()

        recent = enqueue_job(test_session, "B")
        complete_job(test_session, recent.id)
        enqueue_job(test_session, "C")

        assert cleanup_old_jobs(test_session, days_to_keep=7) == {"deleted": 1}
        assert len(test_session.exec(select(SyncJob)).all()) == 2
