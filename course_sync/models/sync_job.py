"""
Sync Job Model

Persistent job queue rows for background work that survives application restarts.
A row carries the job class, its JSON arguments and the execution count, which
the retry policy reads on every failure and which must survive re-enqueueing.

Usage:
    from course_sync.models.sync_job import SyncJob, JobStatus

    job = SyncJob(job_class="CoursesSyncJob", arguments='["update", {}]')

    if job.status == JobStatus.PENDING:
        job.status = JobStatus.IN_PROGRESS
"""

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import Index

from course_sync.core.typing import utc_now


class JobStatus(str, Enum):
    """Status of a queued job."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"  # Escalated to the dead letter path
    DISCARDED = "discarded"  # Dropped without retry (stale reference)


class SyncJob(SQLModel, table=True):
    """
    Persistent job for crash-resilient background execution.

    Attributes:
        id: Primary key
        job_id: Stable public identifier, kept across retries
        job_class: Name of the registered job class to run
        arguments: JSON-encoded positional arguments for perform()
        queue_name: Logical queue ("default", "low_priority", "critical")
        status: Current job status
        executions: Number of times the job has been claimed for execution
        run_at: Earliest time the job may be claimed (retry delay)
        last_error: Error message from most recent failure
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex, index=True)
    job_class: str = Field(index=True)
    arguments: str = Field(default="[]")
    queue_name: str = Field(default="default")
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    executions: int = Field(default=0)
    run_at: datetime = Field(default_factory=utc_now)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    __table_args__ = (
        # Primary queue query: status + run_at + created_at
        Index("ix_syncjob_queue", "status", "run_at", "created_at"),
        Index("ix_syncjob_queue_name_status", "queue_name", "status"),
        # Stale job detection (in_progress + started_at)
        Index("ix_syncjob_stale", "status", "started_at"),
    )

    def parsed_arguments(self) -> list[Any]:
        """Decode the stored positional arguments."""
        if not self.arguments:
            return []
        return json.loads(self.arguments)


__all__ = ["SyncJob", "JobStatus"]
