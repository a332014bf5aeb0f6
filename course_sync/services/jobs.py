"""
Background jobs and the job runner.

Jobs are plain classes registered by name. The queue stores the class name and
JSON arguments; the runner looks the class up, calls ``perform(*arguments)``
and turns the outcome into one of three terminal results:

    success             -> job completed
    stale reference     -> job discarded (warning log only)
    permanent failure   -> job failed, DeadLetterJob enqueued on "critical"

Anything else is a transient failure: the job goes back to the queue with a
delay decided by the RetryPolicy (or by the deadlock safety net).

Usage:
    CoursesSyncJob.perform_later(session, "initial", {"limit": 500})

    runner = JobRunner()
    job = claim_next_job(session)
    if job:
        runner.run(session, job)
"""

import json
from datetime import datetime
from typing import Any, Callable, Optional, Type

from sqlmodel import Session

from course_sync.core.config import settings
from course_sync.core.context import job_context
from course_sync.core.error_tracker import ErrorTracker, format_backtrace, sync_error_tracker
from course_sync.core.errors import capture_exception
from course_sync.core.logging_config import get_logger
from course_sync.core.typing import utc_now
from course_sync.models.sync_job import JobStatus, SyncJob
from course_sync.services.dead_letter import MAX_BACKTRACE_FRAMES, DeadLetterSink
from course_sync.services.job_queue import (
    CRITICAL_QUEUE,
    DEFAULT_QUEUE,
    LOW_PRIORITY_QUEUE,
    complete_job,
    discard_job,
    enqueue_job,
    fail_job,
    retry_job,
)
from course_sync.sync.errors import (
    ErrorKind,
    InvalidSyncTypeError,
    StaleReferenceError,
    classify_error,
    error_kind_name,
)
from course_sync.sync.orchestrator import SyncOrchestrator
from course_sync.sync.retry_policy import Escalate, Retry, RetryPolicy

logger = get_logger(__name__)

JOB_REGISTRY: dict[str, Type["ApplicationJob"]] = {}


def register_job(cls: Type["ApplicationJob"]) -> Type["ApplicationJob"]:
    """Class decorator: make a job runnable by name."""
    JOB_REGISTRY[cls.__name__] = cls
    return cls


class ApplicationJob:
    """Base class for queued jobs."""

    queue_name: str = DEFAULT_QUEUE

    def perform(self, *args: Any) -> Any:
        raise NotImplementedError

    @classmethod
    def perform_later(
        cls,
        session: Session,
        *args: Any,
        queue_name: Optional[str] = None,
        run_at: Optional[datetime] = None,
    ) -> SyncJob:
        """Enqueue this job with positional ``args`` (must be JSON-serializable)."""
        return enqueue_job(
            session,
            cls.__name__,
            list(args),
            queue_name=queue_name or cls.queue_name,
            run_at=run_at,
        )


# --- Courses sync ---

_orchestrator_factory: Optional[Callable[[], SyncOrchestrator]] = None


def set_orchestrator_factory(factory: Optional[Callable[[], SyncOrchestrator]]) -> None:
    """
    Set the factory CoursesSyncJob uses to build its orchestrator.

    The course store lives outside this package, so the worker wires it in
    at startup.
    """
    global _orchestrator_factory
    _orchestrator_factory = factory


@register_job
class CoursesSyncJob(ApplicationJob):
    queue_name = DEFAULT_QUEUE

    def __init__(self, orchestrator: Optional[SyncOrchestrator] = None):
        self._orchestrator = orchestrator

    @property
    def orchestrator(self) -> SyncOrchestrator:
        if self._orchestrator is None:
            if _orchestrator_factory is None:
                raise RuntimeError("No orchestrator factory configured for CoursesSyncJob")
            self._orchestrator = _orchestrator_factory()
        return self._orchestrator

    def perform(self, sync_type: str = "update", options: Optional[dict[str, Any]] = None) -> dict[str, int]:
        options = options or {}
        logger.info("courses_sync_job_started", sync_type=sync_type)

        if str(sync_type) == "initial":
            result = self.orchestrator.initial_sync(limit=options.get("limit"))
        elif str(sync_type) == "update":
            result = self.orchestrator.update_sync()
        else:
            raise InvalidSyncTypeError(sync_type)

        logger.info("courses_sync_job_completed", sync_type=sync_type, **result)
        return result


# --- Dead letter ---


@register_job
class DeadLetterJob(ApplicationJob):
    queue_name = CRITICAL_QUEUE

    def __init__(self, sink: Optional[DeadLetterSink] = None):
        self.sink = sink or DeadLetterSink()

    def perform(self, payload: dict[str, Any]) -> None:
        failed_at = payload.get("failed_at")
        self.sink.commit(
            job_class=payload["job_class"],
            job_id=payload["job_id"],
            arguments=payload.get("arguments", []),
            error_kind=payload["error_kind"],
            error_message=payload["error_message"],
            backtrace=payload.get("backtrace"),
            failed_at=datetime.fromisoformat(failed_at) if failed_at else utc_now(),
            executions=payload.get("executions", 0),
        )


# --- Runner ---


class JobRunner:
    """
    Executes claimed jobs and applies the rescue path on failure.

    Order of checks on failure:
        1. stale reference      -> discard
        2. deadlock             -> retry after executions**4 + 2 seconds, up to
                                   ``deadlock_max_attempts`` executions
        3. RetryPolicy decision -> Retry (rate limits move to low_priority)
                                   or Escalate (dead letter)
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        error_tracker: Optional[ErrorTracker] = None,
        deadlock_max_attempts: Optional[int] = None,
        job_factory: Optional[Callable[[Type[ApplicationJob]], ApplicationJob]] = None,
        registry: Optional[dict[str, Type[ApplicationJob]]] = None,
    ):
        self.policy = policy or RetryPolicy.from_settings()
        self.error_tracker = error_tracker or sync_error_tracker
        self.deadlock_max_attempts = (
            settings.DEADLOCK_MAX_ATTEMPTS if deadlock_max_attempts is None else deadlock_max_attempts
        )
        self.job_factory = job_factory or (lambda job_cls: job_cls())
        self.registry = JOB_REGISTRY if registry is None else registry

    def run(self, session: Session, job: SyncJob) -> JobStatus:
        """Run one claimed job and persist its outcome. Never raises job errors."""
        with job_context(job.job_id, job.job_class, job.executions):
            job_cls = self.registry.get(job.job_class)
            if job_cls is None:
                error = LookupError(f"Unknown job class: {job.job_class}")
                self._escalate(session, job, error, "unknown job class")
                return JobStatus.FAILED

            try:
                try:
                    arguments = job.parsed_arguments()
                except json.JSONDecodeError as e:
                    raise StaleReferenceError(f"Could not deserialize job arguments: {e}") from e
                self.job_factory(job_cls).perform(*arguments)
            except Exception as e:
                return self.handle_failure(session, job, e)

            complete_job(session, job.id)
            return JobStatus.COMPLETED

    def handle_failure(self, session: Session, job: SyncJob, error: Exception) -> JobStatus:
        kind = classify_error(error)

        if kind == ErrorKind.STALE_REFERENCE:
            logger.warning("job_discarded", reason="stale_reference", message=str(error))
            discard_job(session, job.id, str(error))
            return JobStatus.DISCARDED

        if kind == ErrorKind.DEADLOCK and job.executions < self.deadlock_max_attempts:
            delay = job.executions**4 + 2
            logger.warning("job_deadlock_retry", delay_seconds=delay, message=str(error))
            retry_job(session, job.id, delay, _describe(error))
            return JobStatus.PENDING

        self.error_tracker.record_error(
            error, {"job_class": job.job_class, "job_id": job.job_id, "executions": job.executions}
        )

        decision = self.policy.decide_for(error, job.executions)
        if isinstance(decision, Retry):
            queue_name = LOW_PRIORITY_QUEUE if kind == ErrorKind.RATE_LIMIT else None
            retry_job(session, job.id, decision.delay_seconds, _describe(error), queue_name=queue_name)
            return JobStatus.PENDING

        if not isinstance(decision, Escalate):
            raise TypeError(f"Unexpected retry decision: {decision!r}")
        self._escalate(session, job, error, decision.reason)
        return JobStatus.FAILED

    def _escalate(self, session: Session, job: SyncJob, error: Exception, reason: str) -> None:
        logger.error("job_failed_permanently", reason=reason, error_kind=error_kind_name(error), message=str(error))
        fail_job(session, job.id, _describe(error))

        # A failing dead letter write is reported, never dead-lettered again
        if job.job_class != DeadLetterJob.__name__:
            DeadLetterJob.perform_later(session, dead_letter_payload(job, error))
        capture_exception(
            error,
            context={"reason": reason, "job_id": job.job_id},
            tags={"job_class": job.job_class, "error_kind": error_kind_name(error)},
        )


def dead_letter_payload(job: SyncJob, error: BaseException) -> dict[str, Any]:
    """Serializable DeadLetterJob argument describing a permanently failed job."""
    try:
        arguments = job.parsed_arguments()
    except json.JSONDecodeError:
        arguments = job.arguments
    return {
        "job_class": job.job_class,
        "job_id": job.job_id,
        "arguments": arguments,
        "error_kind": error_kind_name(error),
        "error_message": str(error),
        "backtrace": format_backtrace(error, MAX_BACKTRACE_FRAMES),
        "failed_at": utc_now().isoformat(),
        "executions": job.executions,
    }


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


__all__ = [
    "ApplicationJob",
    "CoursesSyncJob",
    "DeadLetterJob",
    "JobRunner",
    "JOB_REGISTRY",
    "register_job",
    "set_orchestrator_factory",
    "dead_letter_payload",
]
