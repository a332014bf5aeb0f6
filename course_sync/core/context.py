"""
Job context management for log and error correlation.

Binds the running job's identity into contextvars so every structured log line
and every Sentry event emitted while a job runs carries it.

Usage:
    with job_context(job_id="a1b2...", job_class="CoursesSyncJob", executions=2):
        job.perform(*args)

    capture_exception(exc, context=get_context_dict())
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

import structlog

__all__ = [
    "job_context",
    "get_job_id",
    "get_job_class",
    "get_context_dict",
]

_job_id: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
_job_class: ContextVar[Optional[str]] = ContextVar("job_class", default=None)
_executions: ContextVar[Optional[int]] = ContextVar("executions", default=None)


def get_job_id() -> Optional[str]:
    """Get the id of the job running in the current context."""
    return _job_id.get()


def get_job_class() -> Optional[str]:
    """Get the class name of the job running in the current context."""
    return _job_class.get()


@contextmanager
def job_context(job_id: str, job_class: str, executions: int) -> Iterator[None]:
    """
    Bind job identity for the duration of a job execution.

    Resets the contextvars on exit so context never leaks between jobs run by
    the same worker thread.
    """
    tokens = (
        _job_id.set(job_id),
        _job_class.set(job_class),
        _executions.set(executions),
    )
    structlog.contextvars.bind_contextvars(job_id=job_id, job_class=job_class, executions=executions)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars("job_id", "job_class", "executions")
        _job_id.reset(tokens[0])
        _job_class.reset(tokens[1])
        _executions.reset(tokens[2])


def get_context_dict() -> dict:
    """
    Get all context variables as dict.

    Useful for enriching error reports.
    """
    return {
        "job_id": get_job_id(),
        "job_class": get_job_class(),
        "executions": _executions.get(),
    }
