from .circuit_breaker_state import CircuitBreakerState
from .failed_job import FailedJob
from .sync_job import JobStatus, SyncJob

__all__ = [
    "CircuitBreakerState",
    "FailedJob",
    "JobStatus",
    "SyncJob",
]
