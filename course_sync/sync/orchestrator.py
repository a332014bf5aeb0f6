"""
Sync orchestration.

Runs initial and incremental sync passes against the course provider. Every
provider call goes through the circuit breaker; every record is handled in
isolation, so one failing record increments the error count and the pass moves
on to the next one.
"""

import time
from typing import Any, Callable, Optional

from course_sync.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from course_sync.core.config import settings
from course_sync.core.error_tracker import ErrorTracker, sync_error_tracker
from course_sync.core.logging_config import get_logger
from course_sync.sync.errors import ApiError, ErrorKind, NotFoundError, SyncError, classify_error
from course_sync.sync.provider import CourseProvider, CourseStore

logger = get_logger(__name__)

COURSE_API_CIRCUIT = "course_api"
MAX_CONSECUTIVE_NOT_FOUND = 100

RETRYABLE_FETCH_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, ErrorKind.API})


def default_circuit_breaker() -> CircuitBreaker:
    return CircuitBreakerRegistry.get(
        COURSE_API_CIRCUIT,
        failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=settings.CIRCUIT_RECOVERY_TIMEOUT,
        persist=settings.CIRCUIT_PERSIST_STATE,
    )


class SyncOrchestrator:
    def __init__(
        self,
        provider: CourseProvider,
        store: CourseStore,
        circuit_breaker: Optional[CircuitBreaker] = None,
        error_tracker: Optional[ErrorTracker] = None,
        batch_size: Optional[int] = None,
        request_delay: Optional[float] = None,
        max_retries: Optional[int] = None,
        max_backoff: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.store = store
        self.circuit_breaker = circuit_breaker or default_circuit_breaker()
        self.error_tracker = error_tracker or sync_error_tracker
        self.batch_size = settings.SYNC_BATCH_SIZE if batch_size is None else batch_size
        self.request_delay = settings.SYNC_REQUEST_DELAY if request_delay is None else request_delay
        self.max_retries = settings.SYNC_FETCH_MAX_RETRIES if max_retries is None else max_retries
        self.max_backoff = settings.SYNC_FETCH_MAX_BACKOFF if max_backoff is None else max_backoff
        self._sleep = sleep

    def _fetch(self, external_id: str) -> Optional[dict[str, Any]]:
        """
        Fetch one record through the breaker, retrying transient failures in place.

        Rate limits wait the provider's ``retry_after``; network and API errors
        wait ``min(2 ** attempt, max_backoff)``. Each attempt is one breaker call,
        and retries stop as soon as the breaker opens.
        """

        def operation() -> Optional[dict[str, Any]]:
            try:
                return self.provider.fetch_course(external_id)
            except NotFoundError:
                # A 404 is a healthy answer from the provider, not a breaker failure
                return None

        retries = 0
        while True:
            try:
                return self.circuit_breaker.call(operation)
            except SyncError as e:
                kind = classify_error(e)
                if kind not in RETRYABLE_FETCH_KINDS or retries >= self.max_retries or self.circuit_breaker.is_open():
                    raise
                retries += 1
                if kind == ErrorKind.RATE_LIMIT:
                    wait = e.retry_after or self.request_delay
                else:
                    wait = min(2**retries, self.max_backoff)
                logger.warning(
                    "course_fetch_retry",
                    external_id=external_id,
                    attempt=retries,
                    max_retries=self.max_retries,
                    error_kind=kind.value,
                    wait_seconds=wait,
                )
                if wait > 0:
                    self._sleep(wait)
            except Exception as e:
                raise ApiError(
                    f"Unexpected error fetching course {external_id}: {e}",
                    details={"external_id": external_id, "retries": retries},
                ) from e

    def _pause(self) -> None:
        if self.request_delay > 0:
            self._sleep(self.request_delay)

    def initial_sync(self, limit: Optional[int] = None) -> dict[str, int]:
        """
        Pull up to ``limit`` provider records and upsert them.

        Args:
            limit: Maximum records to request (provider default when None)

        Returns:
            {"synced": N, "errors": N}
        """
        limit = self.provider.default_limit if limit is None else limit
        logger.info("initial_sync_started", limit=limit)

        synced = errors = not_found = consecutive_not_found = 0

        for external_id in self.provider.candidate_ids(limit):
            if consecutive_not_found >= MAX_CONSECUTIVE_NOT_FOUND:
                logger.info("initial_sync_stopped_early", consecutive_not_found=consecutive_not_found)
                break
            try:
                record = self._fetch(external_id)
                if record:
                    self.store.upsert(record)
                    synced += 1
                    consecutive_not_found = 0
                else:
                    not_found += 1
                    consecutive_not_found += 1
            except Exception as e:
                errors += 1
                consecutive_not_found = 0
                self.error_tracker.record_error(e, {"sync_type": "initial", "external_id": external_id})
            self._pause()

        logger.info("initial_sync_completed", synced=synced, errors=errors, not_found=not_found)
        return {"synced": synced, "errors": errors}

    def update_sync(self) -> dict[str, int]:
        """
        Refresh known courses that are due for a sync.

        Returns:
            {"synced": N, "errors": N}
        """
        logger.info("update_sync_started", batch_size=self.batch_size)
        synced = errors = 0

        for course in self.store.courses_needing_sync(self.batch_size):
            if not course.external_id:
                logger.warning("course_without_external_id", course_id=course.id)
                continue
            try:
                record = self._fetch(course.external_id)
                if record:
                    self.store.upsert(record, existing=course)
                    synced += 1
                else:
                    logger.warning("course_missing_upstream", course_id=course.id, external_id=course.external_id)
            except Exception as e:
                errors += 1
                self.error_tracker.record_error(
                    e, {"sync_type": "update", "course_id": course.id, "external_id": course.external_id}
                )
            self._pause()

        logger.info("update_sync_completed", synced=synced, errors=errors)
        return {"synced": synced, "errors": errors}

    def error_summary(self) -> dict[str, Any]:
        """Tracker summary merged with the provider circuit state."""
        return {
            **self.error_tracker.error_summary(),
            "circuit_breaker_state": self.circuit_breaker.state.value,
            "circuit_breaker_failures": self.circuit_breaker.failure_count,
            "has_critical_errors": self.error_tracker.has_critical_errors(),
        }
