"""
Provider boundary for course synchronization.

The orchestrator only depends on the two protocols below:

- ``CourseProvider``: where course data comes from (fetch one record by id,
  enumerate candidate ids for an initial scan).
- ``CourseStore``: where it goes (upsert, list courses needing refresh).

``HttpCourseProvider`` is the production provider. It maps every HTTP
outcome onto the sync error taxonomy so the retry policy can classify it.
"""

from typing import Any, Iterable, Optional, Protocol

import httpx

from course_sync.core.config import settings
from course_sync.sync.errors import (
    ApiError,
    AuthenticationError,
    DataValidationError,
    NetworkError,
    NotFoundError,
    RateLimitError,
)

DEFAULT_RETRY_AFTER = 60  # seconds, when a 429 carries no Retry-After header
MAX_BODY_EXCERPT = 500


class CourseProvider(Protocol):
    default_limit: int

    def candidate_ids(self, limit: int) -> Iterable[str]:
        """External ids to try during an initial sync, at most ``limit``."""
        ...

    def fetch_course(self, external_id: str) -> Optional[dict[str, Any]]:
        """Fetch one course record; raises a SyncError subclass on failure."""
        ...


class SyncableCourse(Protocol):
    id: Any
    external_id: Optional[str]


class CourseStore(Protocol):
    def upsert(self, record: dict[str, Any], existing: Optional[SyncableCourse] = None) -> Any:
        ...

    def courses_needing_sync(self, limit: int) -> Iterable[SyncableCourse]:
        ...


def _retry_after(response: httpx.Response) -> int:
    header = response.headers.get("Retry-After")
    try:
        return int(header) if header is not None else DEFAULT_RETRY_AFTER
    except ValueError:
        return DEFAULT_RETRY_AFTER


def raise_for_response(response: httpx.Response) -> Any:
    """
    Decode a provider response or raise the matching sync error.

    Returns:
        Parsed JSON body for 2xx responses
    """
    uri = str(response.request.url) if response.request is not None else None
    details = {"uri": uri, "status_code": response.status_code}

    if response.is_success:
        try:
            return response.json()
        except ValueError as e:
            raise DataValidationError(f"Invalid JSON response: {e}", details=details) from e
    if response.status_code in (401, 403):
        raise AuthenticationError("Authentication failed", details=details)
    if response.status_code == 429:
        raise RateLimitError("Rate limit exceeded", details=details, retry_after=_retry_after(response))
    if response.status_code == 404:
        raise NotFoundError("Resource not found", details=details)
    raise ApiError(
        f"HTTP {response.status_code}: {response.reason_phrase}",
        details={**details, "body": response.text[:MAX_BODY_EXCERPT]},
    )


class HttpCourseProvider:
    """Golf course API client."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        start_id: Optional[int] = None,
        default_limit: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        api_key = settings.COURSE_API_KEY if api_key is None else api_key
        headers = {"Content-Type": "application/json", "User-Agent": "CourseSync/1.0"}
        if api_key:
            headers["Authorization"] = f"Key {api_key}"

        self.start_id = settings.INITIAL_SYNC_START_ID if start_id is None else start_id
        self.default_limit = settings.INITIAL_SYNC_DEFAULT_LIMIT if default_limit is None else default_limit
        self._client = httpx.Client(
            base_url=base_url or settings.COURSE_API_BASE_URL,
            headers=headers,
            timeout=timeout or settings.COURSE_API_TIMEOUT,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpCourseProvider":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def candidate_ids(self, limit: int) -> Iterable[str]:
        # Provider ids are dense integers; scan upwards from the configured start
        return (str(course_id) for course_id in range(self.start_id, self.start_id + limit))

    def fetch_course(self, external_id: str) -> Optional[dict[str, Any]]:
        try:
            response = self._client.get(f"/v1/courses/{external_id}")
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timeout: {e}", details={"external_id": external_id}) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {e}", details={"external_id": external_id}) from e

        payload = raise_for_response(response)
        # Course data is nested under "course" in current API versions
        course = payload.get("course", payload) if isinstance(payload, dict) else payload
        validate_course_data(course, external_id)
        return course


def validate_course_data(course: Any, external_id: str) -> None:
    if course is None:
        return
    if not isinstance(course, dict):
        raise DataValidationError(
            f"Invalid course data format for course {external_id}",
            details={"external_id": external_id, "data_type": type(course).__name__},
        )
    if "id" not in course:
        raise DataValidationError(
            f"Missing required fields for course {external_id}: id",
            details={"external_id": external_id, "missing_fields": ["id"]},
        )
