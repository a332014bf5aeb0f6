"""
Test fixtures for course-sync tests.

Provides database session fixtures, a controllable clock and stub providers.
"""

import os

# Point the application engine at a throwaway database before anything imports it
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SYNC_REQUEST_DELAY", "0")

import pytest  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Any, Callable, Generator, Optional  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import course_sync.models  # noqa: E402,F401
from course_sync.core import circuit_breaker  # noqa: E402
from course_sync.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry  # noqa: E402
from course_sync.core.error_tracker import sync_error_tracker  # noqa: E402
from course_sync.services import jobs  # noqa: E402
from course_sync.sync.errors import NotFoundError  # noqa: E402


# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(autouse=True)
def reset_process_state():
    """Clear process-wide singletons so tests never see each other's state."""
    CircuitBreakerRegistry.reset()
    sync_error_tracker.clear()
    circuit_breaker.set_notification_callback(None)
    jobs.set_orchestrator_factory(None)
    yield
    CircuitBreakerRegistry.reset()
    sync_error_tracker.clear()
    circuit_breaker.set_notification_callback(None)
    jobs.set_orchestrator_factory(None)


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def session_factory(test_engine) -> Callable[[], Session]:
    """Session factory bound to the test engine (for components that open their own sessions)."""
    return lambda: Session(test_engine)


class FakeClock:
    """Manually advanced clock for breaker timing tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    """Non-persistent breaker with default thresholds and a fake clock."""
    return CircuitBreaker(name="test_api", persist=False, clock=clock)


class StubProvider:
    """
    In-memory CourseProvider.

    ``responses`` maps external id -> record dict, an exception instance to
    raise, or None for not found. A list is consumed one item per call (the
    last item repeats). Candidate ids are the keys, in order.
    """

    def __init__(self, responses: dict[str, Any], default_limit: int = 25):
        self.responses = responses
        self.default_limit = default_limit
        self.fetched: list[str] = []

    def candidate_ids(self, limit: int):
        return list(self.responses.keys())[:limit]

    def fetch_course(self, external_id: str):
        self.fetched.append(external_id)
        response = self.responses.get(external_id)
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if response is None:
            raise NotFoundError("Resource not found", details={"external_id": external_id})
        if isinstance(response, Exception):
            raise response
        return response


class StoredCourse:
    def __init__(self, id: int, external_id: Optional[str]):
        self.id = id
        self.external_id = external_id


class StubStore:
    """In-memory CourseStore recording upserts."""

    def __init__(self, courses: Optional[list[StoredCourse]] = None):
        self.courses = courses or []
        self.upserted: list[tuple[dict[str, Any], Optional[StoredCourse]]] = []

    def upsert(self, record, existing=None):
        self.upserted.append((record, existing))
        return record

    def courses_needing_sync(self, limit: int):
        return self.courses[:limit]


@pytest.fixture
def make_provider() -> Callable[..., StubProvider]:
    return StubProvider


@pytest.fixture
def make_store() -> Callable[..., StubStore]:
    return StubStore


@pytest.fixture
def stored_course() -> Callable[..., StoredCourse]:
    return StoredCourse
