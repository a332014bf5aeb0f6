"""
Tests for circuit breaker functionality.

Tests cover:
1. State transitions (CLOSED -> HALF_OPEN -> OPEN, any success -> CLOSED)
2. is_open() timing (recovery timeout elapses without an explicit reset)
3. call() short-circuits while open without invoking the operation
4. Notification callback and DB persistence
5. CircuitBreakerRegistry (get, get_all_states, reset)
"""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine, select

from course_sync.core import circuit_breaker as circuit_breaker_module
from course_sync.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from course_sync.models.circuit_breaker_state import CircuitBreakerState
from course_sync.sync.errors import CircuitOpenError, NetworkError


def _fail():
    raise NetworkError("connection reset")


class TestCircuitBreakerInitialization:
    """Tests for CircuitBreaker initialization."""

    def test_default_initialization(self):
        """Test that CircuitBreaker initializes with correct defaults."""
        cb = CircuitBreaker(name="test", persist=False)

        assert cb.name == "test"
        assert cb.failure_threshold == 5
        assert cb.recovery_timeout == 60.0
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert cb.last_failure_at is None

    def test_circuit_states(self):
        """Verify the three states and their values."""
        assert [s.value for s in CircuitState] == ["closed", "open", "half_open"]


class TestStateTransitions:
    """Tests for circuit breaker state transitions."""

    def test_first_failure_moves_closed_to_half_open(self, breaker):
        """The first failure below threshold moves CLOSED -> HALF_OPEN."""
        breaker.record_failure()

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.failure_count == 1
        assert breaker.last_failure_at is not None
        assert breaker.is_open() is False

    def test_opens_exactly_at_threshold(self, breaker):
        """State becomes OPEN on the 5th failure and not before."""
        for _ in range(4):
            breaker.record_failure()
            assert breaker.state != CircuitState.OPEN

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.is_open() is True

    @pytest.mark.parametrize("failures", [0, 1, 4, 5, 12])
    def test_success_resets_from_any_state(self, breaker, failures):
        """A single success resets count to 0 and state to CLOSED."""
        for _ in range(failures):
            breaker.record_failure()

        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_last_failure_set_whenever_not_closed(self, breaker, clock):
        """last_failure_at tracks the most recent failure."""
        breaker.record_failure()
        first = breaker.last_failure_at
        clock.advance(5)
        breaker.record_failure()

        assert breaker.last_failure_at == clock.now
        assert breaker.last_failure_at > first


class TestRecoveryTimeout:
    """Tests for is_open() timing."""

    def test_is_open_false_after_timeout_without_reset(self, breaker, clock):
        """After the timeout, is_open() is False but the stored state stays OPEN."""
        for _ in range(5):
            breaker.record_failure()

        clock.advance(59)
        assert breaker.is_open() is True

        clock.advance(1)
        assert breaker.is_open() is False
        assert breaker.state == CircuitState.OPEN

    def test_failure_after_timeout_reopens_window(self, breaker, clock):
        """A failure after the timeout starts a new window immediately."""
        for _ in range(5):
            breaker.record_failure()
        clock.advance(61)
        assert breaker.is_open() is False

        breaker.record_failure()

        assert breaker.is_open() is True
        assert breaker.failure_count == 6

    def test_retry_after_seconds(self, breaker, clock):
        """retry_after_seconds counts down to 0."""
        for _ in range(5):
            breaker.record_failure()

        clock.advance(20)
        assert breaker.retry_after_seconds() == 40

        clock.advance(100)
        assert breaker.retry_after_seconds() == 0


class TestCall:
    """Tests for call() wrapping an operation."""

    def test_success_returns_result(self, breaker):
        assert breaker.call(lambda: {"id": 1}) == {"id": 1}
        assert breaker.state == CircuitState.CLOSED

    def test_failure_is_recorded_and_reraised(self, breaker):
        with pytest.raises(NetworkError):
            breaker.call(_fail)

        assert breaker.failure_count == 1

    def test_sixth_call_fails_fast_and_seventh_runs_after_timeout(self, breaker, clock):
        """Five failures open the breaker; the 6th call is short-circuited; after the timeout the 7th runs."""
        operation = MagicMock(side_effect=NetworkError("down"))

        for _ in range(5):
            with pytest.raises(NetworkError):
                breaker.call(operation)
        assert operation.call_count == 5

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call(operation)
        assert operation.call_count == 5
        assert exc_info.value.retry_after == 60

        clock.advance(60)
        operation.side_effect = None
        operation.return_value = "ok"

        assert breaker.call(operation) == "ok"
        assert operation.call_count == 6
        assert breaker.state == CircuitState.CLOSED

    def test_circuit_open_error_carries_details(self, breaker, clock):
        for _ in range(5):
            breaker.record_failure()
        clock.advance(15)

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call(lambda: None)

        assert exc_info.value.retry_after_seconds == 45
        assert exc_info.value.details == {"circuit": "test_api", "failure_count": 5}

    def test_snapshot(self, breaker):
        breaker.record_failure()
        snapshot = breaker.snapshot()

        assert snapshot["name"] == "test_api"
        assert snapshot["state"] == "half_open"
        assert snapshot["failure_count"] == 1
        assert snapshot["open"] is False


class TestNotifications:
    """Tests for the state change notification callback."""

    def test_callback_receives_transitions(self, breaker):
        callback = MagicMock()
        circuit_breaker_module.set_notification_callback(callback)

        for _ in range(5):
            breaker.record_failure()
        breaker.record_success()

        assert [c.args for c in callback.call_args_list] == [
            ("test_api", "closed", "half_open"),
            ("test_api", "half_open", "open"),
            ("test_api", "open", "closed"),
        ]

    def test_callback_errors_do_not_break_breaker(self, breaker):
        circuit_breaker_module.set_notification_callback(MagicMock(side_effect=RuntimeError("webhook down")))

        breaker.record_failure()

        assert breaker.state == CircuitState.HALF_OPEN


class TestPersistence:
    """Tests for DB persistence of breaker state."""

    def test_state_persisted_and_restored(self, test_engine, clock):
        with patch("course_sync.db.engine", test_engine):
            cb = CircuitBreaker(name="persisted", failure_threshold=2, clock=clock)
            cb.record_failure()
            cb.record_failure()

            with Session(test_engine) as session:
                row = session.exec(select(CircuitBreakerState).where(CircuitBreakerState.name == "persisted")).one()
                assert row.state == "open"
                assert row.failure_count == 2

            restored = CircuitBreaker(name="persisted", failure_threshold=2, clock=clock)

        assert restored.state == CircuitState.OPEN
        assert restored.failure_count == 2
        assert restored.is_open() is True

    def test_persistence_failure_is_swallowed(self, clock):
        """A database without the state table must not break the breaker."""
        bare_engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)

        with patch("course_sync.db.engine", bare_engine):
            cb = CircuitBreaker(name="broken", clock=clock)
            cb.record_failure()

        assert cb.state == CircuitState.HALF_OPEN
        assert cb.failure_count == 1


class TestCircuitBreakerRegistry:
    """Tests for CircuitBreakerRegistry."""

    def test_get_returns_same_instance(self):
        first = CircuitBreakerRegistry.get("course_api", persist=False)
        second = CircuitBreakerRegistry.get("course_api", persist=False)

        assert first is second

    def test_get_all_states(self):
        CircuitBreakerRegistry.get("a", persist=False)
        CircuitBreakerRegistry.get("b", persist=False, failure_threshold=1).record_failure()

        assert CircuitBreakerRegistry.get_all_states() == {"a": "closed", "b": "open"}

    def test_reset_forgets_breakers(self):
        first = CircuitBreakerRegistry.get("course_api", persist=False)
        CircuitBreakerRegistry.reset()

        assert CircuitBreakerRegistry.get("course_api", persist=False) is not first
