"""
Tests for the sync error taxonomy and Sentry helpers.
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from course_sync.core import errors as error_reporting
from course_sync.core.context import get_context_dict, job_context
from course_sync.sync.errors import (
    ApiError,
    AuthenticationError,
    CircuitOpenError,
    DataValidationError,
    ErrorKind,
    InvalidSyncTypeError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    StaleReferenceError,
    SyncError,
    classify_error,
    error_kind_name,
    is_deadlock,
)


class TestClassifyError:
    @pytest.mark.parametrize(
        "error,kind",
        [
            (RateLimitError("x"), ErrorKind.RATE_LIMIT),
            (AuthenticationError("x"), ErrorKind.AUTHENTICATION),
            (NotFoundError("x"), ErrorKind.NOT_FOUND),
            (ApiError("x"), ErrorKind.API),
            (NetworkError("x"), ErrorKind.NETWORK),
            (DataValidationError("x"), ErrorKind.DATA_VALIDATION),
            (CircuitOpenError(), ErrorKind.CIRCUIT_OPEN),
            (InvalidSyncTypeError("x"), ErrorKind.INVALID_ARGUMENT),
            (StaleReferenceError("x"), ErrorKind.STALE_REFERENCE),
            (OperationalError("stmt", {}, Exception("deadlock detected")), ErrorKind.DEADLOCK),
            (OperationalError("stmt", {}, Exception("could not serialize access")), ErrorKind.DEADLOCK),
            (IntegrityError("stmt", {}, Exception("duplicate key")), ErrorKind.OTHER),
            (ValueError("x"), ErrorKind.OTHER),
        ],
    )
    def test_classification(self, error, kind):
        assert classify_error(error) == kind

    def test_is_deadlock_ignores_non_database_errors(self):
        assert is_deadlock(RuntimeError("deadlock")) is False

    def test_error_kind_name(self):
        assert error_kind_name(RateLimitError("x")) == "RateLimitError"
        assert error_kind_name(KeyError("x")) == "KeyError"
        assert error_kind_name(OperationalError("stmt", {}, Exception("deadlock"))) == "OperationalError"


class TestSyncError:
    def test_to_dict(self):
        error = RateLimitError("Rate limit exceeded", details={"uri": "/v1/courses/1"}, retry_after=30)

        data = error.to_dict()

        assert data["error"] == "RateLimitError"
        assert data["message"] == "Rate limit exceeded"
        assert data["details"] == {"uri": "/v1/courses/1"}
        assert data["retry_after"] == 30
        assert "timestamp" in data

    def test_hierarchy(self):
        assert issubclass(RateLimitError, ApiError)
        assert issubclass(NetworkError, SyncError)
        assert not issubclass(InvalidSyncTypeError, SyncError)

    def test_circuit_open_defaults(self):
        error = CircuitOpenError()

        assert str(error) == "Circuit breaker is open"
        assert error.retry_after_seconds == 0


class TestJobContext:
    def test_context_set_and_reset(self):
        with job_context("abc", "CoursesSyncJob", 2):
            assert get_context_dict() == {"job_id": "abc", "job_class": "CoursesSyncJob", "executions": 2}

        assert get_context_dict() == {"job_id": None, "job_class": None, "executions": None}


class TestErrorReporting:
    def test_capture_exception_without_sentry_returns_none(self):
        assert error_reporting.capture_exception(NetworkError("x")) is None

    def test_capture_message_without_sentry_returns_none(self):
        assert error_reporting.capture_message("hello") is None

    def test_init_without_dsn_is_disabled(self):
        assert error_reporting.init_sentry("") is False
        assert error_reporting.is_sentry_enabled() is False

    def test_capture_exception_sends_when_enabled(self):
        with patch.object(error_reporting, "_sentry_initialized", True), patch(
            "course_sync.core.errors.sentry_sdk.capture_exception", return_value="event-1"
        ) as capture:
            with job_context("abc", "CoursesSyncJob", 1):
                event_id = error_reporting.capture_exception(NetworkError("x"), tags={"error_kind": "NetworkError"})

        assert event_id == "event-1"
        capture.assert_called_once()

    def test_before_send_tags_job_id(self):
        with job_context("abc", "CoursesSyncJob", 1):
            event = error_reporting._before_send({}, {})

        assert event["tags"]["job_id"] == "abc"
