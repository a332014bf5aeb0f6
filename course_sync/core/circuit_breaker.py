from datetime import datetime, timedelta
from enum import Enum
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, Optional, TypeVar
import logging

from course_sync.core.typing import as_utc, utc_now
from course_sync.sync.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Type alias for notification callback - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]  # (name, old_state, new_state)

# Global notification callback - set by application on startup
_notification_callback: Optional[StateChangeCallback] = None


def set_notification_callback(callback: Optional[StateChangeCallback]) -> None:
    """Set the global notification callback for circuit breaker state changes."""
    global _notification_callback
    _notification_callback = callback


def _notify_state_change(name: str, old_state: str, new_state: str) -> None:
    """Notify about state change if callback is registered."""
    if _notification_callback:
        try:
            _notification_callback(name, old_state, new_state)
        except Exception as e:
            logger.error(f"Circuit breaker notification failed: {e}")


def _persist_state(name: str, state: str, failure_count: int, last_failure_at: Optional[datetime]) -> None:
    """Persist circuit breaker state to database."""
    try:
        # Import here to avoid circular imports
        from sqlmodel import Session, select
        from course_sync.db import engine
        from course_sync.models.circuit_breaker_state import CircuitBreakerState

        with Session(engine) as session:
            db_state = session.exec(select(CircuitBreakerState).where(CircuitBreakerState.name == name)).first()

            if db_state:
                db_state.state = state
                db_state.failure_count = failure_count
                db_state.last_failure_at = last_failure_at
                db_state.updated_at = utc_now()
            else:
                db_state = CircuitBreakerState(
                    name=name,
                    state=state,
                    failure_count=failure_count,
                    last_failure_at=last_failure_at,
                )
            session.add(db_state)
            session.commit()
    except Exception as e:
        # Don't let persistence failures break the circuit breaker
        logger.warning(f"Failed to persist circuit breaker state for {name}: {e}")


def _load_state(name: str) -> Optional[Dict[str, Any]]:
    """Load circuit breaker state from database."""
    try:
        from sqlmodel import Session, select
        from course_sync.db import engine
        from course_sync.models.circuit_breaker_state import CircuitBreakerState

        with Session(engine) as session:
            db_state = session.exec(select(CircuitBreakerState).where(CircuitBreakerState.name == name)).first()

            if db_state:
                return {
                    "state": db_state.state,
                    "failure_count": db_state.failure_count,
                    "last_failure_at": db_state.last_failure_at,
                }
    except Exception as e:
        logger.warning(f"Failed to load circuit breaker state for {name}: {e}")
    return None


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Failures seen, still letting calls through


@dataclass
class CircuitBreaker:
    """
    Guard around calls to an unreliable dependency.

    Transitions:
        success             -> CLOSED, failure_count = 0 (from any state)
        failure, count >= N -> OPEN
        failure from CLOSED -> HALF_OPEN (first failure, below threshold)

    ``is_open()`` only reports True while the recovery timeout since the last
    failure has not elapsed; afterwards calls go through again and the next
    outcome updates the stored state.
    """

    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 60.0  # seconds
    persist: bool = True  # Persist state to database
    clock: Callable[[], datetime] = field(default=utc_now, repr=False)

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_time: datetime | None = field(default=None, init=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def __post_init__(self):
        """Restore state from database if persistence is enabled."""
        if self.persist:
            saved = _load_state(self.name)
            if saved:
                state_str = saved.get("state", "closed")
                try:
                    self._state = CircuitState(state_str)
                except ValueError:
                    self._state = CircuitState.CLOSED
                self._failure_count = saved.get("failure_count", 0)
                last_failure = saved.get("last_failure_at")
                self._last_failure_time = as_utc(last_failure) if last_failure else None
                logger.info(f"Circuit {self.name}: restored state={self._state.value}, failures={self._failure_count}")

    def _persist(self, state: CircuitState, failure_count: int, last_failure: Optional[datetime]) -> None:
        if self.persist:
            _persist_state(self.name, state.value, failure_count, last_failure)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_at(self) -> Optional[datetime]:
        return self._last_failure_time

    def _open_locked(self, now: datetime) -> bool:
        """Must be called while holding self._lock."""
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return False
        return now < self._last_failure_time + timedelta(seconds=self.recovery_timeout)

    def _retry_after_locked(self, now: datetime) -> int:
        if self._last_failure_time is None:
            return 0
        remaining = (self._last_failure_time + timedelta(seconds=self.recovery_timeout) - now).total_seconds()
        return max(int(remaining), 0)

    def is_open(self) -> bool:
        with self._lock:
            return self._open_locked(self.clock())

    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    def retry_after_seconds(self) -> int:
        """Seconds until the recovery timeout elapses (0 when not waiting)."""
        with self._lock:
            return self._retry_after_locked(self.clock())

    def record_success(self) -> None:
        with self._lock:
            old_state = self._state
            had_failures = self._failure_count > 0
            self._failure_count = 0
            self._state = CircuitState.CLOSED
            last_failure = self._last_failure_time
        if old_state != CircuitState.CLOSED:
            logger.info(f"Circuit {self.name}: {old_state.value.upper()} -> CLOSED")
            _notify_state_change(self.name, old_state.value, CircuitState.CLOSED.value)
        # Persist outside lock to avoid holding lock during DB operation
        if old_state != CircuitState.CLOSED or had_failures:
            self._persist(CircuitState.CLOSED, 0, last_failure)

    def record_failure(self) -> None:
        with self._lock:
            old_state = self._state
            self._failure_count += 1
            self._last_failure_time = self.clock()

            if self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
            elif self._state == CircuitState.CLOSED:
                self._state = CircuitState.HALF_OPEN
            new_state = self._state
            failure_count = self._failure_count
            last_failure = self._last_failure_time

        if new_state != old_state:
            if new_state == CircuitState.OPEN:
                logger.warning(f"Circuit {self.name}: {old_state.value.upper()} -> OPEN (threshold reached)")
            else:
                logger.info(f"Circuit {self.name}: {old_state.value.upper()} -> {new_state.value.upper()}")
            _notify_state_change(self.name, old_state.value, new_state.value)
        self._persist(new_state, failure_count, last_failure)

    def call(self, operation: Callable[[], T]) -> T:
        """
        Run ``operation`` through the breaker.

        Raises CircuitOpenError without invoking ``operation`` while open.
        Any exception from ``operation`` is recorded as a failure and re-raised.
        """
        with self._lock:
            now = self.clock()
            if self._open_locked(now):
                retry_after = self._retry_after_locked(now)
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is open",
                    retry_after=retry_after,
                    details={"circuit": self.name, "failure_count": self._failure_count},
                )

        try:
            result = operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "last_failure_at": self._last_failure_time.isoformat() if self._last_failure_time else None,
                "open": self._open_locked(self.clock()),
            }


class CircuitBreakerRegistry:
    _breakers: Dict[str, CircuitBreaker] = {}
    _lock = Lock()

    @classmethod
    def get(cls, name: str, **kwargs) -> CircuitBreaker:
        with cls._lock:
            if name not in cls._breakers:
                cls._breakers[name] = CircuitBreaker(name=name, **kwargs)
            return cls._breakers[name]

    @classmethod
    def get_all_states(cls) -> Dict[str, str]:
        return {name: cb.state.value for name, cb in cls._breakers.items()}

    @classmethod
    def reset(cls) -> None:
        """Forget all breakers (tests and process re-initialization)."""
        with cls._lock:
            cls._breakers.clear()
