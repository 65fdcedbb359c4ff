"""Circuit breaker pattern for fault tolerance."""

import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

import structlog

from .classifier import DEFAULT_FAILURE_STATUS_RANGE, is_failure
from .errors import CircuitOpenError, ConfigurationError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests pass through
    OPEN = "open"  # Circuit tripped, requests fail fast
    HALF_OPEN = "half_open"  # Testing if service recovered


# Numeric encoding used by CircuitBreaker.export_prometheus
STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.OPEN: 1,
    CircuitState.HALF_OPEN: 2,
}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Failures before opening
    success_threshold: int = 3  # Successes in half-open before closing
    open_timeout: float = 60.0  # Seconds after the last failure before recovery may be attempted
    half_open_timeout: float = 30.0
    ignore_auth_errors: bool = True  # Auth errors never count as failures
    ignore_rate_limit_errors: bool = True
    ignore_validation_errors: bool = True
    window_size: int = 100  # Outcomes kept for recent_failure_rate()

    def validate(self) -> None:
        """Raise ConfigurationError naming the first out-of-range field."""
        if self.failure_threshold <= 0:
            raise ConfigurationError("failure_threshold", "must be > 0")
        if self.success_threshold <= 0:
            raise ConfigurationError("success_threshold", "must be > 0")
        if self.open_timeout <= 0:
            raise ConfigurationError("open_timeout", "must be > 0")
        if self.half_open_timeout < 0:
            raise ConfigurationError("half_open_timeout", "must be >= 0")
        if self.window_size <= 0:
            raise ConfigurationError("window_size", "must be > 0")

    def is_valid(self) -> bool:
        try:
            self.validate()
        except ConfigurationError:
            return False
        return True

    def with_failure_threshold(self, threshold: int) -> "CircuitBreakerConfig":
        return replace(self, failure_threshold=threshold)

    def with_success_threshold(self, threshold: int) -> "CircuitBreakerConfig":
        return replace(self, success_threshold=threshold)

    def with_open_timeout(self, timeout: float) -> "CircuitBreakerConfig":
        return replace(self, open_timeout=timeout)

    def with_half_open_timeout(self, timeout: float) -> "CircuitBreakerConfig":
        return replace(self, half_open_timeout=timeout)

    def with_ignore_auth_errors(self, ignore: bool) -> "CircuitBreakerConfig":
        return replace(self, ignore_auth_errors=ignore)

    def with_ignore_rate_limit_errors(self, ignore: bool) -> "CircuitBreakerConfig":
        return replace(self, ignore_rate_limit_errors=ignore)

    def with_ignore_validation_errors(self, ignore: bool) -> "CircuitBreakerConfig":
        return replace(self, ignore_validation_errors=ignore)

    def with_window_size(self, size: int) -> "CircuitBreakerConfig":
        return replace(self, window_size=size)


@dataclass
class CircuitBreakerMetrics:
    """Counters accumulated since construction or the last reset()."""

    total_requests: int = 0
    success_count: int = 0
    failure_count: int = 0
    state_changes: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.success_count / self.total_requests

    def export_prometheus_format(self) -> str:
        """
        Export counters in Prometheus text format.

        The state line is always ``0``: metrics carry no state. Use
        ``CircuitBreaker.export_prometheus`` for the real state gauge.
        """
        return (
            f"circuit_breaker_requests_total {self.total_requests}\n"
            f"circuit_breaker_failures_total {self.failure_count}\n"
            "circuit_breaker_state 0\n"
            f"circuit_breaker_success_rate {self.success_rate}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "state_changes": self.state_changes,
            "success_rate": self.success_rate,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class CircuitBreakerState:
    """Mutable state owned by one breaker; only touched under its lock."""

    current_state: CircuitState
    last_state_change: float
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[float] = None
    metrics: CircuitBreakerMetrics = field(default_factory=CircuitBreakerMetrics)


class CircuitBreaker:
    """
    Circuit breaker implementation.

    States:
    - CLOSED: Normal operation. Failures increment counter; successes do not
      reset it, only a state transition does.
    - OPEN: All requests are refused until ``open_timeout`` has elapsed since
      the last failure and ``attempt_recovery()`` is called.
    - HALF_OPEN: Requests pass. ``success_threshold`` successes close the
      circuit; a single failure reopens it.

    One lock guards all state. It is never held while the guarded operation
    runs, so a breaker can be shared freely between tasks and threads.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.config.validate()

        self._clock = clock
        self._state = CircuitBreakerState(current_state=CircuitState.CLOSED, last_state_change=clock())
        self._window: Deque[bool] = deque(maxlen=self.config.window_size)
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            return self._state.current_state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._state.failure_count

    @property
    def success_count(self) -> int:
        with self._lock:
            return self._state.success_count

    @property
    def last_failure_time(self) -> Optional[float]:
        with self._lock:
            return self._state.last_failure_time

    @property
    def last_state_change(self) -> float:
        with self._lock:
            return self._state.last_state_change

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self.state == CircuitState.HALF_OPEN

    def can_execute(self) -> bool:
        """Whether a request may be sent now."""
        with self._lock:
            return self._state.current_state != CircuitState.OPEN

    def _recovery_due(self) -> bool:
        if self._state.current_state != CircuitState.OPEN:
            return False
        if self._state.last_failure_time is None:
            return False
        return self._clock() - self._state.last_failure_time >= self.config.open_timeout

    def can_attempt_recovery(self) -> bool:
        """Check if the open timeout has elapsed since the last failure."""
        with self._lock:
            return self._recovery_due()

    def _get_remaining_timeout(self) -> float:
        if self._state.current_state != CircuitState.OPEN or self._state.last_failure_time is None:
            return 0
        elapsed = self._clock() - self._state.last_failure_time
        return max(0, self.config.open_timeout - elapsed)

    def remaining_timeout(self) -> float:
        """Seconds until recovery may be attempted; 0 unless OPEN."""
        with self._lock:
            return self._get_remaining_timeout()

    def _transition(self, new_state: CircuitState, failure_count: int, success_count: int) -> CircuitState:
        """Move to new_state and reset counters. Caller holds the lock."""
        previous = self._state.current_state
        self._state.current_state = new_state
        self._state.failure_count = failure_count
        self._state.success_count = success_count
        self._state.last_state_change = self._clock()
        self._state.metrics.state_changes += 1
        return previous

    def attempt_recovery(self) -> bool:
        """
        Transition OPEN -> HALF_OPEN if the open timeout has elapsed.

        Returns:
            True if the circuit moved to HALF_OPEN
        """
        with self._lock:
            if not self._recovery_due():
                return False
            self._transition(CircuitState.HALF_OPEN, 0, 0)

        logger.info("circuit_half_open", circuit=self.name)
        return True

    def record_success(self) -> None:
        """Record a successful call."""
        closed = False
        with self._lock:
            self._state.success_count += 1
            self._state.metrics.total_requests += 1
            self._state.metrics.success_count += 1
            self._window.append(True)

            if (
                self._state.current_state == CircuitState.HALF_OPEN
                and self._state.success_count >= self.config.success_threshold
            ):
                self._transition(CircuitState.CLOSED, 0, 0)
                closed = True

        if closed:
            logger.info("circuit_closed", circuit=self.name)

    def is_failure_with_config(
        self,
        error: BaseException,
        failure_status_range: Optional[range],
        consider_network_errors_as_failures: bool,
        default_classification: bool,
    ) -> bool:
        """Classify an error using explicit rules plus this breaker's ignore flags."""
        return is_failure(
            error,
            failure_status_range,
            consider_network_errors_as_failures,
            default_classification,
            ignore_auth_errors=self.config.ignore_auth_errors,
            ignore_rate_limit_errors=self.config.ignore_rate_limit_errors,
            ignore_validation_errors=self.config.ignore_validation_errors,
        )

    def is_failure(self, error: BaseException) -> bool:
        """Classify with 5xx and network errors counted as failures."""
        return self.is_failure_with_config(
            error,
            DEFAULT_FAILURE_STATUS_RANGE,
            consider_network_errors_as_failures=True,
            default_classification=True,
        )

    def record_failure_with_config(
        self,
        error: BaseException,
        failure_status_range: Optional[range],
        consider_network_errors_as_failures: bool,
        default_classification: bool,
    ) -> None:
        """Record a failed call; errors not classified as failures are ignored."""
        if not self.is_failure_with_config(
            error, failure_status_range, consider_network_errors_as_failures, default_classification
        ):
            return

        event = None
        with self._lock:
            self._state.failure_count += 1
            self._state.metrics.total_requests += 1
            self._state.metrics.failure_count += 1
            self._state.last_failure_time = self._clock()
            self._window.append(False)
            failures = self._state.failure_count

            if self._state.current_state == CircuitState.CLOSED:
                if self._state.failure_count >= self.config.failure_threshold:
                    self._transition(CircuitState.OPEN, 0, 0)
                    event = "circuit_opened"

            elif self._state.current_state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, 1, 0)
                event = "circuit_reopened"

        if event:
            logger.warning(event, circuit=self.name, failures=failures, error=str(error))

    def record_failure(self, error: BaseException) -> None:
        """Record a failed call, counting 5xx and network errors as failures."""
        self.record_failure_with_config(
            error,
            DEFAULT_FAILURE_STATUS_RANGE,
            consider_network_errors_as_failures=True,
            default_classification=True,
        )

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute an async function through the circuit breaker.

        Args:
            func: Async function to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Result from func

        Raises:
            CircuitOpenError: If circuit is open
        """
        self.ensure_can_execute()

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result

    def ensure_can_execute(self) -> None:
        """Attempt recovery if due, then raise CircuitOpenError if still open."""
        if self.can_execute():
            return
        self.attempt_recovery()
        with self._lock:
            if self._state.current_state != CircuitState.OPEN:
                return
            remaining = self._get_remaining_timeout()
        raise CircuitOpenError(f"Circuit '{self.name}' is open", remaining_timeout=remaining)

    def recent_failure_rate(self) -> float:
        """Failure ratio over the last ``window_size`` recorded outcomes."""
        with self._lock:
            if not self._window:
                return 0.0
            return self._window.count(False) / len(self._window)

    def metrics(self) -> CircuitBreakerMetrics:
        """Get a snapshot of the breaker's metrics."""
        with self._lock:
            return replace(self._state.metrics)

    def export_prometheus(self) -> str:
        """Prometheus text export with the real state encoded as 0/1/2."""
        with self._lock:
            metrics = replace(self._state.metrics)
            state = self._state.current_state
        return (
            f"circuit_breaker_requests_total {metrics.total_requests}\n"
            f"circuit_breaker_failures_total {metrics.failure_count}\n"
            f"circuit_breaker_state {STATE_GAUGE_VALUES[state]}\n"
            f"circuit_breaker_success_rate {metrics.success_rate}"
        )

    def reset(self) -> None:
        """Manually reset the circuit breaker to closed state, clearing metrics."""
        with self._lock:
            self._state = CircuitBreakerState(current_state=CircuitState.CLOSED, last_state_change=self._clock())
            self._window.clear()
        logger.info("circuit_reset", circuit=self.name)

    def get_stats(self) -> Dict[str, Any]:
        """Get circuit breaker statistics."""
        with self._lock:
            metrics = replace(self._state.metrics)
            stats = {
                "name": self.name,
                "state": self._state.current_state.value,
                "failure_count": self._state.failure_count,
                "success_count": self._state.success_count,
                "remaining_timeout": self._get_remaining_timeout(),
            }
        stats["metrics"] = metrics.to_dict()
        stats["recent_failure_rate"] = self.recent_failure_rate()
        return stats


class CircuitBreakerRegistry:
    """Registry for managing multiple circuit breakers."""

    def __init__(self, default_config: Optional[CircuitBreakerConfig] = None):
        self.default_config = default_config
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self, name: str, config: Optional[CircuitBreakerConfig] = None
    ) -> CircuitBreaker:
        """Get existing circuit breaker or create new one."""
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(name, config or self.default_config)
            return self._breakers[name]

    def get(self, name: str) -> Optional[CircuitBreaker]:
        """Get circuit breaker by name."""
        with self._lock:
            return self._breakers.get(name)

    def all(self) -> Dict[str, CircuitBreaker]:
        """Get all circuit breakers."""
        with self._lock:
            return dict(self._breakers)

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for breaker in self.all().values():
            breaker.reset()

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        """Get stats for all circuit breakers."""
        return {name: breaker.get_stats() for name, breaker in self.all().items()}
