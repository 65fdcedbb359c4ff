"""Retry strategies with exponential, linear or fixed backoff and jitter."""

import asyncio
import random
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from .circuit import CircuitBreaker
from .classifier import ErrorKind, classify, extract_retry_after, is_retryable
from .errors import CircuitOpenError, ConfigurationError, NoAvailableEndpointsError
from .failover import FailoverContext, FailoverManager, SleepFunc

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Jittered delays never drop below this many seconds.
MIN_DELAY = 0.001

DEFAULT_JITTER_MIN_FACTOR = 0.9
DEFAULT_JITTER_MAX_FACTOR = 1.1


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3  # Total attempts, including the first
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True

    def validate(self) -> None:
        """Raise ConfigurationError naming the first out-of-range field."""
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts", "must be >= 1")
        if self.base_delay <= 0:
            raise ConfigurationError("base_delay", "must be > 0")
        if self.max_delay < self.base_delay:
            raise ConfigurationError("max_delay", "must be >= base_delay")
        if self.backoff_multiplier < 1.0:
            raise ConfigurationError("backoff_multiplier", "must be >= 1.0")

    def is_valid(self) -> bool:
        try:
            self.validate()
        except ConfigurationError:
            return False
        return True

    def with_max_attempts(self, max_attempts: int) -> "RetryConfig":
        return replace(self, max_attempts=max_attempts)

    def with_base_delay(self, base_delay: float) -> "RetryConfig":
        return replace(self, base_delay=base_delay)

    def with_max_delay(self, max_delay: float) -> "RetryConfig":
        return replace(self, max_delay=max_delay)

    def with_backoff_multiplier(self, multiplier: float) -> "RetryConfig":
        return replace(self, backoff_multiplier=multiplier)

    def with_jitter(self, enabled: bool) -> "RetryConfig":
        return replace(self, jitter_enabled=enabled)


class RetryStrategyType(Enum):
    """How the delay grows between attempts."""

    EXPONENTIAL_BACKOFF = "exponential"
    LINEAR_BACKOFF = "linear"
    FIXED_DELAY = "fixed"


@dataclass(frozen=True)
class RetryStrategy:
    """A backoff curve paired with the retry configuration it reads."""

    strategy_type: RetryStrategyType = RetryStrategyType.EXPONENTIAL_BACKOFF
    config: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        self.config.validate()

    @classmethod
    def exponential_backoff(cls, config: Optional[RetryConfig] = None) -> "RetryStrategy":
        return cls(RetryStrategyType.EXPONENTIAL_BACKOFF, config or RetryConfig())

    @classmethod
    def linear_backoff(cls, config: Optional[RetryConfig] = None) -> "RetryStrategy":
        return cls(RetryStrategyType.LINEAR_BACKOFF, config or RetryConfig())

    @classmethod
    def fixed_delay(cls, config: Optional[RetryConfig] = None) -> "RetryStrategy":
        return cls(RetryStrategyType.FIXED_DELAY, config or RetryConfig())

    def with_config(self, config: RetryConfig) -> "RetryStrategy":
        return replace(self, config=config)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Retry only retryable errors, and only while attempts remain."""
        if attempt >= self.config.max_attempts:
            return False
        return is_retryable(error)

    def _base_delay_for(self, attempt: int) -> float:
        config = self.config
        if self.strategy_type is RetryStrategyType.EXPONENTIAL_BACKOFF:
            try:
                delay = config.base_delay * config.backoff_multiplier ** (attempt - 1)
            except OverflowError:
                return config.max_delay
        elif self.strategy_type is RetryStrategyType.LINEAR_BACKOFF:
            delay = config.base_delay * attempt
        else:
            delay = config.base_delay
        return min(delay, config.max_delay)

    def calculate_delay_with_jitter_config(
        self,
        attempt: int,
        jitter_min_factor: Optional[float],
        jitter_max_factor: Optional[float],
    ) -> float:
        """
        Calculate the delay before retrying after ``attempt`` failed.

        Args:
            attempt: 1-indexed number of the attempt that just failed
            jitter_min_factor: Lower bound of the random multiplier
            jitter_max_factor: Upper bound of the random multiplier

        Returns:
            Delay in seconds, never above ``max_delay``. Jitter applies only
            when enabled in the config and both factors are given.
        """
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")

        delay = self._base_delay_for(attempt)

        if not self.config.jitter_enabled or jitter_min_factor is None or jitter_max_factor is None:
            return delay

        jittered = delay * random.uniform(jitter_min_factor, jitter_max_factor)
        return min(max(jittered, MIN_DELAY), self.config.max_delay)

    def calculate_delay(self, attempt: int) -> float:
        """Delay for ``attempt`` with the default +/-10% jitter when enabled."""
        return self.calculate_delay_with_jitter_config(
            attempt, DEFAULT_JITTER_MIN_FACTOR, DEFAULT_JITTER_MAX_FACTOR
        )

    def calculate_delay_for_error(self, error: BaseException, attempt: int) -> float:
        """
        Delay for ``attempt``, raised to the error's retry-after hint.

        A provider hint wins over the strategy even when it exceeds
        ``max_delay``.
        """
        delay = self.calculate_delay(attempt)
        retry_after = extract_retry_after(error)
        if retry_after is not None:
            return max(delay, retry_after)
        return delay


class RetryMetrics:
    """
    Counters describing retry activity.

    Pass one instance to every executor that should report into it; it is
    safe to share between concurrent executions.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.total_attempts = 0
        self.successful_retries = 0
        self.failed_attempts = 0
        self.total_delay = 0.0
        self.error_counts: Dict[str, int] = {}

    def record_attempt(self, delay: float) -> None:
        """Record one invocation and the delay that preceded it."""
        with self._lock:
            self.total_attempts += 1
            self.total_delay += delay

    def record_success(self, final_attempt: int) -> None:
        if final_attempt > 1:
            with self._lock:
                self.successful_retries += 1

    def record_failure(self, error: BaseException) -> None:
        kind = classify(error).value
        with self._lock:
            self.failed_attempts += 1
            self.error_counts[kind] = self.error_counts.get(kind, 0) + 1

    @property
    def average_delay(self) -> float:
        with self._lock:
            if self.total_attempts == 0:
                return 0.0
            return self.total_delay / self.total_attempts

    def reset(self) -> None:
        with self._lock:
            self.total_attempts = 0
            self.successful_retries = 0
            self.failed_attempts = 0
            self.total_delay = 0.0
            self.error_counts = {}

    def to_dict(self) -> Dict[str, Any]:
        average_delay = self.average_delay
        with self._lock:
            return {
                "total_attempts": self.total_attempts,
                "successful_retries": self.successful_retries,
                "failed_attempts": self.failed_attempts,
                "total_delay": self.total_delay,
                "average_delay": average_delay,
                "error_counts": dict(self.error_counts),
            }


class RetryExecutor:
    """
    Runs an async operation until it succeeds or retrying stops paying off.

    Each attempt is gated by the optional circuit breaker, which also hears
    about every outcome. Exhausted and non-retryable failures re-raise the
    operation's own exception; a refused attempt raises CircuitOpenError.
    """

    def __init__(
        self,
        strategy: Optional[RetryStrategy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        failover: Optional[FailoverManager] = None,
        metrics: Optional[RetryMetrics] = None,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.strategy = strategy or RetryStrategy.exponential_backoff()
        self.circuit_breaker = circuit_breaker
        self.failover = failover
        self.metrics = metrics
        self.on_retry = on_retry
        self.sleep = sleep
        self.current_attempt = 0

    def has_exceeded_max_attempts(self) -> bool:
        return self.current_attempt >= self.strategy.config.max_attempts

    def _delay_for(self, error: BaseException, attempt: int) -> float:
        if classify(error) is ErrorKind.RATE_LIMIT:
            return self.strategy.calculate_delay_for_error(error, attempt)
        return self.strategy.calculate_delay(attempt)

    def _gate(self, last_error: Optional[BaseException]) -> None:
        breaker = self.circuit_breaker
        if breaker is None:
            return
        try:
            breaker.ensure_can_execute()
        except CircuitOpenError as e:
            if last_error is None:
                raise
            raise e from last_error

    async def _run(self, attempt_once: Callable[[int], Awaitable[T]]) -> T:
        attempt = 1
        delay = 0.0
        error: Optional[BaseException] = None

        while True:
            self.current_attempt = attempt
            self._gate(error)
            if self.metrics is not None:
                self.metrics.record_attempt(delay)

            try:
                result = await attempt_once(attempt)
            except NoAvailableEndpointsError:
                raise
            except Exception as e:
                error = e
            else:
                if self.circuit_breaker is not None:
                    self.circuit_breaker.record_success()
                if self.metrics is not None:
                    self.metrics.record_success(attempt)
                return result

            if self.circuit_breaker is not None:
                self.circuit_breaker.record_failure(error)
            if self.metrics is not None:
                self.metrics.record_failure(error)

            if not self.strategy.should_retry(error, attempt):
                logger.info(
                    "retry_giving_up",
                    attempts=attempt,
                    retryable=is_retryable(error),
                    error=str(error),
                )
                raise error

            delay = self._delay_for(error, attempt)

            # Give up now when the breaker stays open past the delay.
            breaker = self.circuit_breaker
            if breaker is not None and breaker.is_open:
                remaining = breaker.remaining_timeout()
                if remaining > delay:
                    logger.info(
                        "retry_giving_up",
                        attempts=attempt,
                        reason="circuit_open",
                        remaining_timeout=remaining,
                        error=str(error),
                    )
                    raise CircuitOpenError(
                        f"Circuit '{breaker.name}' is open", remaining_timeout=remaining
                    ) from error

            if self.on_retry:
                self.on_retry(attempt, error, delay)

            logger.warning(
                "retry_scheduled",
                attempt=attempt,
                delay=delay,
                error_kind=classify(error).value,
                error=str(error),
            )
            await self.sleep(delay)
            attempt += 1

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Execute operation with retry logic.

        Args:
            operation: Zero-argument async callable

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: If the attached breaker refuses an attempt
            Exception: The last error raised by the operation
        """
        return await self._run(lambda attempt: operation())

    async def execute_with_failover(self, operation: Callable[[FailoverContext], Awaitable[T]]) -> T:
        """
        Execute operation with retries spread across failover endpoints.

        Every attempt gets an endpoint not yet tried in this call; the
        operation receives the current FailoverContext.

        Raises:
            NoAvailableEndpointsError: If no untried, usable endpoint remains
        """
        if self.failover is None:
            raise ValueError("execute_with_failover requires a FailoverManager")

        manager = self.failover
        context: Optional[FailoverContext] = None
        last_error: Optional[BaseException] = None

        async def attempt_once(attempt: int) -> T:
            nonlocal context, last_error
            endpoint = manager.select_endpoint(context)
            if endpoint is None:
                tried = context.all_tried() if context is not None else []
                raise NoAvailableEndpointsError(
                    f"No available endpoints after {attempt - 1} attempts",
                    tried_endpoints=tried,
                    last_error=last_error,
                ) from last_error

            context = FailoverContext(endpoint) if context is None else context.next_attempt(endpoint)
            try:
                return await operation(context)
            except Exception as e:
                last_error = e
                raise

        return await self._run(attempt_once)


def with_retry(
    strategy: Optional[RetryStrategy] = None,
    circuit_breaker: Optional[CircuitBreaker] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
):
    """
    Decorator for adding retry logic to async functions.

    Args:
        strategy: Retry strategy (exponential backoff by default)
        circuit_breaker: Breaker gating and observing every attempt
        on_retry: Callback called before each retry (attempt, exception, delay)
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            executor = RetryExecutor(strategy, circuit_breaker=circuit_breaker, on_retry=on_retry)
            return await executor.execute(lambda: func(*args, **kwargs))

        return wrapper

    return decorator
