"""Client-side token bucket rate limiting."""

import asyncio
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

import structlog

from .errors import ConfigurationError
from .failover import SleepFunc

logger = structlog.get_logger(__name__)

# How often wait_for_tokens re-checks the bucket, in seconds.
CHECK_INTERVAL = 0.01


@dataclass(frozen=True)
class RateLimiterConfig:
    """Token bucket parameters."""

    tokens_per_second: float = 10.0  # Refill rate
    bucket_capacity: int = 100  # Burst size
    initial_tokens: int = 50

    def validate(self) -> None:
        """Raise ConfigurationError naming the first out-of-range field."""
        if self.tokens_per_second <= 0:
            raise ConfigurationError("tokens_per_second", "must be > 0")
        if self.bucket_capacity <= 0:
            raise ConfigurationError("bucket_capacity", "must be > 0")
        if self.initial_tokens < 0 or self.initial_tokens > self.bucket_capacity:
            raise ConfigurationError("initial_tokens", "must be between 0 and bucket_capacity")

    def is_valid(self) -> bool:
        try:
            self.validate()
        except ConfigurationError:
            return False
        return True

    def with_tokens_per_second(self, rate: float) -> "RateLimiterConfig":
        return replace(self, tokens_per_second=rate)

    def with_bucket_capacity(self, capacity: int) -> "RateLimiterConfig":
        return replace(self, bucket_capacity=capacity)

    def with_initial_tokens(self, tokens: int) -> "RateLimiterConfig":
        return replace(self, initial_tokens=tokens)


@dataclass
class RateLimiterMetrics:
    """Counters accumulated by a rate limiter."""

    requests_allowed: int = 0
    requests_blocked: int = 0
    total_tokens_consumed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests_allowed": self.requests_allowed,
            "requests_blocked": self.requests_blocked,
            "total_tokens_consumed": self.total_tokens_consumed,
        }


class RateLimiter:
    """
    Token bucket limiting how fast requests leave the client.

    Tokens refill continuously at ``tokens_per_second`` up to
    ``bucket_capacity``. The bucket is refilled lazily whenever it is read,
    so no background task is needed.

    Example:
        limiter = RateLimiter(RateLimiterConfig(tokens_per_second=5, bucket_capacity=10))
        if not await limiter.wait_for_tokens(1, timeout=2.0):
            raise RateLimitExceededError("no capacity")
    """

    def __init__(
        self,
        config: Optional[RateLimiterConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.config = config or RateLimiterConfig()
        self.config.validate()
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.config.initial_tokens)
        self._last_refill = clock()
        self._metrics = RateLimiterMetrics()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(
            float(self.config.bucket_capacity),
            self._tokens + elapsed * self.config.tokens_per_second,
        )
        self._last_refill = now

    def refill(self) -> None:
        """Add the tokens accrued since the last refill."""
        with self._lock:
            self._refill()

    def available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def can_make_request(self, tokens: int = 1) -> bool:
        """Whether ``tokens`` could be consumed now, without consuming them."""
        with self._lock:
            self._refill()
            return self._tokens >= tokens

    def _take(self, tokens: int) -> bool:
        # Caller holds the lock.
        self._refill()
        if self._tokens < tokens:
            return False
        self._tokens -= tokens
        self._metrics.requests_allowed += 1
        self._metrics.total_tokens_consumed += tokens
        return True

    def try_consume(self, tokens: int = 1) -> bool:
        """
        Consume ``tokens`` if the bucket holds enough.

        Returns:
            False, leaving the bucket untouched, when it does not
        """
        with self._lock:
            if self._take(tokens):
                return True
            self._metrics.requests_blocked += 1
            return False

    def time_until_tokens_available(self, tokens: int = 1) -> float:
        """Seconds until ``tokens`` will be in the bucket; 0 if they already are."""
        with self._lock:
            self._refill()
            missing = tokens - self._tokens
        if missing <= 0:
            return 0.0
        return missing / self.config.tokens_per_second

    async def wait_for_tokens(self, tokens: int = 1, timeout: float = 60.0) -> bool:
        """
        Wait until ``tokens`` can be consumed, then consume them.

        Returns:
            False if ``timeout`` seconds pass first
        """
        if tokens > self.config.bucket_capacity:
            raise ConfigurationError("tokens", f"must be <= bucket_capacity ({self.config.bucket_capacity})")

        deadline = self._clock() + timeout
        while True:
            with self._lock:
                if self._take(tokens):
                    return True
                now = self._clock()
                if now >= deadline:
                    self._metrics.requests_blocked += 1
                    timed_out = True
                else:
                    timed_out = False
                    missing = tokens - self._tokens

            if timed_out:
                logger.warning("rate_limit_wait_timeout", tokens=tokens, timeout=timeout)
                return False

            wait = min(max(missing / self.config.tokens_per_second, CHECK_INTERVAL), deadline - now)
            logger.debug("rate_limit_waiting", tokens=tokens, wait=wait)
            await self._sleep(wait)

    def metrics(self) -> RateLimiterMetrics:
        """Get a snapshot of the limiter's metrics."""
        with self._lock:
            return replace(self._metrics)
