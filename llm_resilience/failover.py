"""Endpoint failover: health-aware selection across several base URLs."""

import asyncio
import random
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol, Tuple, TypeVar

import structlog

from .errors import ConfigurationError, NoAvailableEndpointsError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SleepFunc(Protocol):
    """Async sleep callable, ``asyncio.sleep`` unless injected."""

    async def __call__(self, seconds: float) -> None: ...


class EndpointHealth(Enum):
    """Endpoint health status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"  # Usable, but not preferred
    UNHEALTHY = "unhealthy"  # Never selected
    UNKNOWN = "unknown"  # Not checked yet


class FailoverStrategy(Enum):
    """Policy for picking the next endpoint."""

    ROUND_ROBIN = "round_robin"
    PRIORITY = "priority"
    RANDOM = "random"
    STICKY = "sticky"


@dataclass
class FailoverEndpoint:
    """An endpoint requests can be routed to."""

    id: str
    url: str
    priority: int = 0  # Higher is preferred
    timeout: float = 30.0
    health: EndpointHealth = EndpointHealth.UNKNOWN
    last_checked: float = field(default_factory=time.monotonic)

    def is_available(self) -> bool:
        """Anything not known to be unhealthy may be selected."""
        return self.health != EndpointHealth.UNHEALTHY

    def is_preferred(self) -> bool:
        return self.health == EndpointHealth.HEALTHY

    def update_health(self, health: EndpointHealth) -> None:
        self.health = health
        self.last_checked = time.monotonic()

    def time_since_check(self) -> float:
        return time.monotonic() - self.last_checked


@dataclass(frozen=True)
class FailoverConfig:
    """Configuration for failover behavior."""

    strategy: FailoverStrategy = FailoverStrategy.PRIORITY
    max_retries: int = 3  # Attempts made by FailoverManager.execute
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    health_check_interval: float = 30.0
    failover_timeout: float = 10.0

    def validate(self) -> None:
        """Raise ConfigurationError naming the first out-of-range field."""
        if self.max_retries <= 0:
            raise ConfigurationError("max_retries", "must be > 0")
        if self.retry_delay <= 0:
            raise ConfigurationError("retry_delay", "must be > 0")
        if self.max_retry_delay < self.retry_delay:
            raise ConfigurationError("max_retry_delay", "must be >= retry_delay")
        if self.health_check_interval <= 0:
            raise ConfigurationError("health_check_interval", "must be > 0")
        if self.failover_timeout <= 0:
            raise ConfigurationError("failover_timeout", "must be > 0")

    def is_valid(self) -> bool:
        try:
            self.validate()
        except ConfigurationError:
            return False
        return True

    def with_strategy(self, strategy: FailoverStrategy) -> "FailoverConfig":
        return replace(self, strategy=strategy)

    def with_max_retries(self, max_retries: int) -> "FailoverConfig":
        return replace(self, max_retries=max_retries)

    def with_retry_delay(self, delay: float) -> "FailoverConfig":
        return replace(self, retry_delay=delay)

    def with_max_retry_delay(self, delay: float) -> "FailoverConfig":
        return replace(self, max_retry_delay=delay)


@dataclass(frozen=True)
class FailoverContext:
    """
    One retry sequence's view of failover.

    Contexts are never mutated: ``next_attempt`` returns a new one, so
    concurrent sequences sharing a manager cannot see each other's history.
    """

    endpoint: FailoverEndpoint
    attempt: int = 1
    started_at: float = field(default_factory=time.monotonic)
    tried_endpoints: Tuple[str, ...] = ()  # Endpoints before the current one

    def next_attempt(self, endpoint: FailoverEndpoint) -> "FailoverContext":
        return FailoverContext(
            endpoint=endpoint,
            attempt=self.attempt + 1,
            tried_endpoints=self.tried_endpoints + (self.endpoint.id,),
        )

    def was_endpoint_tried(self, endpoint_id: str) -> bool:
        return endpoint_id == self.endpoint.id or endpoint_id in self.tried_endpoints

    def all_tried(self) -> List[str]:
        return list(self.tried_endpoints) + [self.endpoint.id]

    def is_exhausted(self, max_retries: int) -> bool:
        return self.attempt > max_retries

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


class FailoverManager:
    """
    Endpoint selection and health bookkeeping.

    Example:
        manager = FailoverManager(
            FailoverConfig(strategy=FailoverStrategy.PRIORITY),
            [
                FailoverEndpoint("primary", "https://api.anthropic.com", priority=100),
                FailoverEndpoint("backup", "https://backup.example.com", priority=50),
            ],
        )
        endpoint = manager.select_endpoint()
    """

    def __init__(
        self,
        config: Optional[FailoverConfig] = None,
        endpoints: Optional[Iterable[FailoverEndpoint]] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.config = config or FailoverConfig()
        self.sleep = sleep
        self.config.validate()

        self._endpoints: List[FailoverEndpoint] = list(endpoints or [])
        ids = [e.id for e in self._endpoints]
        if len(ids) != len(set(ids)):
            raise ConfigurationError("endpoints", "must have unique ids")

        self._round_robin_index = 0
        self._lock = threading.Lock()

    @property
    def endpoints(self) -> List[FailoverEndpoint]:
        """Snapshot of all endpoints."""
        with self._lock:
            return [replace(e) for e in self._endpoints]

    def add_endpoint(self, endpoint: FailoverEndpoint) -> None:
        with self._lock:
            if any(e.id == endpoint.id for e in self._endpoints):
                raise ConfigurationError("endpoints", f"already contain id '{endpoint.id}'")
            self._endpoints.append(endpoint)

    def update_endpoint_health(self, endpoint_id: str, health: EndpointHealth) -> bool:
        """
        Set an endpoint's health.

        Returns:
            False if no endpoint has that id
        """
        with self._lock:
            for endpoint in self._endpoints:
                if endpoint.id == endpoint_id:
                    endpoint.update_health(health)
                    return True
        return False

    def apply_health_results(self, results: Iterable[Any]) -> int:
        """
        Update health from health check results (objects with ``url`` and
        ``health``). Returns the number of endpoints updated.
        """
        updated = 0
        by_url = {result.url.rstrip("/"): result.health for result in results}
        with self._lock:
            for endpoint in self._endpoints:
                health = by_url.get(endpoint.url.rstrip("/"))
                if health is not None:
                    endpoint.update_health(health)
                    updated += 1
        return updated

    def select_endpoint(self, context: Optional[FailoverContext] = None) -> Optional[FailoverEndpoint]:
        """
        Pick the next endpoint according to the configured strategy.

        Unhealthy endpoints and endpoints already tried in ``context`` are
        skipped. Returns None when nothing qualifies.
        """
        with self._lock:
            candidates = [
                e for e in self._endpoints
                if e.is_available() and (context is None or not context.was_endpoint_tried(e.id))
            ]
            if not candidates:
                selected = None
            elif self.config.strategy is FailoverStrategy.ROUND_ROBIN:
                selected = candidates[self._round_robin_index % len(candidates)]
                self._round_robin_index = (self._round_robin_index + 1) % len(candidates)
            elif self.config.strategy is FailoverStrategy.PRIORITY:
                # max() keeps the first of equal priorities
                selected = max(candidates, key=lambda e: e.priority)
            elif self.config.strategy is FailoverStrategy.RANDOM:
                selected = random.choice(candidates)
            else:
                selected = next((e for e in candidates if e.is_preferred()), candidates[0])

            snapshot = replace(selected) if selected is not None else None

        if snapshot is None:
            logger.warning(
                "failover_no_endpoints",
                tried=context.all_tried() if context else [],
                strategy=self.config.strategy.value,
            )
        else:
            logger.debug("failover_endpoint_selected", endpoint=snapshot.id, strategy=self.config.strategy.value)
        return snapshot

    def healthy_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._endpoints if e.is_preferred())

    def available_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._endpoints if e.is_available())

    def has_available_endpoints(self) -> bool:
        return self.available_count() > 0

    def calculate_retry_delay(self, attempt: int) -> float:
        """Exponential delay ``retry_delay * 2**(attempt-1)``, capped at ``max_retry_delay``."""
        try:
            delay = self.config.retry_delay * 2.0 ** max(attempt - 1, 0)
        except OverflowError:
            return self.config.max_retry_delay
        return min(delay, self.config.max_retry_delay)

    async def execute(self, operation: Callable[[FailoverContext], Awaitable[T]]) -> T:
        """
        Run operation against successive endpoints until one succeeds.

        Makes at most ``max_retries`` attempts, each on an endpoint not yet
        tried in this call, sleeping ``calculate_retry_delay`` in between.

        Raises:
            NoAvailableEndpointsError: If endpoints run out first
            Exception: The last operation error once attempts are used up
        """
        context: Optional[FailoverContext] = None
        last_error: Optional[BaseException] = None
        attempt = 1

        while True:
            endpoint = self.select_endpoint(context)
            if endpoint is None:
                raise NoAvailableEndpointsError(
                    f"No available endpoints after {attempt - 1} attempts",
                    tried_endpoints=context.all_tried() if context else [],
                    last_error=last_error,
                ) from last_error

            context = FailoverContext(endpoint) if context is None else context.next_attempt(endpoint)

            try:
                return await operation(context)
            except Exception as e:
                if attempt >= self.config.max_retries:
                    raise
                last_error = e

            delay = self.calculate_retry_delay(attempt)
            logger.warning(
                "failover_retry_scheduled",
                endpoint=endpoint.id,
                attempt=attempt,
                delay=delay,
                error=str(last_error),
            )
            await self.sleep(delay)
            attempt += 1
