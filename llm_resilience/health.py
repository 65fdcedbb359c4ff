"""HTTP health probes feeding endpoint health into failover."""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

import httpx
import structlog

from .errors import ConfigurationError
from .failover import EndpointHealth

logger = structlog.get_logger(__name__)


class HealthCheckStrategy(Enum):
    """How an endpoint is probed."""

    PING = "ping"  # HEAD request
    LIGHTWEIGHT_API = "lightweight_api"  # OPTIONS request


@dataclass(frozen=True)
class HealthCheckConfig:
    """Configuration for health checks."""

    timeout: float = 5.0
    degraded_threshold: float = 1.0  # Slower healthy responses count as degraded
    unhealthy_threshold: float = 3.0  # Slower responses count as unhealthy
    strategy: HealthCheckStrategy = HealthCheckStrategy.PING

    def validate(self) -> None:
        if self.timeout <= 0:
            raise ConfigurationError("timeout", "must be > 0")
        if self.degraded_threshold <= 0:
            raise ConfigurationError("degraded_threshold", "must be > 0")
        if self.unhealthy_threshold < self.degraded_threshold:
            raise ConfigurationError("unhealthy_threshold", "must be >= degraded_threshold")


@dataclass
class HealthCheckResult:
    """Outcome of probing one endpoint."""

    url: str
    health: EndpointHealth
    response_time: float
    status_code: Optional[int] = None
    error: Optional[str] = None
    checked_at: float = field(default_factory=time.monotonic)

    @property
    def is_healthy(self) -> bool:
        return self.health == EndpointHealth.HEALTHY


class HealthChecker:
    """
    Probes endpoints and reports their health.

    Example:
        async with HealthChecker(HealthCheckConfig(timeout=2.0)) as checker:
            results = await checker.check_endpoints(["https://api.openai.com/v1"])
            manager.apply_health_results(results)
    """

    def __init__(
        self,
        config: Optional[HealthCheckConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock=time.monotonic,
    ):
        self.config = config or HealthCheckConfig()
        self.config.validate()
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)
        return self._client

    def _health_for_status(self, status_code: int) -> EndpointHealth:
        ok = 200 <= status_code < 300
        if self.config.strategy is HealthCheckStrategy.PING:
            if ok or status_code == 405:
                return EndpointHealth.HEALTHY
            if status_code >= 500:
                return EndpointHealth.UNHEALTHY
            return EndpointHealth.DEGRADED

        # Reachable API roots commonly answer OPTIONS with 404 or 405
        if ok or status_code in (404, 405):
            return EndpointHealth.HEALTHY
        if status_code >= 500:
            return EndpointHealth.UNHEALTHY
        return EndpointHealth.DEGRADED

    def _apply_latency(self, health: EndpointHealth, response_time: float) -> EndpointHealth:
        if health is EndpointHealth.UNHEALTHY:
            return health
        if response_time >= self.config.unhealthy_threshold:
            return EndpointHealth.UNHEALTHY
        if response_time >= self.config.degraded_threshold:
            return EndpointHealth.DEGRADED
        return health

    async def check_endpoint(self, url: str) -> HealthCheckResult:
        """Probe a single endpoint. Never raises for network failures."""
        method = "HEAD" if self.config.strategy is HealthCheckStrategy.PING else "OPTIONS"
        started = self._clock()

        try:
            response = await self.client.request(method, url)
        except httpx.HTTPError as e:
            elapsed = self._clock() - started
            logger.warning("health_check_failed", url=url, error=str(e), response_time=elapsed)
            return HealthCheckResult(
                url=url,
                health=EndpointHealth.UNHEALTHY,
                response_time=elapsed,
                error=str(e) or type(e).__name__,
            )

        elapsed = self._clock() - started
        health = self._apply_latency(self._health_for_status(response.status_code), elapsed)
        if health is not EndpointHealth.HEALTHY:
            logger.info(
                "health_check_degraded",
                url=url,
                status_code=response.status_code,
                health=health.value,
                response_time=elapsed,
            )

        return HealthCheckResult(
            url=url,
            health=health,
            response_time=elapsed,
            status_code=response.status_code,
        )

    async def check_endpoints(self, urls: Iterable[str]) -> List[HealthCheckResult]:
        """Probe endpoints concurrently, preserving input order."""
        return list(await asyncio.gather(*(self.check_endpoint(url) for url in urls)))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HealthChecker":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
