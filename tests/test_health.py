"""Tests for endpoint health checks."""

import httpx
import pytest

from llm_resilience.errors import ConfigurationError
from llm_resilience.failover import EndpointHealth, FailoverEndpoint, FailoverManager
from llm_resilience.health import HealthChecker, HealthCheckConfig, HealthCheckStrategy


def _checker(handler, clock, **config):
    return HealthChecker(
        HealthCheckConfig(**config),
        transport=httpx.MockTransport(handler),
        clock=clock,
    )


def _status(code, delay=0.0, clock=None, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request.method)
        if clock is not None:
            clock.advance(delay)
        return httpx.Response(code)

    return handler


class TestHealthCheckConfig:
    """Tests for health check configuration."""

    def test_defaults_valid(self):
        HealthCheckConfig().validate()

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"timeout": 0.0}, "timeout"),
            ({"degraded_threshold": 0.0}, "degraded_threshold"),
            ({"degraded_threshold": 2.0, "unhealthy_threshold": 1.0}, "unhealthy_threshold"),
        ],
    )
    def test_invalid(self, kwargs, field):
        with pytest.raises(ConfigurationError) as exc_info:
            HealthCheckConfig(**kwargs).validate()
        assert exc_info.value.field == field


class TestPing:
    """Tests for HEAD health checks."""

    @pytest.mark.asyncio
    async def test_ok_is_healthy(self, clock):
        seen = []
        async with _checker(_status(200, seen=seen), clock) as checker:
            result = await checker.check_endpoint("https://api.example.com")

        assert seen == ["HEAD"]
        assert result.health is EndpointHealth.HEALTHY
        assert result.is_healthy
        assert result.status_code == 200

    @pytest.mark.asyncio
    async def test_method_not_allowed_is_healthy(self, clock):
        async with _checker(_status(405), clock) as checker:
            result = await checker.check_endpoint("https://api.example.com")
        assert result.health is EndpointHealth.HEALTHY

    @pytest.mark.asyncio
    async def test_server_error_is_unhealthy(self, clock):
        async with _checker(_status(503), clock) as checker:
            result = await checker.check_endpoint("https://api.example.com")
        assert result.health is EndpointHealth.UNHEALTHY

    @pytest.mark.asyncio
    async def test_client_error_is_degraded(self, clock):
        async with _checker(_status(404), clock) as checker:
            result = await checker.check_endpoint("https://api.example.com")
        assert result.health is EndpointHealth.DEGRADED

    @pytest.mark.asyncio
    async def test_transport_error_is_unhealthy(self, clock):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _checker(handler, clock) as checker:
            result = await checker.check_endpoint("https://down.example.com")

        assert result.health is EndpointHealth.UNHEALTHY
        assert result.status_code is None
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_slow_response_degraded(self, clock):
        async with _checker(_status(200, 1.5, clock), clock, degraded_threshold=1.0, unhealthy_threshold=3.0) as checker:
            result = await checker.check_endpoint("https://slow.example.com")

        assert result.health is EndpointHealth.DEGRADED
        assert result.response_time == pytest.approx(1.5)

    @pytest.mark.asyncio
    async def test_very_slow_response_unhealthy(self, clock):
        async with _checker(_status(200, 4.0, clock), clock, degraded_threshold=1.0, unhealthy_threshold=3.0) as checker:
            result = await checker.check_endpoint("https://slow.example.com")
        assert result.health is EndpointHealth.UNHEALTHY


class TestLightweight:
    """Tests for OPTIONS health checks."""

    @pytest.mark.asyncio
    async def test_not_found_is_healthy(self, clock):
        seen = []
        async with _checker(_status(404, seen=seen), clock, strategy=HealthCheckStrategy.LIGHTWEIGHT_API) as checker:
            result = await checker.check_endpoint("https://api.example.com")

        assert seen == ["OPTIONS"]
        assert result.health is EndpointHealth.HEALTHY

    @pytest.mark.asyncio
    async def test_unauthorized_is_degraded(self, clock):
        async with _checker(_status(401), clock, strategy=HealthCheckStrategy.LIGHTWEIGHT_API) as checker:
            result = await checker.check_endpoint("https://api.example.com")
        assert result.health is EndpointHealth.DEGRADED


class TestCheckEndpoints:
    """Tests for concurrent probing."""

    @pytest.mark.asyncio
    async def test_preserves_order_and_feeds_failover(self, clock):
        def handler(request):
            return httpx.Response(503 if request.url.host == "b.example" else 200)

        manager = FailoverManager(endpoints=[
            FailoverEndpoint("a", "https://a.example", priority=10),
            FailoverEndpoint("b", "https://b.example", priority=20),
        ])

        async with _checker(handler, clock) as checker:
            results = await checker.check_endpoints(["https://a.example", "https://b.example"])

        assert [r.health for r in results] == [EndpointHealth.HEALTHY, EndpointHealth.UNHEALTHY]

        assert manager.apply_health_results(results) == 2
        assert manager.select_endpoint().id == "a"
        assert manager.healthy_count() == 1
