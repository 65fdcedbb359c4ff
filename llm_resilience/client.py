"""Main client wrapper with retry, circuit breaker and endpoint failover."""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .cache import CacheConfig, ResponseCache
from .circuit import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerRegistry
from .errors import RateLimitExceededError
from .failover import FailoverConfig, FailoverContext, FailoverEndpoint, FailoverManager
from .health import HealthChecker, HealthCheckResult
from .providers import get_provider_class
from .providers.base import BaseProvider, Message, ProviderConfig, ProviderResponse
from .rate_limit import RateLimiter, RateLimiterConfig
from .retry import RetryExecutor, RetryMetrics, RetryStrategy


@dataclass
class ClientConfig:
    """Configuration for the resilient client."""

    # Provider settings
    provider: str = "openai"
    model: Optional[str] = None
    provider_config: Optional[ProviderConfig] = None

    # Retry settings
    retry_enabled: bool = True
    retry_strategy: Optional[RetryStrategy] = None

    # Circuit breaker settings
    circuit_enabled: bool = True
    circuit_config: Optional[CircuitBreakerConfig] = None

    # Failover settings; no endpoints means the provider's base URL only
    endpoints: Optional[List[FailoverEndpoint]] = None
    failover_config: Optional[FailoverConfig] = None

    # Client-side throttling; None disables it
    rate_limiter_config: Optional[RateLimiterConfig] = None
    rate_limit_timeout: float = 60.0  # Longest wait for a token per attempt

    # Response caching; None disables it
    cache_config: Optional[CacheConfig] = None

    # Callbacks
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None


class ResilientClient:
    """
    LLM client whose requests pass through the reliability layer.

    Every completion runs inside a RetryExecutor gated by the circuit breaker
    for the provider/model pair. When endpoints are configured, each attempt
    is routed to an endpoint chosen by the failover manager.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        provider: Optional[BaseProvider] = None,
        registry: Optional[CircuitBreakerRegistry] = None,
        metrics: Optional[RetryMetrics] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[ResponseCache] = None,
    ):
        self.config = config or ClientConfig()

        if provider is None:
            provider_class = get_provider_class(self.config.provider)
            provider = provider_class(self.config.provider_config)
        self.provider = provider

        self.registry = registry or CircuitBreakerRegistry(self.config.circuit_config)
        self.metrics = metrics or RetryMetrics()

        self.failover: Optional[FailoverManager] = None
        if self.config.endpoints:
            self.failover = FailoverManager(self.config.failover_config, self.config.endpoints)

        if rate_limiter is None and self.config.rate_limiter_config is not None:
            rate_limiter = RateLimiter(self.config.rate_limiter_config)
        self.rate_limiter = rate_limiter

        if cache is None and self.config.cache_config is not None:
            cache = ResponseCache(self.config.cache_config)
        self.cache: Optional[ResponseCache] = cache

        strategy = self.config.retry_strategy or RetryStrategy.exponential_backoff()
        if not self.config.retry_enabled:
            strategy = strategy.with_config(strategy.config.with_max_attempts(1))
        self.strategy = strategy

    def _get_circuit(self, model: str) -> Optional[CircuitBreaker]:
        """Get or create circuit breaker for provider/model."""
        if not self.config.circuit_enabled:
            return None
        return self.registry.get_or_create(f"{self.provider.provider_name}:{model}")

    def _executor(self, model: str) -> RetryExecutor:
        return RetryExecutor(
            self.strategy,
            circuit_breaker=self._get_circuit(model),
            failover=self.failover,
            metrics=self.metrics,
            on_retry=self.config.on_retry,
        )

    async def _acquire_token(self) -> None:
        if self.rate_limiter is None:
            return
        timeout = self.config.rate_limit_timeout
        if not await self.rate_limiter.wait_for_tokens(1, timeout=timeout):
            raise RateLimitExceededError(
                f"No rate limit token within {timeout}s",
                retry_after=self.rate_limiter.time_until_tokens_available(1),
            )

    async def complete(
        self,
        messages: List[Message],
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> ProviderResponse:
        """
        Generate a completion with retry, circuit breaking and failover.

        A cached response for the same model, messages and parameters is
        returned without a request. Otherwise every attempt first takes a
        token from the rate limiter, if one is configured.

        Args:
            messages: List of chat messages
            model: Model to use (defaults to config, then provider default)
            **kwargs: Additional parameters for the provider

        Returns:
            ProviderResponse with the completion

        Raises:
            CircuitOpenError: If the breaker for this model refuses the call
            NoAvailableEndpointsError: If failover runs out of endpoints
            RateLimitExceededError: If no token frees up in time on the last attempt
            ProviderError: The last provider error once retrying stops
        """
        model_name = model or self.config.model or self.provider.default_model

        cache_key = None
        if self.cache is not None:
            cache_key = self.cache.key_for(messages, model_name, kwargs)
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        executor = self._executor(model_name)

        if self.failover is None:

            async def once() -> ProviderResponse:
                await self._acquire_token()
                return await self.provider.complete(messages, model=model_name, **kwargs)

            response = await executor.execute(once)
        else:

            async def on_endpoint(context: FailoverContext) -> ProviderResponse:
                await self._acquire_token()
                return await self.provider.complete(
                    messages,
                    model=model_name,
                    base_url=context.endpoint.url,
                    timeout=context.endpoint.timeout,
                    **kwargs,
                )

            response = await executor.execute_with_failover(on_endpoint)

        if cache_key is not None:
            self.cache.store(cache_key, response)
        return response

    async def chat(
        self,
        message: str,
        system: Optional[str] = None,
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> str:
        """Send one user message (and optional system prompt) and return the reply text."""
        messages = []
        if system:
            messages.append(Message.system(system))
        messages.append(Message.user(message))

        response = await self.complete(messages, model=model, **kwargs)
        return response.content

    async def check_health(self, checker: Optional[HealthChecker] = None) -> List[HealthCheckResult]:
        """
        Probe every failover endpoint and record the results.

        Returns an empty list when no endpoints are configured.
        """
        if self.failover is None:
            return []

        owned = checker is None
        checker = checker or HealthChecker()
        try:
            results = await checker.check_endpoints([e.url for e in self.failover.endpoints])
        finally:
            if owned:
                await checker.close()

        self.failover.apply_health_results(results)
        return results

    def get_circuit_stats(self) -> Dict[str, Dict[str, Any]]:
        """Get stats for all circuit breakers."""
        return self.registry.get_all_stats()

    def get_retry_stats(self) -> Dict[str, Any]:
        return self.metrics.to_dict()

    def get_cache_stats(self) -> Dict[str, Any]:
        if self.cache is None:
            return {}
        return {**self.cache.metrics().to_dict(), "size": self.cache.size()}

    def get_rate_limit_stats(self) -> Dict[str, Any]:
        if self.rate_limiter is None:
            return {}
        return {
            **self.rate_limiter.metrics().to_dict(),
            "available_tokens": self.rate_limiter.available_tokens(),
        }

    def export_metrics(self) -> str:
        """Prometheus text for every breaker, one block per breaker."""
        blocks = [
            f"# circuit {name}\n{breaker.export_prometheus()}"
            for name, breaker in self.registry.all().items()
        ]
        return "\n".join(blocks)

    def reset_circuits(self) -> None:
        """Reset all circuit breakers."""
        self.registry.reset_all()

    async def close(self) -> None:
        """Close all resources."""
        await self.provider.close()

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


def create_client(
    provider: str = "openai",
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    retry_enabled: bool = True,
    endpoints: Optional[List[str]] = None,
) -> ResilientClient:
    """
    Create a resilient client with simple configuration.

    Args:
        provider: Provider name ("openai" or "anthropic")
        model: Default model
        api_key: API key (uses environment variable if not provided)
        retry_enabled: Enable retry logic
        endpoints: Base URLs to fail over between, most preferred first

    Returns:
        Configured ResilientClient
    """
    failover_endpoints = None
    if endpoints:
        failover_endpoints = [
            FailoverEndpoint(id=f"endpoint-{i}", url=url, priority=len(endpoints) - i)
            for i, url in enumerate(endpoints)
        ]

    config = ClientConfig(
        provider=provider,
        model=model,
        provider_config=ProviderConfig(api_key=api_key) if api_key else None,
        retry_enabled=retry_enabled,
        endpoints=failover_endpoints,
    )
    return ResilientClient(config)
