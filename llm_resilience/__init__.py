"""
llm-resilience - LLM API client with a reliability control layer.

This package wraps outbound LLM requests with:
- A circuit breaker that stops calling a failing provider
- Retries with exponential, linear or fixed backoff and jitter
- Failover across several endpoints, steered by health checks
- Rate limit detection honoring retry-after hints
- Optional client-side token bucket throttling and response caching

Basic usage:
    from llm_resilience import create_client

    async with create_client("anthropic") as client:
        print(await client.chat("Hello, how are you?"))

With configuration:
    from llm_resilience import (
        ClientConfig, ResilientClient, RetryConfig, RetryStrategy, FailoverEndpoint,
    )

    config = ClientConfig(
        provider="openai",
        retry_strategy=RetryStrategy.linear_backoff(RetryConfig(max_attempts=5)),
        endpoints=[
            FailoverEndpoint("primary", "https://api.openai.com/v1", priority=100),
            FailoverEndpoint("backup", "https://llm-proxy.internal/v1", priority=50),
        ],
    )
    client = ResilientClient(config)

Wrapping any async operation:
    from llm_resilience import CircuitBreaker, RetryExecutor, RetryStrategy

    breaker = CircuitBreaker("search")
    executor = RetryExecutor(RetryStrategy.exponential_backoff(), circuit_breaker=breaker)
    result = await executor.execute(fetch_results)
"""

__version__ = "0.1.0"

from .cache import CacheConfig, CacheMetrics, ResponseCache
from .circuit import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerMetrics,
    CircuitBreakerRegistry,
    CircuitBreakerState,
    CircuitState,
)
from .classifier import (
    ClassifiableError,
    ErrorKind,
    classify,
    extract_retry_after,
    is_failure,
    is_failure_default,
    is_retryable,
)
from .client import ClientConfig, ResilientClient, create_client
from .errors import CircuitOpenError, ConfigurationError, NoAvailableEndpointsError, RateLimitExceededError
from .failover import (
    EndpointHealth,
    FailoverConfig,
    FailoverContext,
    FailoverEndpoint,
    FailoverManager,
    FailoverStrategy,
)
from .health import HealthChecker, HealthCheckConfig, HealthCheckResult, HealthCheckStrategy
from .providers.base import (
    AuthenticationError,
    BaseProvider,
    InternalError,
    InvalidRequestError,
    Message,
    NetworkError,
    ProviderConfig,
    ProviderError,
    ProviderResponse,
    RateLimitError,
    ServerError,
    StreamError,
)
from .providers.openai import OpenAIProvider
from .providers.anthropic import AnthropicProvider
from .rate_limit import RateLimiter, RateLimiterConfig, RateLimiterMetrics
from .retry import (
    RetryConfig,
    RetryExecutor,
    RetryMetrics,
    RetryStrategy,
    RetryStrategyType,
    with_retry,
)

__all__ = [
    # Version
    "__version__",
    # Client
    "ResilientClient",
    "ClientConfig",
    "create_client",
    # Providers
    "BaseProvider",
    "ProviderConfig",
    "ProviderResponse",
    "Message",
    "OpenAIProvider",
    "AnthropicProvider",
    # Provider errors
    "ProviderError",
    "AuthenticationError",
    "RateLimitError",
    "InvalidRequestError",
    "ServerError",
    "NetworkError",
    "StreamError",
    "InternalError",
    # Classification
    "ClassifiableError",
    "ErrorKind",
    "classify",
    "extract_retry_after",
    "is_failure",
    "is_failure_default",
    "is_retryable",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerMetrics",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "CircuitState",
    "CircuitOpenError",
    # Retry
    "RetryConfig",
    "RetryExecutor",
    "RetryMetrics",
    "RetryStrategy",
    "RetryStrategyType",
    "with_retry",
    # Failover
    "EndpointHealth",
    "FailoverConfig",
    "FailoverContext",
    "FailoverEndpoint",
    "FailoverManager",
    "FailoverStrategy",
    "NoAvailableEndpointsError",
    # Health
    "HealthChecker",
    "HealthCheckConfig",
    "HealthCheckResult",
    "HealthCheckStrategy",
    # Rate limiting
    "RateLimiter",
    "RateLimiterConfig",
    "RateLimiterMetrics",
    "RateLimitExceededError",
    # Caching
    "ResponseCache",
    "CacheConfig",
    "CacheMetrics",
    # Errors
    "ConfigurationError",
]
