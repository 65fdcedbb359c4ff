"""Tests for backoff calculation and the retry executor."""

import pytest
from structlog.testing import capture_logs

from llm_resilience.circuit import CircuitBreaker, CircuitBreakerConfig
from llm_resilience.errors import CircuitOpenError, ConfigurationError, NoAvailableEndpointsError
from llm_resilience.failover import EndpointHealth, FailoverConfig, FailoverEndpoint, FailoverManager
from llm_resilience.retry import (
    MIN_DELAY,
    RetryConfig,
    RetryExecutor,
    RetryMetrics,
    RetryStrategy,
    RetryStrategyType,
    with_retry,
)

# Executor tests inject the RecordingSleep fixture, so delays cost no time
FAST = RetryConfig(max_attempts=3, base_delay=0.001, max_delay=0.005, jitter_enabled=False)


class Flaky:
    """Async operation failing with the given errors before succeeding."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestRetryConfig:
    """Tests for retry configuration."""

    def test_defaults(self):
        config = RetryConfig()
        assert (config.max_attempts, config.base_delay, config.max_delay) == (3, 1.0, 60.0)
        assert config.backoff_multiplier == 2.0
        assert config.jitter_enabled is True

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"max_attempts": 0}, "max_attempts"),
            ({"base_delay": 0.0}, "base_delay"),
            ({"base_delay": 10.0, "max_delay": 5.0}, "max_delay"),
            ({"backoff_multiplier": 0.5}, "backoff_multiplier"),
        ],
    )
    def test_validate_names_field(self, kwargs, field):
        """Should reject out-of-range values without clamping."""
        config = RetryConfig(**kwargs)
        assert not config.is_valid()
        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()
        assert exc_info.value.field == field

    def test_strategy_refuses_invalid_config(self):
        with pytest.raises(ConfigurationError):
            RetryStrategy.fixed_delay(RetryConfig(max_attempts=0))

    def test_with_helpers(self):
        config = RetryConfig().with_max_attempts(5).with_jitter(False)
        assert config.max_attempts == 5
        assert config.jitter_enabled is False


class TestBackoff:
    """Tests for delay calculation."""

    def test_exponential(self):
        strategy = RetryStrategy.exponential_backoff(RetryConfig(jitter_enabled=False))
        assert [strategy.calculate_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_exponential_capped(self):
        strategy = RetryStrategy.exponential_backoff(RetryConfig(jitter_enabled=False))
        assert strategy.calculate_delay(10) == 60.0

    def test_exponential_huge_attempt(self):
        """Overflowing growth is capped rather than raised."""
        strategy = RetryStrategy.exponential_backoff(RetryConfig(jitter_enabled=False))
        assert strategy.calculate_delay(100000) == 60.0

    def test_linear(self):
        strategy = RetryStrategy.linear_backoff(RetryConfig(base_delay=1.0, max_delay=10.0, jitter_enabled=False))
        assert strategy.calculate_delay(3) == 3.0
        assert strategy.calculate_delay(15) == 10.0

    def test_fixed(self):
        strategy = RetryStrategy.fixed_delay(RetryConfig(base_delay=2.5, jitter_enabled=False))
        assert {strategy.calculate_delay(n) for n in range(1, 8)} == {2.5}

    def test_jitter_bounds(self):
        """Jittered delays stay within +/-10% and vary."""
        strategy = RetryStrategy.fixed_delay(RetryConfig(base_delay=1.0))
        delays = [strategy.calculate_delay(1) for _ in range(200)]
        assert all(0.9 <= d <= 1.1 for d in delays)
        assert len(set(delays)) > 1

    def test_jitter_never_exceeds_max_delay(self):
        strategy = RetryStrategy.exponential_backoff(RetryConfig(max_delay=60.0))
        assert all(strategy.calculate_delay(20) <= 60.0 for _ in range(100))

    def test_jitter_floor(self):
        strategy = RetryStrategy.fixed_delay(RetryConfig(base_delay=0.0001, max_delay=1.0))
        assert strategy.calculate_delay_with_jitter_config(1, 0.0, 0.0) == MIN_DELAY

    def test_explicit_jitter_factors(self):
        strategy = RetryStrategy.fixed_delay(RetryConfig(base_delay=1.0))
        assert strategy.calculate_delay_with_jitter_config(1, 0.5, 0.5) == 0.5
        assert strategy.calculate_delay_with_jitter_config(1, None, None) == 1.0

    def test_invalid_attempt(self):
        with pytest.raises(ValueError):
            RetryStrategy().calculate_delay(0)

    def test_retry_after_floor(self, rate_limit_error):
        """A retry-after hint raises the delay, even past max_delay."""
        strategy = RetryStrategy.exponential_backoff(RetryConfig(max_delay=10.0, jitter_enabled=False))
        assert strategy.calculate_delay_for_error(rate_limit_error, 1) == 30.0

    def test_retry_after_below_computed(self, rate_limit_error):
        strategy = RetryStrategy.fixed_delay(RetryConfig(base_delay=45.0, max_delay=60.0, jitter_enabled=False))
        assert strategy.calculate_delay_for_error(rate_limit_error, 1) == 45.0

    def test_strategy_type(self):
        assert RetryStrategy.linear_backoff().strategy_type is RetryStrategyType.LINEAR_BACKOFF


class TestShouldRetry:
    """Tests for retry eligibility with attempt limits."""

    def test_retryable_within_limit(self, server_error, rate_limit_error, network_error):
        strategy = RetryStrategy()
        assert strategy.should_retry(server_error, 1)
        assert strategy.should_retry(rate_limit_error, 2)
        assert strategy.should_retry(network_error, 1)

    def test_stops_at_max_attempts(self, server_error):
        assert not RetryStrategy().should_retry(server_error, 3)

    def test_non_retryable(self, auth_error, validation_error):
        strategy = RetryStrategy()
        assert not strategy.should_retry(auth_error, 1)
        assert not strategy.should_retry(validation_error, 1)


class TestRetryExecutor:
    """Tests for the retry loop."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, sleep):
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST), sleep=sleep)
        operation = Flaky()
        assert await executor.execute(operation) == "ok"
        assert operation.calls == 1
        assert executor.current_attempt == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_retries(self, sleep, server_error):
        executor = RetryExecutor(RetryStrategy.exponential_backoff(FAST), sleep=sleep)
        operation = Flaky(server_error, server_error)
        assert await executor.execute(operation) == "ok"
        assert operation.calls == 3
        assert sleep.delays == [0.001, 0.002]

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_original(self, sleep, server_error):
        """Three always-failing calls with max_attempts=3, then the same error."""
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST), sleep=sleep)
        operation = Flaky(server_error, server_error, server_error, server_error)

        with pytest.raises(type(server_error)) as exc_info:
            await executor.execute(operation)

        assert exc_info.value is server_error
        assert operation.calls == 3
        assert executor.has_exceeded_max_attempts()
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_max_attempts_two(self, sleep, server_error):
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST.with_max_attempts(2)), sleep=sleep)
        operation = Flaky(server_error, server_error, server_error)

        with pytest.raises(type(server_error)):
            await executor.execute(operation)
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self, sleep, auth_error):
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST), sleep=sleep)
        operation = Flaky(auth_error)

        with pytest.raises(type(auth_error)):
            await executor.execute(operation)
        assert operation.calls == 1
        assert executor.current_attempt == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_on_retry_callback(self, sleep, server_error):
        seen = []
        executor = RetryExecutor(
            RetryStrategy.fixed_delay(FAST),
            on_retry=lambda attempt, error, delay: seen.append((attempt, error, delay)),
            sleep=sleep,
        )
        await executor.execute(Flaky(server_error, server_error))

        assert [attempt for attempt, _, _ in seen] == [1, 2]
        assert all(error is server_error for _, error, _ in seen)
        assert all(delay == 0.001 for _, _, delay in seen)

    @pytest.mark.asyncio
    async def test_rate_limit_uses_retry_after(self, sleep, rate_limit_error):
        """The 30s retry-after hint is slept in full, past max_delay."""
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST), sleep=sleep)
        await executor.execute(Flaky(rate_limit_error))
        assert sleep.delays == [30.0]

    @pytest.mark.asyncio
    async def test_real_sleep_by_default(self, server_error):
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST))
        assert await executor.execute(Flaky(server_error)) == "ok"

    @pytest.mark.asyncio
    async def test_logs_schedule_and_give_up(self, sleep, server_error):
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST.with_max_attempts(2)), sleep=sleep)
        with capture_logs() as logs:
            with pytest.raises(type(server_error)):
                await executor.execute(Flaky(server_error, server_error))

        events = [entry["event"] for entry in logs]
        assert events == ["retry_scheduled", "retry_giving_up"]
        assert logs[1]["attempts"] == 2


class TestExecutorWithBreaker:
    """Tests for circuit breaker gating."""

    @pytest.mark.asyncio
    async def test_breaker_records_outcomes(self, clock, sleep, server_error):
        breaker = CircuitBreaker("svc", CircuitBreakerConfig(failure_threshold=5), clock=clock)
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST), circuit_breaker=breaker, sleep=sleep)

        await executor.execute(Flaky(server_error))
        assert breaker.failure_count == 1
        assert breaker.success_count == 1

    @pytest.mark.asyncio
    async def test_open_breaker_refuses(self, clock, sleep, server_error):
        breaker = CircuitBreaker("svc", CircuitBreakerConfig(failure_threshold=1), clock=clock)
        breaker.record_failure(server_error)
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST), circuit_breaker=breaker, sleep=sleep)
        operation = Flaky()

        with pytest.raises(CircuitOpenError) as exc_info:
            await executor.execute(operation)
        assert operation.calls == 0
        assert exc_info.value.__cause__ is None

    @pytest.mark.asyncio
    async def test_breaker_opening_mid_sequence_stops_retries(self, clock, sleep, server_error):
        """Once retries trip the breaker, give up at once with the failure as cause."""
        breaker = CircuitBreaker("svc", CircuitBreakerConfig(failure_threshold=2), clock=clock)
        executor = RetryExecutor(
            RetryStrategy.fixed_delay(FAST.with_max_attempts(5)), circuit_breaker=breaker, sleep=sleep
        )
        operation = Flaky(server_error, server_error, server_error)

        with capture_logs() as logs:
            with pytest.raises(CircuitOpenError) as exc_info:
                await executor.execute(operation)

        assert operation.calls == 2
        assert exc_info.value.__cause__ is server_error
        assert exc_info.value.remaining_timeout == 60.0
        assert sleep.delays == [0.001]
        assert logs[-1]["event"] == "retry_giving_up"
        assert logs[-1]["reason"] == "circuit_open"

    @pytest.mark.asyncio
    async def test_trip_on_first_failure_does_not_sleep(self, clock, sleep, server_error):
        """A long open timeout makes sleeping through a short backoff pointless."""
        breaker = CircuitBreaker(
            "svc", CircuitBreakerConfig(failure_threshold=1, open_timeout=60.0), clock=clock
        )
        strategy = RetryStrategy.fixed_delay(RetryConfig(base_delay=0.5, max_delay=0.5, jitter_enabled=False))
        executor = RetryExecutor(strategy, circuit_breaker=breaker, sleep=sleep)
        operation = Flaky(server_error)

        with pytest.raises(CircuitOpenError) as exc_info:
            await executor.execute(operation)

        assert operation.calls == 1
        assert sleep.delays == []
        assert exc_info.value.__cause__ is server_error
        assert exc_info.value.remaining_timeout == 60.0

    @pytest.mark.asyncio
    async def test_recovery_due_within_delay_keeps_retrying(self, clock, sleep, server_error):
        """When the open timeout ends before the backoff does, sleep and retry half-open."""
        breaker = CircuitBreaker(
            "svc",
            CircuitBreakerConfig(failure_threshold=1, success_threshold=1, open_timeout=0.5),
            clock=clock,
        )
        strategy = RetryStrategy.fixed_delay(RetryConfig(base_delay=1.0, max_delay=1.0, jitter_enabled=False))
        executor = RetryExecutor(strategy, circuit_breaker=breaker, sleep=sleep)

        assert await executor.execute(Flaky(server_error)) == "ok"
        assert sleep.delays == [1.0]
        assert breaker.is_closed

    @pytest.mark.asyncio
    async def test_refusal_after_sleep_chains_last_error(self, clock, server_error):
        """A breaker still open after the backoff refuses with the last failure as cause."""

        async def no_time_passes(seconds):
            pass

        breaker = CircuitBreaker(
            "svc", CircuitBreakerConfig(failure_threshold=1, open_timeout=0.5), clock=clock
        )
        strategy = RetryStrategy.fixed_delay(RetryConfig(base_delay=1.0, max_delay=1.0, jitter_enabled=False))
        executor = RetryExecutor(strategy, circuit_breaker=breaker, sleep=no_time_passes)
        operation = Flaky(server_error)

        with pytest.raises(CircuitOpenError) as exc_info:
            await executor.execute(operation)

        assert operation.calls == 1
        assert exc_info.value.__cause__ is server_error

    @pytest.mark.asyncio
    async def test_attempts_recovery_when_due(self, clock, sleep, server_error):
        breaker = CircuitBreaker(
            "svc", CircuitBreakerConfig(failure_threshold=1, success_threshold=1, open_timeout=1.0), clock=clock
        )
        breaker.record_failure(server_error)
        clock.advance(1.0)

        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST), circuit_breaker=breaker, sleep=sleep)
        assert await executor.execute(Flaky()) == "ok"
        assert breaker.is_closed


class TestExecutorWithFailover:
    """Tests for retries routed across endpoints."""

    def _manager(self, *endpoints):
        return FailoverManager(FailoverConfig(retry_delay=0.001, max_retry_delay=0.002), endpoints)

    @pytest.mark.asyncio
    async def test_each_attempt_uses_new_endpoint(self, sleep, server_error):
        manager = self._manager(
            FailoverEndpoint("primary", "https://a.example", priority=10),
            FailoverEndpoint("backup", "https://b.example", priority=5),
        )
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST), failover=manager, sleep=sleep)
        seen = []

        async def operation(context):
            seen.append((context.attempt, context.endpoint.id))
            if context.endpoint.id == "primary":
                raise server_error
            return context.endpoint.url

        assert await executor.execute_with_failover(operation) == "https://b.example"
        assert seen == [(1, "primary"), (2, "backup")]

    @pytest.mark.asyncio
    async def test_runs_out_of_endpoints(self, sleep, server_error):
        manager = self._manager(
            FailoverEndpoint("primary", "https://a.example", priority=10),
            FailoverEndpoint("backup", "https://b.example", priority=5),
        )
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST.with_max_attempts(5)), failover=manager, sleep=sleep)

        async def operation(context):
            raise server_error

        with pytest.raises(NoAvailableEndpointsError) as exc_info:
            await executor.execute_with_failover(operation)
        assert exc_info.value.tried_endpoints == ["primary", "backup"]
        assert exc_info.value.last_error is server_error

    @pytest.mark.asyncio
    async def test_all_unhealthy(self, sleep):
        """Two unhealthy endpoints fail before the operation runs."""
        manager = self._manager(
            FailoverEndpoint("a", "https://a.example", health=EndpointHealth.UNHEALTHY),
            FailoverEndpoint("b", "https://b.example", health=EndpointHealth.UNHEALTHY),
        )
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST), failover=manager, sleep=sleep)
        calls = []

        async def operation(context):
            calls.append(context)

        with pytest.raises(NoAvailableEndpointsError):
            await executor.execute_with_failover(operation)
        assert calls == []

    @pytest.mark.asyncio
    async def test_requires_manager(self):
        with pytest.raises(ValueError):
            await RetryExecutor().execute_with_failover(lambda context: None)


class TestRetryMetrics:
    """Tests for shared retry counters."""

    @pytest.mark.asyncio
    async def test_counts_attempts_and_errors(self, sleep, server_error, network_error):
        metrics = RetryMetrics()
        executor = RetryExecutor(RetryStrategy.fixed_delay(FAST), metrics=metrics, sleep=sleep)
        await executor.execute(Flaky(server_error, network_error))

        data = metrics.to_dict()
        assert data["total_attempts"] == 3
        assert data["failed_attempts"] == 2
        assert data["successful_retries"] == 1
        assert data["error_counts"] == {"http": 1, "network": 1}
        assert data["total_delay"] == pytest.approx(0.002)

    def test_reset(self, server_error):
        metrics = RetryMetrics()
        metrics.record_attempt(1.0)
        metrics.record_failure(server_error)
        metrics.reset()
        assert metrics.to_dict()["total_attempts"] == 0
        assert metrics.average_delay == 0.0


class TestWithRetryDecorator:
    """Tests for the decorator form."""

    @pytest.mark.asyncio
    async def test_decorated_function_retries(self, server_error):
        errors = [server_error]

        @with_retry(RetryStrategy.fixed_delay(FAST))
        async def fetch(value):
            if errors:
                raise errors.pop()
            return value * 2

        assert await fetch(21) == 42
        assert fetch.__name__ == "fetch"
