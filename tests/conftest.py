"""Shared fixtures for llm-resilience tests."""

import pytest
import structlog

from llm_resilience.providers.base import (
    AuthenticationError,
    InvalidRequestError,
    NetworkError,
    RateLimitError,
    ServerError,
)


class FakeClock:
    """Manually advanced stand-in for time.monotonic."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep that records delays and advances a FakeClock instead of waiting."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        self.clock.advance(seconds)


@pytest.fixture(autouse=True)
def reset_structlog():
    """The CLI configures structlog globally; undo it after every test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def server_error():
    return ServerError("Server error: boom", provider="test", status_code=503)


@pytest.fixture
def auth_error():
    return AuthenticationError("Authentication failed", provider="test", status_code=401)


@pytest.fixture
def validation_error():
    return InvalidRequestError("Invalid request", provider="test", status_code=400)


@pytest.fixture
def rate_limit_error():
    return RateLimitError("Rate limit exceeded", provider="test", retry_after=30.0, status_code=429)


@pytest.fixture
def network_error():
    return NetworkError("connection refused", provider="test")
