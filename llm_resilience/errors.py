"""Structural errors raised by the reliability layer."""

from typing import List, Optional


class ConfigurationError(ValueError):
    """Raised when a configuration value is out of range."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field} {message}")
        self.field = field


class CircuitOpenError(Exception):
    """Raised when circuit is open and request is rejected."""

    def __init__(self, message: str, remaining_timeout: float = 0):
        super().__init__(message)
        self.remaining_timeout = remaining_timeout


class NoAvailableEndpointsError(Exception):
    """Raised when failover finds no endpoint eligible for selection."""

    def __init__(
        self,
        message: str,
        tried_endpoints: Optional[List[str]] = None,
        last_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.tried_endpoints = list(tried_endpoints or [])
        self.last_error = last_error


class RateLimitExceededError(Exception):
    """Raised when the client-side rate limiter has no token within the wait timeout."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after

    def is_rate_limit_error(self) -> bool:
        return True
