"""Failure and retry classification for operation errors.

The breaker and the retry executor never match on concrete exception types.
Instead they ask an error what it is through the ``ClassifiableError``
capability. Provider errors implement it directly; any other exception is
classified by duck typing (``httpx`` status and transport errors, builtin
connection and timeout errors).
"""

import asyncio
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

import httpx

# Compatibility shortcut: 5xx responses count as breaker failures.
DEFAULT_FAILURE_STATUS_RANGE = range(500, 600)

RATE_LIMIT_STATUS = 429
AUTH_STATUSES = (401, 403)
VALIDATION_STATUSES = (400, 422)


class ErrorKind(Enum):
    """Coarse category of an operation error."""

    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    HTTP = "http"
    NETWORK = "network"
    STREAM = "stream"
    INTERNAL = "internal"
    OTHER = "other"


@runtime_checkable
class ClassifiableError(Protocol):
    """Capability an operation error exposes to the reliability layer."""

    retry_after: Optional[float]
    status_code: Optional[int]

    def is_auth_error(self) -> bool: ...

    def is_rate_limit_error(self) -> bool: ...

    def is_validation_error(self) -> bool: ...

    def is_network_error(self) -> bool: ...


def _ask(error: BaseException, capability: str) -> bool:
    method = getattr(error, capability, None)
    if callable(method):
        return bool(method())
    return False


def status_code_of(error: BaseException) -> Optional[int]:
    """Return the HTTP status carried by an error, if any."""
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status

    response = getattr(error, "response", None)
    if response is not None:
        status = getattr(response, "status_code", None)
        if isinstance(status, int):
            return status
    return None


def extract_retry_after(error: BaseException) -> Optional[float]:
    """Extract a retry-after hint, in seconds, from an error."""
    retry_after = getattr(error, "retry_after", None)
    if retry_after is not None:
        return float(retry_after)

    # Check for httpx response
    response = getattr(error, "response", None)
    if response is not None and hasattr(response, "headers"):
        header = response.headers.get("retry-after")
        if header:
            try:
                return float(header)
            except ValueError:
                return None
    return None


def classify(error: BaseException) -> ErrorKind:
    """Map an error to its ``ErrorKind``."""
    kind = getattr(error, "error_kind", None)
    if isinstance(kind, ErrorKind):
        return kind

    if _ask(error, "is_auth_error"):
        return ErrorKind.AUTHENTICATION
    if _ask(error, "is_rate_limit_error"):
        return ErrorKind.RATE_LIMIT
    if _ask(error, "is_validation_error"):
        return ErrorKind.VALIDATION
    if _ask(error, "is_network_error"):
        return ErrorKind.NETWORK

    status = status_code_of(error)
    if status is not None:
        if status in AUTH_STATUSES:
            return ErrorKind.AUTHENTICATION
        if status == RATE_LIMIT_STATUS:
            return ErrorKind.RATE_LIMIT
        if status in VALIDATION_STATUSES:
            return ErrorKind.VALIDATION
        return ErrorKind.HTTP

    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.NETWORK

    return ErrorKind.OTHER


def is_rate_limit_error(error: BaseException) -> bool:
    """Detect if an error is a rate limit error."""
    return classify(error) is ErrorKind.RATE_LIMIT


def is_failure(
    error: BaseException,
    failure_status_range: Optional[range],
    consider_network_errors_as_failures: bool,
    default_classification: bool,
    *,
    ignore_auth_errors: bool = False,
    ignore_rate_limit_errors: bool = False,
    ignore_validation_errors: bool = False,
) -> bool:
    """
    Decide whether an error counts as a circuit breaker failure.

    Args:
        error: The error produced by the operation
        failure_status_range: Status codes that count as failures; when None,
            errors carrying a status fall back to ``default_classification``
        consider_network_errors_as_failures: Result for errors without a status
        default_classification: Result for errors no other rule covers
        ignore_auth_errors: Never count authentication errors
        ignore_rate_limit_errors: Never count rate limit errors
        ignore_validation_errors: Never count validation errors

    Returns:
        True if the error should be recorded as a failure
    """
    kind = classify(error)

    if kind is ErrorKind.AUTHENTICATION:
        return not ignore_auth_errors
    if kind is ErrorKind.RATE_LIMIT:
        return not ignore_rate_limit_errors
    if kind is ErrorKind.VALIDATION:
        return not ignore_validation_errors

    if kind in (ErrorKind.HTTP, ErrorKind.NETWORK):
        status = status_code_of(error)
        if status is None:
            return consider_network_errors_as_failures
        if failure_status_range is not None:
            return status in failure_status_range
        return default_classification

    return default_classification


def is_failure_default(error: BaseException) -> bool:
    """``is_failure`` with 5xx and network errors counted as failures."""
    return is_failure(
        error,
        DEFAULT_FAILURE_STATUS_RANGE,
        consider_network_errors_as_failures=True,
        default_classification=True,
    )


def is_retryable(error: BaseException) -> bool:
    """Whether an error is worth retrying, ignoring attempt limits."""
    kind = classify(error)

    if kind in (ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, ErrorKind.STREAM, ErrorKind.INTERNAL):
        return True

    if kind is ErrorKind.HTTP:
        status = status_code_of(error)
        return status is not None and 500 <= status < 600

    # Authentication, validation and unknown errors
    return False
