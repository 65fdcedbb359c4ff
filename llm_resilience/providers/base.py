"""Base provider class for LLM providers."""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

import httpx

from ..classifier import ErrorKind


@dataclass
class Message:
    """A chat message."""

    role: str  # "system", "user", "assistant"
    content: str

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary."""
        return {"role": self.role, "content": self.content}

    @classmethod
    def system(cls, content: str) -> "Message":
        """Create a system message."""
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        """Create a user message."""
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        """Create an assistant message."""
        return cls(role="assistant", content=content)


@dataclass
class ProviderConfig:
    """Configuration for a provider."""

    api_key: Optional[str] = None
    api_key_env: Optional[str] = None  # Environment variable name for API key
    base_url: Optional[str] = None
    timeout: float = 60.0
    max_tokens: int = 4096
    temperature: float = 0.7
    extra_headers: Dict[str, str] = field(default_factory=dict)
    extra_params: Dict[str, Any] = field(default_factory=dict)

    def get_api_key(self) -> Optional[str]:
        """Get API key from config or environment."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None


@dataclass
class ProviderResponse:
    """Response from a provider."""

    content: str
    model: str
    provider: str
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, int]] = None  # {"prompt_tokens": x, "completion_tokens": y, "total_tokens": z}
    endpoint: Optional[str] = None  # Base URL that served the request
    raw_response: Optional[Any] = None

    @property
    def total_tokens(self) -> int:
        """Get total token count."""
        if not self.usage:
            return 0
        if "total_tokens" in self.usage:
            return self.usage["total_tokens"]
        return self.usage.get("prompt_tokens", 0) + self.usage.get("completion_tokens", 0)


class ProviderError(Exception):
    """
    Base exception for provider errors.

    Every provider error answers the classification questions the circuit
    breaker and retry executor ask (see ``ClassifiableError``).
    """

    retry_after: Optional[float] = None

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: Optional[int] = None,
        response: Optional[Any] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.response = response

    @property
    def error_kind(self) -> ErrorKind:
        return ErrorKind.HTTP if self.status_code is not None else ErrorKind.OTHER

    def is_auth_error(self) -> bool:
        return self.error_kind is ErrorKind.AUTHENTICATION

    def is_rate_limit_error(self) -> bool:
        return self.error_kind is ErrorKind.RATE_LIMIT

    def is_validation_error(self) -> bool:
        return self.error_kind is ErrorKind.VALIDATION

    def is_network_error(self) -> bool:
        return self.error_kind is ErrorKind.NETWORK


class AuthenticationError(ProviderError):
    """Raised when authentication fails."""

    error_kind = ErrorKind.AUTHENTICATION


class RateLimitError(ProviderError):
    """Raised when rate limit is hit."""

    error_kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        message: str,
        provider: str,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
        response: Optional[Any] = None,
    ):
        super().__init__(message, provider, status_code, response)
        self.retry_after = retry_after


class InvalidRequestError(ProviderError):
    """Raised when request is invalid."""

    error_kind = ErrorKind.VALIDATION


class ServerError(ProviderError):
    """Raised when server returns an error."""

    error_kind = ErrorKind.HTTP


class NetworkError(ProviderError):
    """Raised when the request never produced an HTTP response."""

    error_kind = ErrorKind.NETWORK


class StreamError(ProviderError):
    """Raised when a response body is cut off or unreadable."""

    error_kind = ErrorKind.STREAM


class InternalError(ProviderError):
    """Raised when the provider reports a transient internal fault."""

    error_kind = ErrorKind.INTERNAL


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class BaseProvider(ABC):
    """Base class for LLM providers."""

    provider_name: str = "base"
    default_model: str = ""
    available_models: List[str] = []

    DEFAULT_BASE_URL = ""
    DEFAULT_API_KEY_ENV: Optional[str] = None
    COMPLETION_PATH = ""

    def __init__(self, config: Optional[ProviderConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or ProviderConfig()
        if self.config.api_key_env is None:
            self.config.api_key_env = self.DEFAULT_API_KEY_ENV
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @abstractmethod
    def _get_headers(self) -> Dict[str, str]:
        """Get request headers."""

    @abstractmethod
    def _build_request_body(self, messages: List[Message], model: str, **kwargs: Any) -> Dict[str, Any]:
        """Build request body for a chat completion."""

    @abstractmethod
    def _parse_response(self, data: Dict[str, Any], model: str) -> ProviderResponse:
        """Parse API response into ProviderResponse."""

    def _get_base_url(self) -> str:
        """Get API base URL."""
        return self.config.base_url or self.DEFAULT_BASE_URL

    def _error_message(self, response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
        except ValueError:
            return response.text
        if isinstance(error, dict):
            return error.get("message", response.text)
        return str(error)

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the asynchronous HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self._get_headers(),
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._client

    def _handle_error(self, response: httpx.Response) -> None:
        """Raise the provider error matching an error response."""
        status_code = response.status_code
        error_message = self._error_message(response)

        if status_code in (401, 403):
            raise AuthenticationError(
                f"Authentication failed: {error_message}",
                provider=self.provider_name,
                status_code=status_code,
                response=response,
            )
        elif status_code == 429:
            raise RateLimitError(
                f"Rate limit exceeded: {error_message}",
                provider=self.provider_name,
                retry_after=_parse_retry_after(response),
                status_code=status_code,
                response=response,
            )
        elif status_code in (400, 422):
            raise InvalidRequestError(
                f"Invalid request: {error_message}",
                provider=self.provider_name,
                status_code=status_code,
                response=response,
            )
        elif status_code >= 500:
            raise ServerError(
                f"Server error: {error_message}",
                provider=self.provider_name,
                status_code=status_code,
                response=response,
            )
        else:
            raise ProviderError(
                f"API error ({status_code}): {error_message}",
                provider=self.provider_name,
                status_code=status_code,
                response=response,
            )

    async def complete(
        self,
        messages: List[Message],
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> ProviderResponse:
        """
        Generate a completion.

        Args:
            messages: List of chat messages
            model: Model to use (defaults to provider's default)
            base_url: Endpoint to send the request to (defaults to config)
            timeout: Per-request timeout override in seconds
            **kwargs: Additional provider-specific parameters

        Returns:
            ProviderResponse with the completion

        Raises:
            ProviderError: A classifiable error describing the failure
        """
        model_name = model or self.default_model
        endpoint = (base_url or self._get_base_url()).rstrip("/")
        body = self._build_request_body(messages, model_name, **kwargs)

        try:
            response = await self.client.post(
                endpoint + self.COMPLETION_PATH,
                json=body,
                timeout=timeout if timeout is not None else self.config.timeout,
            )
        except httpx.TransportError as e:
            raise NetworkError(
                f"Request to {endpoint} failed: {e}",
                provider=self.provider_name,
            ) from e

        if response.status_code != 200:
            self._handle_error(response)

        try:
            data = response.json()
        except ValueError as e:
            raise StreamError(
                f"Unreadable response body from {endpoint}",
                provider=self.provider_name,
                status_code=response.status_code,
                response=response,
            ) from e

        result = self._parse_response(data, model_name)
        result.endpoint = endpoint
        return result

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BaseProvider":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
