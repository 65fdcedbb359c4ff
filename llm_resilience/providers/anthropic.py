"""Anthropic provider implementation."""

from typing import Optional, List, Dict, Any, Tuple

import httpx

from .base import (
    BaseProvider,
    ProviderResponse,
    Message,
    AuthenticationError,
    InternalError,
)

# Anthropic answers 529 when the API is temporarily overloaded.
OVERLOADED_STATUS = 529


class AnthropicProvider(BaseProvider):
    """Anthropic Messages API provider."""

    provider_name = "anthropic"
    default_model = "claude-sonnet-4-20250514"
    available_models = [
        "claude-sonnet-4-20250514",
        "claude-opus-4-20250514",
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-haiku-20240307",
    ]

    DEFAULT_BASE_URL = "https://api.anthropic.com"
    DEFAULT_API_KEY_ENV = "ANTHROPIC_API_KEY"
    COMPLETION_PATH = "/v1/messages"
    API_VERSION = "2023-06-01"

    def _get_headers(self) -> Dict[str, str]:
        """Get request headers."""
        api_key = self.config.get_api_key()
        if not api_key:
            raise AuthenticationError(
                "Anthropic API key not found. Set ANTHROPIC_API_KEY or provide api_key in config.",
                provider=self.provider_name,
            )

        headers = {
            "x-api-key": api_key,
            "anthropic-version": self.API_VERSION,
            "Content-Type": "application/json",
        }
        headers.update(self.config.extra_headers)
        return headers

    def _handle_error(self, response: httpx.Response) -> None:
        if response.status_code == OVERLOADED_STATUS:
            raise InternalError(
                f"API overloaded: {self._error_message(response)}",
                provider=self.provider_name,
                status_code=response.status_code,
                response=response,
            )
        super()._handle_error(response)

    def _convert_messages(self, messages: List[Message]) -> Tuple[Optional[str], List[Dict[str, str]]]:
        """
        Convert messages to Anthropic format.

        Anthropic uses a separate 'system' parameter instead of a system message.
        Returns (system_prompt, messages).
        """
        system_prompt = None
        converted_messages = []

        for msg in messages:
            if msg.role == "system":
                system_prompt = msg.content
            else:
                converted_messages.append(msg.to_dict())

        return system_prompt, converted_messages

    def _build_request_body(self, messages: List[Message], model: str, **kwargs: Any) -> Dict[str, Any]:
        """Build request body for messages API."""
        system_prompt, converted_messages = self._convert_messages(messages)

        body: Dict[str, Any] = {
            "model": model,
            "messages": converted_messages,
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
        }

        if system_prompt:
            body["system"] = system_prompt

        temperature = kwargs.get("temperature", self.config.temperature)
        if temperature is not None:
            body["temperature"] = temperature

        for name in ("top_p", "top_k", "stop_sequences"):
            if name in kwargs:
                body[name] = kwargs[name]

        body.update(self.config.extra_params)
        return body

    def _parse_response(self, data: Dict[str, Any], model: str) -> ProviderResponse:
        """Parse API response into ProviderResponse."""
        text_content = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )

        usage = data.get("usage")
        if usage:
            prompt_tokens = usage.get("input_tokens", 0)
            completion_tokens = usage.get("output_tokens", 0)
            usage = {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            }

        return ProviderResponse(
            content=text_content,
            model=data.get("model", model),
            provider=self.provider_name,
            finish_reason=data.get("stop_reason"),
            usage=usage,
            raw_response=data,
        )
