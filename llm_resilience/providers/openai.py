"""OpenAI-compatible provider implementation."""

from typing import List, Dict, Any

from .base import (
    BaseProvider,
    ProviderResponse,
    Message,
    AuthenticationError,
    StreamError,
)


class OpenAIProvider(BaseProvider):
    """
    OpenAI chat completions provider.

    Works against any server speaking the ``/chat/completions`` dialect
    (OpenAI, Ollama's OpenAI shim, HuggingFace TGI), which is what makes it
    useful behind a failover manager with several base URLs.
    """

    provider_name = "openai"
    default_model = "gpt-4o"
    available_models = [
        "gpt-4o",
        "gpt-4o-mini",
        "gpt-4-turbo",
        "gpt-4",
        "gpt-3.5-turbo",
        "o1",
        "o1-mini",
    ]

    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    DEFAULT_API_KEY_ENV = "OPENAI_API_KEY"
    COMPLETION_PATH = "/chat/completions"

    def _get_headers(self) -> Dict[str, str]:
        """Get request headers."""
        api_key = self.config.get_api_key()
        if not api_key:
            raise AuthenticationError(
                "OpenAI API key not found. Set OPENAI_API_KEY or provide api_key in config.",
                provider=self.provider_name,
            )

        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        headers.update(self.config.extra_headers)
        return headers

    def _build_request_body(self, messages: List[Message], model: str, **kwargs: Any) -> Dict[str, Any]:
        """Build request body for chat completion."""
        body = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
            "temperature": kwargs.get("temperature", self.config.temperature),
        }

        for name in ("top_p", "frequency_penalty", "presence_penalty", "stop"):
            if name in kwargs:
                body[name] = kwargs[name]

        body.update(self.config.extra_params)
        return body

    def _parse_response(self, data: Dict[str, Any], model: str) -> ProviderResponse:
        """Parse API response into ProviderResponse."""
        choices = data.get("choices") or []
        if not choices:
            raise StreamError("Response contained no choices", provider=self.provider_name)

        choice = choices[0]
        message = choice.get("message", {})

        usage = data.get("usage")
        if usage:
            usage = {
                "prompt_tokens": usage.get("prompt_tokens", 0),
                "completion_tokens": usage.get("completion_tokens", 0),
                "total_tokens": usage.get("total_tokens", 0),
            }

        return ProviderResponse(
            content=message.get("content") or "",
            model=data.get("model", model),
            provider=self.provider_name,
            finish_reason=choice.get("finish_reason"),
            usage=usage,
            raw_response=data,
        )
