"""LLM providers."""

from typing import Dict, Type

from .base import BaseProvider, ProviderConfig, ProviderResponse, Message
from .openai import OpenAIProvider
from .anthropic import AnthropicProvider

# Provider registry
PROVIDER_CLASSES: Dict[str, Type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
}


def register_provider(name: str, provider_class: Type[BaseProvider]) -> None:
    """Register a custom provider."""
    PROVIDER_CLASSES[name] = provider_class


def get_provider_class(name: str) -> Type[BaseProvider]:
    """Look up a provider class by name."""
    provider_class = PROVIDER_CLASSES.get(name)
    if not provider_class:
        raise ValueError(f"Unknown provider: {name}")
    return provider_class


__all__ = [
    "BaseProvider",
    "ProviderConfig",
    "ProviderResponse",
    "Message",
    "OpenAIProvider",
    "AnthropicProvider",
    "PROVIDER_CLASSES",
    "register_provider",
    "get_provider_class",
]
