"""
Provider adapters.

Each adapter turns one request into a stream of provider-neutral
:mod:`~branchchat.conversation.events`.  Use :func:`create_provider` to build
one by name::

    provider = create_provider("anthropic")
    await provider.stream(request, on_event)
"""

from __future__ import annotations

import httpx

from branchchat.conversation.providers.anthropic import AnthropicProvider
from branchchat.conversation.providers.base import (
    LLMAPIError,
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
    ProviderAdapter,
    ProviderRequest,
    StreamAccumulator,
    StreamingProvider,
    ToolCallBuffer,
)
from branchchat.conversation.providers.cohere import CohereProvider
from branchchat.conversation.providers.google import GoogleProvider
from branchchat.conversation.providers.openai_compatible import OpenAICompatibleProvider
from branchchat.conversation.providers.openai_responses import OpenAIResponsesProvider
from branchchat.conversation.providers.poe import PoeProvider

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

PROVIDER_NAMES = (
    "openai",
    "anthropic",
    "google",
    "cohere",
    "openrouter",
    "openai_compatible",
    "poe",
)


def create_provider(
    name: str,
    base_url: str | None = None,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 120.0,
) -> StreamingProvider:
    """Build the adapter registered under *name*.

    Args:
        name: One of :data:`PROVIDER_NAMES`.
        base_url: Optional endpoint override.
        http_client: Optional shared ``httpx.AsyncClient``.
        timeout: Request timeout in seconds.

    Raises:
        ValueError: If *name* is not a known provider.
    """
    key = name.lower()
    if key == "openai":
        return OpenAIResponsesProvider(base_url, http_client, timeout)
    if key == "anthropic":
        return AnthropicProvider(base_url, http_client, timeout)
    if key == "google":
        return GoogleProvider(base_url, http_client, timeout)
    if key == "cohere":
        return CohereProvider(base_url, http_client, timeout)
    if key == "openrouter":
        return OpenAICompatibleProvider(
            base_url or OPENROUTER_BASE_URL, http_client, timeout, name="openrouter"
        )
    if key == "openai_compatible":
        return OpenAICompatibleProvider(base_url, http_client, timeout)
    if key == "poe":
        return PoeProvider(base_url, http_client, timeout)
    raise ValueError(f"Unknown provider {name!r}; expected one of {', '.join(PROVIDER_NAMES)}")


__all__ = [
    "PROVIDER_NAMES",
    "AnthropicProvider",
    "CohereProvider",
    "GoogleProvider",
    "LLMAPIError",
    "LLMConnectionError",
    "LLMError",
    "LLMRateLimitError",
    "OpenAICompatibleProvider",
    "OpenAIResponsesProvider",
    "PoeProvider",
    "ProviderAdapter",
    "ProviderRequest",
    "StreamAccumulator",
    "StreamingProvider",
    "ToolCallBuffer",
    "create_provider",
]
