"""Text-generation providers for the taxonomy jobs.

Currently supported providers:
- OpenAI (gpt-4o-mini, gpt-4o, etc.)
- Anthropic (claude-sonnet-4-5, claude-3-5-haiku, etc.)

Usage:
    from gradetags.taxonomy.providers import create_provider

    provider = create_provider(
        provider_type="openai",
        api_key="sk-xxx",
        model="gpt-4o-mini",
    )

    response = provider.complete(
        system_prompt="You are a teaching analytics assistant...",
        user_prompt="Cluster these issues...",
    )
"""

import logging
from typing import Literal, Optional

from gradetags.config import Settings, settings
from gradetags.taxonomy.providers.base import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)

ProviderType = Literal["openai", "anthropic"]


def create_provider(
    provider_type: ProviderType,
    api_key: str,
    model: str | None = None,
    timeout: float = 45.0,
) -> LLMProvider:
    """Factory function to create text-generation providers.

    Args:
        provider_type: The provider to use ("openai" or "anthropic")
        api_key: API key for the provider
        model: Optional model override (uses provider default if not specified)
        timeout: Soft timeout per request in seconds

    Returns:
        Configured LLMProvider instance

    Raises:
        ValueError: If provider_type is unknown or api_key is missing
    """
    if not api_key:
        raise ValueError(f"API key is required for {provider_type} provider")

    if provider_type == "openai":
        from gradetags.taxonomy.providers.openai_provider import OpenAIProvider

        return OpenAIProvider(
            api_key=api_key,
            model=model or "gpt-4o-mini",
            timeout=timeout,
        )

    elif provider_type == "anthropic":
        from gradetags.taxonomy.providers.anthropic_provider import AnthropicProvider

        return AnthropicProvider(
            api_key=api_key,
            model=model or "claude-sonnet-4-5-20250514",
            timeout=timeout,
        )

    else:
        raise ValueError(
            f"Unknown provider type: {provider_type}. "
            f"Supported providers: openai, anthropic"
        )


def provider_from_settings(config: Optional[Settings] = None) -> LLMProvider:
    """Build the provider named by ``llm_provider`` in settings."""
    config = config or settings
    provider_type = config.llm_provider.lower()
    if provider_type == "anthropic":
        api_key, model = config.anthropic_api_key, config.anthropic_model
    else:
        api_key, model = config.openai_api_key, config.openai_model
    return create_provider(
        provider_type=provider_type,
        api_key=api_key,
        model=model,
        timeout=config.llm_timeout_seconds,
    )


__all__ = [
    "LLMProvider",
    "LLMResponse",
    "ProviderType",
    "create_provider",
    "provider_from_settings",
]
