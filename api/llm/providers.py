"""
Provider registry and factory.

Adding a backend means adding one ``ProviderProfile``; pricing, key lookup
and construction all read from ``PROVIDER_REGISTRY``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Literal, Optional

import structlog

from api.errors import ProviderConfigurationError
from api.llm.anthropic_provider import AnthropicProvider
from api.llm.base import LLMProvider
from api.llm.embeddings import EmbeddingProvider, OpenAIEmbeddingProvider
from api.llm.openai_provider import OpenAICompatibleProvider
from libs.common.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TokenPricing:
    """USD per million tokens."""

    input_per_million: float
    input_cache_hit_per_million: float
    output_per_million: float


@dataclass(frozen=True)
class ProviderProfile:
    type: Literal["openai-compatible", "anthropic"]
    base_url: str
    default_model: str
    api_key_env_var: str
    supports_embedding: bool
    pricing: TokenPricing


PROVIDER_REGISTRY: Dict[str, ProviderProfile] = {
    "deepseek": ProviderProfile(
        type="openai-compatible",
        base_url="https://api.deepseek.com",
        default_model="deepseek-chat",
        api_key_env_var="DEEPSEEK_API_KEY",
        supports_embedding=False,
        pricing=TokenPricing(0.28, 0.028, 0.42),
    ),
    "openai": ProviderProfile(
        type="openai-compatible",
        base_url="https://api.openai.com/v1",
        default_model="gpt-4o",
        api_key_env_var="OPENAI_API_KEY",
        supports_embedding=True,
        pricing=TokenPricing(2.50, 1.25, 10.00),
    ),
    "openai-mini": ProviderProfile(
        type="openai-compatible",
        base_url="https://api.openai.com/v1",
        default_model="gpt-4o-mini",
        api_key_env_var="OPENAI_API_KEY",
        supports_embedding=True,
        pricing=TokenPricing(0.15, 0.075, 0.60),
    ),
    "anthropic": ProviderProfile(
        type="anthropic",
        base_url="https://api.anthropic.com",
        default_model="claude-sonnet-4-20250514",
        api_key_env_var="ANTHROPIC_API_KEY",
        supports_embedding=False,
        pricing=TokenPricing(3.00, 0.30, 15.00),
    ),
}


def get_provider_pricing(name: str) -> TokenPricing:
    """Pricing for ``name``; unknown providers are priced like deepseek."""
    profile = PROVIDER_REGISTRY.get(name) or PROVIDER_REGISTRY["deepseek"]
    return profile.pricing


def detect_available_provider() -> Optional[str]:
    """First registered provider whose API key is present in the environment."""
    for name, profile in PROVIDER_REGISTRY.items():
        if os.getenv(profile.api_key_env_var):
            return name
    return None


def create_llm_provider(
    settings: Optional[Settings] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    api_key: Optional[str] = None,
) -> LLMProvider:
    """
    Build the chat provider selected by settings.

    Args:
        settings: Settings to read defaults from
        provider: Registry name overriding ``settings.ai_provider``
        model: Model overriding the profile default
        api_key: Key overriding the profile's environment variable

    Raises:
        ProviderConfigurationError: Unknown provider or missing API key
    """
    settings = settings or get_settings()
    name = provider or settings.ai_provider
    profile = PROVIDER_REGISTRY.get(name)
    if profile is None:
        raise ProviderConfigurationError(f"Unknown LLM provider: {name}")

    key = api_key or os.getenv(profile.api_key_env_var)
    if not key:
        raise ProviderConfigurationError(
            f"{profile.api_key_env_var} is not set; cannot use provider '{name}'"
        )

    resolved_model = model or settings.ai_model or profile.default_model
    logger.info("LLM provider configured", provider=name, model=resolved_model)

    if profile.type == "anthropic":
        return AnthropicProvider(model=resolved_model, api_key=key)
    return OpenAICompatibleProvider(
        model=resolved_model,
        api_key=key,
        base_url=profile.base_url,
        provider_name=name,
    )


def create_embedding_provider(settings: Optional[Settings] = None) -> Optional[EmbeddingProvider]:
    """OpenAI embeddings when a key exists, else None (lexical search only)."""
    settings = settings or get_settings()
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        logger.info("No embedding backend configured, GraphRAG uses token search")
        return None
    return OpenAIEmbeddingProvider(api_key=api_key, model=settings.embedding_model)
