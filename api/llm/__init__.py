"""LLM providers normalized to one streaming chunk protocol."""

from api.llm.base import CancelToken, LLMProvider, LLMResponse
from api.llm.providers import create_embedding_provider, create_llm_provider

__all__ = [
    "CancelToken",
    "LLMProvider",
    "LLMResponse",
    "create_embedding_provider",
    "create_llm_provider",
]
