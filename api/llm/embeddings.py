"""Embedding providers for vector-assisted node search."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

import structlog
from openai import AsyncOpenAI

logger = structlog.get_logger(__name__)

MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

MAX_INPUT_CHARS = 8000


class EmbeddingProvider(ABC):
    @abstractmethod
    async def generate_embedding(self, text: str) -> List[float]:
        ...

    @abstractmethod
    def get_dimension(self) -> int:
        ...

    @abstractmethod
    def get_model_name(self) -> str:
        ...


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.client = client or AsyncOpenAI(api_key=api_key)

    async def generate_embedding(self, text: str) -> List[float]:
        response = await self.client.embeddings.create(
            model=self.model,
            input=text[:MAX_INPUT_CHARS],
        )
        return list(response.data[0].embedding)

    def get_dimension(self) -> int:
        return MODEL_DIMENSIONS.get(self.model, 1536)

    def get_model_name(self) -> str:
        return self.model
