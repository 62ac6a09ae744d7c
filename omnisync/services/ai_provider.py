"""Embedding provider abstraction.

OpenAI embeddings when an API key is configured, otherwise a local
feature-hashing embedder so the pipeline runs without network access.
"""

import hashlib
import logging
import math
import re
from abc import ABC, abstractmethod

import httpx

from omnisync.core.config import settings

logger = logging.getLogger(__name__)

HASHING_DIMENSIONS = 256
_TOKEN_RE = re.compile(r"[a-z0-9]+")


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    model: str

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per input text."""
        pass


class HashingEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-words feature hashing, L2 normalized."""

    def __init__(self, dimensions: int = HASHING_DIMENSIONS):
        self.dimensions = dimensions
        self.model = f"hashing-{dimensions}"

    def _embed_one(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode()).digest()
            index = int.from_bytes(digest[:4], "big") % self.dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[index] += sign
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [self._embed_one(text) for text in texts]


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings API provider."""

    def __init__(self, api_key: str, model: str | None = None):
        self.api_key = api_key
        self.model = model or settings.EMBEDDING_MODEL
        self.base_url = "https://api.openai.com/v1"

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        async with httpx.AsyncClient(timeout=60.0) as client:
            response = await client.post(
                f"{self.base_url}/embeddings",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={"model": self.model, "input": texts},
            )
            response.raise_for_status()
            data = response.json()

        items = sorted(data.get("data", []), key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in items]


def get_embedding_provider() -> EmbeddingProvider:
    """Get the configured embedding provider."""
    if settings.OPENAI_API_KEY:
        return OpenAIEmbeddingProvider(settings.OPENAI_API_KEY)
    return HashingEmbeddingProvider()
