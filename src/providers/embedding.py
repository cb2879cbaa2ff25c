"""Embedding providers: text -> fixed-dimension vector.

The memory core consumes these through EmbeddingProvider only. Timeouts and
retries are applied by the caller (src.infra.retry), not here.
"""

from __future__ import annotations

import hashlib
import math
import re
from abc import ABC, abstractmethod

import structlog
from openai import AsyncOpenAI

from src.infra.errors import DependencyError

logger = structlog.get_logger()

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class EmbeddingProvider(ABC):
    """Abstract base class for embedding backends."""

    @property
    @abstractmethod
    def model(self) -> str:
        """Identifier of the vector space produced by this provider."""
        ...

    @property
    @abstractmethod
    def dimension(self) -> int:
        ...

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the embedding for text. May raise or time out."""
        ...


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings via the OpenAI SDK (any OpenAI-compatible endpoint)."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "text-embedding-3-small",
        dimension: int = 1536,
        base_url: str | None = None,
    ) -> None:
        # SDK-level retries are disabled; call_with_retry owns the retry budget.
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)
        self._model = model
        self._dimension = dimension

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        logger.debug("embedding_request", model=self._model, chars=len(text))
        response = await self._client.embeddings.create(model=self._model, input=text)
        if not response.data:
            raise DependencyError(f"Empty embedding response from {self._model}")
        vector = list(response.data[0].embedding)
        if len(vector) != self._dimension:
            raise DependencyError(
                f"Embedding dimension mismatch from {self._model}: "
                f"expected {self._dimension}, got {len(vector)}"
            )
        return vector


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic feature-hashing embeddings for offline use and tests.

    Each lowercase word token is hashed to a bucket and a sign; texts that share
    words therefore get a positive cosine similarity. No network access.
    """

    def __init__(self, dimension: int = 256) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self._dimension = dimension

    @property
    def model(self) -> str:
        return f"hash-{self._dimension}"

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        vector = [0.0] * self._dimension
        tokens = _TOKEN_RE.findall(text.lower())
        for token in tokens:
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "big") % self._dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0.0:
            # Blank or punctuation-only text: fixed unit vector keeps the index well-defined.
            vector[0] = 1.0
            return vector
        return [v / norm for v in vector]
