"""Embedding clients and the checked embedder gateway.

Security: Reads API key from settings only, never hardcoded.
Provides a deterministic hashing model when no key is present for testing.
"""

import asyncio
import hashlib
import logging
import math
import re
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Protocol

from openai import AsyncOpenAI, RateLimitError

from backend.app.config import Settings
from backend.app.embeddings.breaker import ProviderQuotaExceeded, QuotaBreaker
from backend.app.policies.errors import DimensionMismatch, EmbeddingUnavailable
from backend.app.utils.metrics import PrometheusPipelineMetrics

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class EmbeddingModel(Protocol):
    """Protocol for embedding model implementations."""

    @property
    def dimensions(self) -> int:
        """Fixed width of every vector this model returns."""
        ...

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single search query."""
        ...

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of document chunks, preserving order."""
        ...


class DeterministicHashEmbeddingModel:
    """Deterministic bag-of-words model (no API key required).

    Each lowercase token is hashed into one of `dimensions` buckets and the
    count vector is L2-normalized. Empty text maps to the zero vector.
    """

    def __init__(self, dimensions: int = 1024):
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _vector(self, text: str) -> list[float]:
        counts = [0.0] * self._dimensions
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).hexdigest()
            counts[int(digest, 16) % self._dimensions] += 1.0

        norm = math.sqrt(sum(c * c for c in counts))
        if norm == 0:
            return counts
        return [c / norm for c in counts]

    async def embed_query(self, text: str) -> list[float]:
        return self._vector(text)

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._vector(text) for text in texts]


class OpenAIEmbeddingModel:
    """OpenAI-compatible embeddings endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = 1024,
        base_url: str | None = None,
    ):
        """Initialize embeddings client.

        Args:
            api_key: Provider API key (read from environment)
            model: Embedding model name
            dimensions: Expected vector width
            base_url: Override for OpenAI-compatible providers
        """
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.model = model
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed_documents([text])
        return vectors[0]

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        kwargs: dict[str, object] = {"model": self.model, "input": texts}
        # Only the text-embedding-3 family accepts a requested width
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions

        try:
            response = await self.client.embeddings.create(**kwargs)  # type: ignore[call-overload]
        except RateLimitError as e:
            raise ProviderQuotaExceeded(str(e)) from e

        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]


class Embedder:
    """Checked gateway in front of an EmbeddingModel.

    Every call is bounded by a timeout, guarded by the shared quota breaker,
    and every returned vector is checked against the model's fixed width.
    Provider failures surface as EmbeddingUnavailable; width drift surfaces
    as DimensionMismatch.
    """

    def __init__(
        self,
        model: EmbeddingModel,
        *,
        breaker: QuotaBreaker | None = None,
        timeout_ms: int = 10000,
        metrics: PrometheusPipelineMetrics | None = None,
    ):
        self.model = model
        self.breaker = breaker
        self.timeout_sec = timeout_ms / 1000.0
        self.metrics = metrics or PrometheusPipelineMetrics()

    @property
    def dimensions(self) -> int:
        return self.model.dimensions

    async def embed(self, text: str) -> list[float]:
        """Embed a query string."""
        vectors = await self._call("embed_query", 1, lambda: self._single(text))
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed document chunks in one provider call."""
        if not texts:
            return []
        return await self._call("embed_documents", len(texts), lambda: self.model.embed_documents(texts))

    async def _single(self, text: str) -> list[list[float]]:
        return [await self.model.embed_query(text)]

    async def _call(
        self,
        operation: str,
        expected_count: int,
        fn: Callable[[], Awaitable[list[list[float]]]],
    ) -> list[list[float]]:
        now = datetime.now(timezone.utc)
        if self.breaker and self.breaker.is_open(now):
            self.metrics.inc_embedding_error("circuit_open")
            raise EmbeddingUnavailable(f"embedding provider circuit '{self.breaker.name}' is open")

        start = time.perf_counter()
        try:
            vectors = await asyncio.wait_for(fn(), timeout=self.timeout_sec)
        except asyncio.TimeoutError as e:
            self._record_failure("timeout")
            raise EmbeddingUnavailable(
                f"{operation} timed out after {self.timeout_sec:.1f}s"
            ) from e
        except ProviderQuotaExceeded as e:
            if self.breaker:
                self.breaker.record_quota_exhausted(datetime.now(timezone.utc))
            self.metrics.inc_embedding_error("quota_exhausted")
            logger.warning(f"Embedding quota exhausted, breaker open until reset: {e}")
            raise EmbeddingUnavailable(f"embedding quota exhausted: {e}") from e
        except Exception as e:
            self._record_failure(type(e).__name__)
            raise EmbeddingUnavailable(f"{operation} failed: {e}") from e
        finally:
            self.metrics.record_latency(operation, (time.perf_counter() - start) * 1000)

        if len(vectors) != expected_count:
            self._record_failure("bad_response")
            raise EmbeddingUnavailable(
                f"provider returned {len(vectors)} vectors for {expected_count} inputs"
            )

        if self.breaker:
            self.breaker.record_success()

        for vector in vectors:
            if len(vector) != self.dimensions:
                raise DimensionMismatch(self.dimensions, len(vector))

        return vectors

    def _record_failure(self, reason: str) -> None:
        if self.breaker:
            self.breaker.record_failure(datetime.now(timezone.utc))
        self.metrics.inc_embedding_error(reason)
        logger.warning(f"Embedding call failed: {reason}")


def get_embedding_model(settings: Settings) -> EmbeddingModel:
    """Factory function to get appropriate embedding model based on config.

    Returns:
        OpenAIEmbeddingModel if API key is configured, DeterministicHashEmbeddingModel otherwise
    """
    api_key = settings.openai_api_key

    if api_key and api_key.get_secret_value():
        logger.info(f"Using embedding model {settings.embedding_model}")
        return OpenAIEmbeddingModel(
            api_key=api_key.get_secret_value(),
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            base_url=settings.embedding_base_url,
        )
    else:
        logger.warning("No embedding API key configured, using deterministic hashing model")
        return DeterministicHashEmbeddingModel(dimensions=settings.embedding_dimensions)
