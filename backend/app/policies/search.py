"""Similarity search over stored policy chunks."""

import logging
import time

import numpy as np

from backend.app.embeddings.client import Embedder
from backend.app.models.policies import (
    PolicyChunk,
    PolicyMatch,
    PolicyRef,
    SearchOutcome,
    SimilarityResult,
)
from backend.app.policies.errors import DimensionMismatch, EmbeddingUnavailable
from backend.app.policies.fallback import keyword_relevance
from backend.app.policies.store import ChunkStore
from backend.app.utils.logging import StructuredPipelineLogger
from backend.app.utils.metrics import PrometheusPipelineMetrics

logger = logging.getLogger(__name__)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 when either vector has zero norm."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def _rank(
    scored: list[tuple[PolicyChunk, PolicyRef, float]],
    *,
    similarity_threshold: float,
    limit: int,
) -> list[SimilarityResult]:
    """Threshold, stable-sort by score descending, truncate."""
    kept = [item for item in scored if item[2] >= similarity_threshold]
    # sorted() is stable: equal scores keep storage order
    kept = sorted(kept, key=lambda item: -item[2])[:limit]
    return [
        SimilarityResult(chunk=chunk, similarity=score, policy=policy)
        for chunk, policy, score in kept
    ]


class SimilaritySearchEngine:
    """Ranks stored chunks against a query and joins owning-policy metadata.

    Strict about vector width (DimensionMismatch propagates), lenient about
    provider outages: when the embedder raises EmbeddingUnavailable the
    search degrades to keyword overlap instead of failing.
    """

    def __init__(
        self,
        store: ChunkStore,
        embedder: Embedder,
        *,
        metrics: PrometheusPipelineMetrics | None = None,
        pipeline_logger: StructuredPipelineLogger | None = None,
    ):
        self.store = store
        self.embedder = embedder
        self.metrics = metrics or PrometheusPipelineMetrics()
        self.pipeline_logger = pipeline_logger or StructuredPipelineLogger()

    async def search(
        self,
        query: str,
        *,
        limit: int = 5,
        similarity_threshold: float = 0.7,
        tenant_id: str | None = None,
    ) -> SearchOutcome:
        """Return the top `limit` chunks scoring at least `similarity_threshold`.

        Args:
            query: Natural-language search text
            limit: Maximum number of results
            similarity_threshold: Minimum score to include
            tenant_id: Restrict candidates to this tenant's policies

        Returns:
            SearchOutcome with results ordered by similarity descending
        """
        if limit <= 0 or not query.strip():
            return SearchOutcome(query=query, results=[], method="vector_similarity")

        start = time.perf_counter()
        try:
            query_vector = await self.embedder.embed(query)
        except EmbeddingUnavailable as e:
            results = await self._keyword_search(
                query, limit=limit, similarity_threshold=similarity_threshold, tenant_id=tenant_id
            )
            self._finish("keyword_fallback", start, tenant_id, len(results), error_reason=str(e))
            return SearchOutcome(query=query, results=results, method="keyword_fallback")

        if self.store.supports_vector_search and np.linalg.norm(query_vector) > 0:
            results = await self.store.nearest_chunks(
                query_vector,
                similarity_threshold=similarity_threshold,
                limit=limit,
                tenant_id=tenant_id,
            )
        else:
            results = await self._rank_in_process(
                query_vector,
                limit=limit,
                similarity_threshold=similarity_threshold,
                tenant_id=tenant_id,
            )

        self._finish("vector_similarity", start, tenant_id, len(results))
        return SearchOutcome(query=query, results=results, method="vector_similarity")

    async def _rank_in_process(
        self,
        query_vector: list[float],
        *,
        limit: int,
        similarity_threshold: float,
        tenant_id: str | None,
    ) -> list[SimilarityResult]:
        candidates = await self.store.fetch_candidates(tenant_id)
        if not candidates:
            return []

        matrix = np.asarray([chunk.embedding or [] for chunk, _ in candidates], dtype=float)
        query = np.asarray(query_vector, dtype=float)
        if matrix.ndim != 2 or matrix.shape[1] != query.shape[0]:
            width = matrix.shape[1] if matrix.ndim == 2 else 0
            raise DimensionMismatch(width, query.shape[0])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, (matrix @ query) / norms, 0.0)
        scores = np.clip(scores, -1.0, 1.0)

        scored = [
            (chunk.model_copy(update={"embedding": None}), policy, float(score))
            for (chunk, policy), score in zip(candidates, scores)
        ]
        return _rank(scored, similarity_threshold=similarity_threshold, limit=limit)

    async def _keyword_search(
        self,
        query: str,
        *,
        limit: int,
        similarity_threshold: float,
        tenant_id: str | None,
    ) -> list[SimilarityResult]:
        candidates = await self.store.fetch_candidates(tenant_id)
        scored = [
            (
                chunk.model_copy(update={"embedding": None}),
                policy,
                keyword_relevance(query, chunk.content),
            )
            for chunk, policy in candidates
        ]
        return _rank(scored, similarity_threshold=similarity_threshold, limit=limit)

    def _finish(
        self,
        method: str,
        start: float,
        tenant_id: str | None,
        result_count: int,
        error_reason: str | None = None,
    ) -> None:
        latency_ms = (time.perf_counter() - start) * 1000
        self.metrics.inc_search(method)
        self.metrics.record_latency("search", latency_ms)
        self.pipeline_logger.log_stage(
            "search",
            "success" if method == "vector_similarity" else "fallback",
            latency_ms,
            tenant_id=tenant_id,
            error_reason=error_reason,
            method=method,
            results=result_count,
        )


def group_by_policy(results: list[SimilarityResult]) -> list[PolicyMatch]:
    """Aggregate chunk hits per policy.

    Relevance is the best chunk similarity; chunks are deduplicated and put
    back in document order. Policies are ordered by relevance descending,
    first appearance breaking ties.
    """
    groups: dict[str, tuple[PolicyRef, float, dict[str, PolicyChunk]]] = {}

    for result in results:
        key = str(result.policy.policy_id)
        if key not in groups:
            groups[key] = (result.policy, result.similarity, {})
        policy, relevance, chunks = groups[key]
        chunks.setdefault(str(result.chunk.chunk_id), result.chunk)
        groups[key] = (policy, max(relevance, result.similarity), chunks)

    matches = [
        PolicyMatch(
            policy=policy,
            relevance=relevance,
            chunks=sorted(chunks.values(), key=lambda c: c.chunk_index),
        )
        for policy, relevance, chunks in groups.values()
    ]
    return sorted(matches, key=lambda m: -m.relevance)
