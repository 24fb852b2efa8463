"""Chunk store - persistence of policy chunks and their embeddings.

The store never commits. Every write runs inside the caller's session
transaction, so `replace_chunks` (delete + insert) becomes visible to other
readers all at once when the caller commits, or not at all on rollback.
"""

import asyncio
from collections.abc import Awaitable
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import UUID, uuid4

from pgvector.sqlalchemy import Vector
from sqlalchemy import Float, Select, bindparam, delete, func, literal, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.models import Policy as PolicyDB
from backend.app.db.models import PolicyCategory as PolicyCategoryDB
from backend.app.db.models import PolicyChunk as PolicyChunkDB
from backend.app.models.policies import (
    ChunkStatistics,
    PolicyChunk,
    PolicyChunkCount,
    PolicyRef,
    PolicyStatus,
    SimilarityResult,
    TextChunk,
)
from backend.app.policies.errors import DimensionMismatch, StorageError

T = TypeVar("T")


async def run_storage(awaitable: Awaitable[T], operation: str, timeout_sec: float) -> T:
    """Await a database call, mapping timeouts and driver errors to StorageError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_sec)
    except asyncio.TimeoutError as e:
        raise StorageError(f"{operation} timed out after {timeout_sec:.1f}s") from e
    except SQLAlchemyError as e:
        raise StorageError(f"{operation} failed: {type(e).__name__}") from e


def chunk_from_row(row: PolicyChunkDB, *, with_embedding: bool = True) -> PolicyChunk:
    """Convert ORM row to domain model."""
    embedding = None
    if with_embedding and row.embedding is not None:
        # pgvector returns numpy arrays, JSON returns lists
        embedding = [float(x) for x in row.embedding]

    return PolicyChunk(
        chunk_id=row.id,
        policy_id=row.policy_id,
        chunk_index=row.chunk_index,
        content=row.content,
        start_index=row.start_index,
        end_index=row.end_index,
        metadata=row.metadata_ or {},
        embedding=embedding,
        created_at=row.created_at,
    )


class ChunkStore:
    """Bulk persistence of chunks keyed by owning policy."""

    def __init__(self, session: AsyncSession, *, dimensions: int, timeout_ms: int = 5000):
        self._session = session
        self.dimensions = dimensions
        self.timeout_sec = timeout_ms / 1000.0

    @property
    def supports_vector_search(self) -> bool:
        """True when similarity can be computed in SQL (pgvector)."""
        return self._session.get_bind().dialect.name == "postgresql"

    async def create_chunks(
        self,
        policy_id: UUID,
        chunks: list[TextChunk],
        embeddings: list[list[float]],
    ) -> list[PolicyChunk]:
        """Insert one row per chunk with its embedding.

        Raises:
            ValueError: If chunks and embeddings differ in length
            DimensionMismatch: If any embedding width differs from the store's
            StorageError: On connectivity loss or timeout
        """
        self._validate(chunks, embeddings)

        created_at = datetime.now(timezone.utc)
        rows = [
            PolicyChunkDB(
                id=uuid4(),
                policy_id=policy_id,
                chunk_index=chunk.index,
                content=chunk.content,
                start_index=chunk.start_index,
                end_index=chunk.end_index,
                metadata_=chunk.metadata(),
                embedding=list(embedding),
                created_at=created_at,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]
        self._session.add_all(rows)
        await self._run(self._session.flush(), "create_chunks")

        return [chunk_from_row(row) for row in rows]

    async def get_chunks_for_policy(
        self, policy_id: UUID, *, with_embeddings: bool = True
    ) -> list[PolicyChunk]:
        """Return all chunks for a policy ordered by chunk_index."""
        stmt = (
            select(PolicyChunkDB)
            .where(PolicyChunkDB.policy_id == policy_id)
            .order_by(PolicyChunkDB.chunk_index)
        )
        result = await self._run(self._session.execute(stmt), "get_chunks_for_policy")
        return [
            chunk_from_row(row, with_embedding=with_embeddings) for row in result.scalars().all()
        ]

    async def delete_chunks_for_policy(self, policy_id: UUID) -> int:
        """Delete all chunks for a policy. Deleting nothing is not an error."""
        stmt = delete(PolicyChunkDB).where(PolicyChunkDB.policy_id == policy_id)
        result = await self._run(self._session.execute(stmt), "delete_chunks_for_policy")
        return result.rowcount or 0

    async def replace_chunks(
        self,
        policy_id: UUID,
        chunks: list[TextChunk],
        embeddings: list[list[float]],
    ) -> list[PolicyChunk]:
        """Delete the existing chunk set and insert the new one in the same transaction."""
        # Validate before deleting so a bad batch never empties the policy
        self._validate(chunks, embeddings)
        await self.delete_chunks_for_policy(policy_id)
        return await self.create_chunks(policy_id, chunks, embeddings)

    async def chunk_statistics(self, tenant_id: str | None = None) -> ChunkStatistics:
        """Total chunk count and per-policy counts, largest first."""
        chunk_count = func.count(PolicyChunkDB.id).label("chunk_count")
        stmt = (
            select(PolicyChunkDB.policy_id, PolicyDB.title, chunk_count)
            .join(PolicyDB, PolicyDB.id == PolicyChunkDB.policy_id)
            .group_by(PolicyChunkDB.policy_id, PolicyDB.title)
            .order_by(chunk_count.desc(), PolicyDB.title)
        )
        if tenant_id is not None:
            stmt = stmt.where(PolicyDB.tenant_id == tenant_id)

        result = await self._run(self._session.execute(stmt), "chunk_statistics")
        by_policy = [
            PolicyChunkCount(policy_id=policy_id, title=title, chunk_count=count)
            for policy_id, title, count in result.all()
        ]
        return ChunkStatistics(
            total_chunks=sum(item.chunk_count for item in by_policy),
            by_policy=by_policy,
        )

    async def fetch_candidates(
        self, tenant_id: str | None = None
    ) -> list[tuple[PolicyChunk, PolicyRef]]:
        """All searchable chunks joined with their policy, in storage order.

        Storage order is newest policy first, then chunk_index; it is the
        tie-break order for equal similarity scores.
        """
        stmt = self._candidate_select()
        if tenant_id is not None:
            stmt = stmt.where(PolicyDB.tenant_id == tenant_id)
        stmt = stmt.order_by(
            PolicyDB.created_at.desc(), PolicyDB.id, PolicyChunkDB.chunk_index
        )

        result = await self._run(self._session.execute(stmt), "fetch_candidates")
        return [
            (chunk_from_row(row), PolicyRef(policy_id=row.policy_id, title=title, category=category))
            for row, title, category in result.all()
        ]

    async def nearest_chunks(
        self,
        query_vector: list[float],
        *,
        similarity_threshold: float,
        limit: int,
        tenant_id: str | None = None,
    ) -> list[SimilarityResult]:
        """Rank chunks in SQL with pgvector's cosine distance operator."""
        query_param = bindparam("query_embedding", query_vector, type_=Vector(self.dimensions))
        distance = PolicyChunkDB.embedding.op("<=>", return_type=Float)(query_param)
        # Zero-norm vectors give NaN distance; treat them as orthogonal
        similarity = 1.0 - func.coalesce(func.nullif(distance, literal("NaN").cast(Float)), 1.0)

        stmt = self._candidate_select().add_columns(similarity.label("similarity"))
        stmt = stmt.where(similarity >= similarity_threshold)
        if tenant_id is not None:
            stmt = stmt.where(PolicyDB.tenant_id == tenant_id)
        stmt = stmt.order_by(
            similarity.desc(),
            PolicyDB.created_at.desc(),
            PolicyDB.id,
            PolicyChunkDB.chunk_index,
        ).limit(limit)

        result = await self._run(self._session.execute(stmt), "nearest_chunks")
        return [
            SimilarityResult(
                chunk=chunk_from_row(row, with_embedding=False),
                similarity=float(score),
                policy=PolicyRef(policy_id=row.policy_id, title=title, category=category),
            )
            for row, title, category, score in result.all()
        ]

    def _candidate_select(self) -> Select[Any]:
        return (
            select(PolicyChunkDB, PolicyDB.title, PolicyCategoryDB.name)
            .join(PolicyDB, PolicyDB.id == PolicyChunkDB.policy_id)
            .join(PolicyCategoryDB, PolicyCategoryDB.id == PolicyDB.category_id)
            .where(PolicyDB.status == PolicyStatus.ACTIVE.value)
        )

    def _validate(self, chunks: list[TextChunk], embeddings: list[list[float]]) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError(
                f"got {len(chunks)} chunks but {len(embeddings)} embeddings"
            )
        for embedding in embeddings:
            if len(embedding) != self.dimensions:
                raise DimensionMismatch(self.dimensions, len(embedding))

    async def _run(self, awaitable: Awaitable[T], operation: str) -> T:
        return await run_storage(awaitable, operation, self.timeout_sec)
