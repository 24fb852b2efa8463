"""Policy document lifecycle - ingest, re-ingest, archive, delete.

Recovery policy: embed before write, commit once. Chunking and embedding
happen before any row is touched; the document row, its version bump and its
chunk set are then written in a single transaction. Any failure rolls the
transaction back, so an ingest leaves no document behind and a re-ingest
leaves the previous content and chunks authoritative.
"""

import time
from collections.abc import Awaitable
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy import Executable, Result, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.models import Policy as PolicyDB
from backend.app.db.models import PolicyCategory as PolicyCategoryDB
from backend.app.embeddings.client import Embedder
from backend.app.models.policies import (
    IngestResult,
    PolicyDetail,
    PolicyStatus,
    PolicySummary,
    ReingestResult,
    TextChunk,
)
from backend.app.policies.chunker import DEFAULT_CHUNK_SIZE, DEFAULT_OVERLAP, chunk_text
from backend.app.policies.errors import (
    EmbeddingUnavailable,
    IngestionError,
    InvalidConfiguration,
    PolicyNotFound,
    StorageError,
    VersionConflict,
)
from backend.app.policies.store import ChunkStore, run_storage
from backend.app.utils.logging import StructuredPipelineLogger
from backend.app.utils.metrics import PrometheusPipelineMetrics

T = TypeVar("T")

DEFAULT_CATEGORY = "General Policies"
SUMMARY_MAX_CHARS = 200

TAG_KEYWORDS: dict[str, list[str]] = {
    "remote-work": ["remote", "work from home", "telecommute"],
    "management-only": ["management", "supervisor", "confidential"],
    "compliance": ["legal", "compliance", "regulation"],
    "benefits": ["health", "insurance", "retirement"],
    "time-off": ["vacation", "pto", "sick leave", "holiday"],
    "payroll": ["salary", "payroll", "compensation", "bonus"],
}


def extract_tags(text: str, category: str) -> list[str]:
    """Category name plus keyword-derived HR tags."""
    lower_text = text.lower()
    tags = [category]
    for tag, keywords in TAG_KEYWORDS.items():
        if any(keyword in lower_text for keyword in keywords):
            tags.append(tag)
    return tags


def summarize(content: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    """First non-empty paragraph, truncated."""
    for paragraph in content.replace("\r\n", "\n").split("\n\n"):
        paragraph = " ".join(paragraph.split())
        if paragraph:
            if len(paragraph) <= max_chars:
                return paragraph
            return paragraph[: max_chars - 3] + "..."
    return ""


def summary_from_row(policy: PolicyDB) -> PolicySummary:
    """Convert ORM row to domain model."""
    return PolicySummary(
        policy_id=policy.id,
        title=policy.title,
        category=policy.category.name,
        tenant_id=policy.tenant_id,
        author_id=policy.author_id,
        summary=policy.summary,
        status=PolicyStatus(policy.status),
        version=policy.version,
        effective_date=policy.effective_date,
        metadata=policy.metadata_ or {},
        created_at=policy.created_at,
        updated_at=policy.updated_at,
    )


class PolicyLifecycleManager:
    """Coordinates policy rows with chunk (re)generation."""

    def __init__(
        self,
        session: AsyncSession,
        embedder: Embedder,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        overlap: int = DEFAULT_OVERLAP,
        storage_timeout_ms: int = 5000,
        metrics: PrometheusPipelineMetrics | None = None,
        pipeline_logger: StructuredPipelineLogger | None = None,
    ):
        if chunk_size <= 0 or overlap < 0 or overlap >= chunk_size:
            raise InvalidConfiguration(
                f"invalid chunking: chunk_size={chunk_size}, overlap={overlap}"
            )
        self.session = session
        self.embedder = embedder
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.store = ChunkStore(
            session, dimensions=embedder.dimensions, timeout_ms=storage_timeout_ms
        )
        self.metrics = metrics or PrometheusPipelineMetrics()
        self.pipeline_logger = pipeline_logger or StructuredPipelineLogger()

    async def ingest(
        self,
        *,
        title: str,
        content: str,
        category_name: str | None,
        tenant_id: str,
        author_id: str,
        metadata: dict[str, Any] | None = None,
        summary: str | None = None,
        effective_date: datetime | None = None,
    ) -> IngestResult:
        """Create a policy (version 1, ACTIVE) with its embedded chunk set.

        Raises:
            IngestionError: With stage chunking, embedding or storage
            DimensionMismatch: If the embedder returns vectors of the wrong width
        """
        start = time.perf_counter()
        category_name = (category_name or "").strip() or DEFAULT_CATEGORY

        chunks = self._chunk(content)
        embeddings = await self._embed(chunks, operation="ingest")

        policy_id = uuid4()
        now = datetime.now(timezone.utc)
        try:
            category = await self.find_or_create_category(category_name)
            policy = PolicyDB(
                id=policy_id,
                title=title,
                category_id=category.id,
                tenant_id=tenant_id,
                author_id=author_id,
                content=content,
                summary=summary or summarize(content),
                status=PolicyStatus.ACTIVE.value,
                version=1,
                effective_date=effective_date or now,
                metadata_={
                    **(metadata or {}),
                    "tags": extract_tags(content, category.name),
                    "uploaded_by": author_id,
                },
                created_at=now,
                updated_at=now,
            )
            self.session.add(policy)
            # Parent row must exist before chunk rows reference it
            await self._run(self.session.flush(), "insert_policy")
            await self.store.create_chunks(policy_id, chunks, embeddings)
            await self._run(self.session.commit(), "commit_ingest")
        except (StorageError, SQLAlchemyError) as e:
            await self.session.rollback()
            self._failed("ingest", start, tenant_id=tenant_id, reason=str(e))
            raise IngestionError("storage", f"could not save policy '{title}': {e}") from e
        except Exception:
            await self.session.rollback()
            raise

        latency_ms = (time.perf_counter() - start) * 1000
        self.metrics.inc_ingest("ingest", "success")
        self.metrics.record_latency("ingest", latency_ms)
        self.pipeline_logger.log_stage(
            "ingest",
            "success",
            latency_ms,
            policy_id=policy_id,
            tenant_id=tenant_id,
            chunks=len(chunks),
        )
        return IngestResult(policy_id=policy_id, chunk_count=len(chunks), version=1)

    async def reingest(
        self,
        policy_id: UUID,
        new_content: str,
        *,
        expected_version: int | None = None,
        tenant_id: str | None = None,
    ) -> ReingestResult:
        """Replace a policy's content, bump its version and rebuild its chunks.

        The version bump is conditional on the version read at the start, so
        two overlapping re-ingests of the same policy cannot both commit.

        Raises:
            PolicyNotFound: If the policy does not exist for the tenant
            VersionConflict: If the version changed (or differs from expected_version)
            IngestionError: With stage chunking, embedding or storage
        """
        start = time.perf_counter()
        try:
            policy = await self._load(policy_id, tenant_id)
        except StorageError as e:
            self._failed("reingest", start, policy_id=policy_id, reason=str(e))
            raise IngestionError("storage", f"could not load policy: {e}") from e
        read_version = policy.version
        if expected_version is not None and expected_version != read_version:
            raise VersionConflict(policy_id, expected_version, read_version)

        chunks = self._chunk(new_content)
        embeddings = await self._embed(chunks, operation="reingest")

        new_version = read_version + 1
        metadata = {
            **(policy.metadata_ or {}),
            "tags": extract_tags(new_content, policy.category.name),
        }
        try:
            stmt = (
                update(PolicyDB)
                .where(PolicyDB.id == policy_id, PolicyDB.version == read_version)
                .values(
                    {
                        PolicyDB.content: new_content,
                        PolicyDB.summary: summarize(new_content),
                        PolicyDB.version: new_version,
                        PolicyDB.metadata_: metadata,
                        PolicyDB.updated_at: datetime.now(timezone.utc),
                    }
                )
                .execution_options(synchronize_session=False)
            )
            result = await self._execute(stmt, "bump_version")
            if result.rowcount != 1:
                raise VersionConflict(policy_id, read_version)

            await self.store.replace_chunks(policy_id, chunks, embeddings)
            await self._run(self.session.commit(), "commit_reingest")
        except (StorageError, SQLAlchemyError) as e:
            await self.session.rollback()
            self._failed("reingest", start, policy_id=policy_id, reason=str(e))
            raise IngestionError("storage", f"could not replace chunks: {e}") from e
        except Exception:
            await self.session.rollback()
            raise

        latency_ms = (time.perf_counter() - start) * 1000
        self.metrics.inc_ingest("reingest", "success")
        self.metrics.record_latency("reingest", latency_ms)
        self.pipeline_logger.log_stage(
            "reingest",
            "success",
            latency_ms,
            policy_id=policy_id,
            chunks=len(chunks),
            version=new_version,
        )
        return ReingestResult(policy_id=policy_id, chunk_count=len(chunks), version=new_version)

    async def archive(self, policy_id: UUID, *, tenant_id: str | None = None) -> PolicySummary:
        """Move a policy to ARCHIVED, removing it from search. Idempotent."""
        policy = await self._load(policy_id, tenant_id)
        if policy.status != PolicyStatus.ARCHIVED.value:
            policy.status = PolicyStatus.ARCHIVED.value
            policy.updated_at = datetime.now(timezone.utc)
        # Build before commit; committed rows expire and cannot lazy-load under asyncio
        summary = summary_from_row(policy)
        try:
            await self._run(self.session.commit(), "archive")
        except StorageError:
            await self.session.rollback()
            raise
        return summary

    async def list_policies(
        self, tenant_id: str, *, category: str | None = None
    ) -> list[PolicySummary]:
        """List a tenant's policies, newest first.

        Args:
            tenant_id: Owning tenant
            category: Optional case-insensitive substring of the category name
        """
        stmt = select(PolicyDB).where(PolicyDB.tenant_id == tenant_id)
        if category:
            stmt = stmt.join(PolicyCategoryDB, PolicyCategoryDB.id == PolicyDB.category_id).where(
                func.lower(PolicyCategoryDB.name).contains(category.lower())
            )
        stmt = stmt.order_by(PolicyDB.created_at.desc(), PolicyDB.title).execution_options(
            populate_existing=True
        )

        result = await self._execute(stmt, "list_policies")
        return [summary_from_row(policy) for policy in result.scalars().all()]

    async def get_policy(self, policy_id: UUID, *, tenant_id: str | None = None) -> PolicyDetail:
        """Policy with full content and ordered chunks."""
        policy = await self._load(policy_id, tenant_id)
        chunks = await self.store.get_chunks_for_policy(policy_id, with_embeddings=False)
        return PolicyDetail(
            **summary_from_row(policy).model_dump(),
            content=policy.content,
            chunks=chunks,
        )

    async def delete_policy(self, policy_id: UUID, *, tenant_id: str | None = None) -> None:
        """Delete a policy and its chunks."""
        policy = await self._load(policy_id, tenant_id)
        try:
            await self.store.delete_chunks_for_policy(policy_id)
            await self._run(self.session.delete(policy), "delete_policy")
            await self._run(self.session.commit(), "commit_delete")
        except Exception:
            await self.session.rollback()
            raise

    async def find_or_create_category(
        self, name: str, description: str | None = None
    ) -> PolicyCategoryDB:
        """Look a category up by name, creating it on first use.

        A concurrent creator of the same name wins via the unique constraint;
        the loser re-reads the row instead of failing.
        """
        existing = await self._category_by_name(name)
        if existing:
            return existing

        category = PolicyCategoryDB(
            id=uuid4(), name=name, description=description or f"{name} category"
        )
        try:
            async with self.session.begin_nested():
                self.session.add(category)
        except IntegrityError:
            existing = await self._category_by_name(name)
            if existing is None:
                raise
            return existing
        return category

    async def _category_by_name(self, name: str) -> PolicyCategoryDB | None:
        result = await self._execute(
            select(PolicyCategoryDB).where(PolicyCategoryDB.name == name), "find_category"
        )
        return result.scalar_one_or_none()

    async def _load(self, policy_id: UUID, tenant_id: str | None) -> PolicyDB:
        stmt = select(PolicyDB).where(PolicyDB.id == policy_id).execution_options(
            populate_existing=True
        )
        if tenant_id is not None:
            stmt = stmt.where(PolicyDB.tenant_id == tenant_id)
        result = await self._execute(stmt, "load_policy")
        policy = result.scalar_one_or_none()
        if policy is None:
            raise PolicyNotFound(policy_id)
        return policy

    async def _execute(self, stmt: Executable, operation: str) -> Result[Any]:
        return await self._run(self.session.execute(stmt), operation)

    async def _run(self, awaitable: Awaitable[T], operation: str) -> T:
        return await run_storage(awaitable, operation, self.store.timeout_sec)

    def _chunk(self, content: str) -> list[TextChunk]:
        if not content.strip():
            raise IngestionError("chunking", "document has no text content")
        return chunk_text(content, chunk_size=self.chunk_size, overlap=self.overlap)

    async def _embed(self, chunks: list[TextChunk], *, operation: str) -> list[list[float]]:
        start = time.perf_counter()
        try:
            embeddings = await self.embedder.embed_batch([chunk.content for chunk in chunks])
        except EmbeddingUnavailable as e:
            self._failed(operation, start, reason=str(e))
            raise IngestionError("embedding", str(e)) from e

        self.metrics.record_latency("embed_batch", (time.perf_counter() - start) * 1000)
        return embeddings

    def _failed(
        self,
        operation: str,
        start: float,
        *,
        policy_id: UUID | None = None,
        tenant_id: str | None = None,
        reason: str,
    ) -> None:
        self.metrics.inc_ingest(operation, "failure")
        self.pipeline_logger.log_stage(
            operation,
            "failure",
            (time.perf_counter() - start) * 1000,
            policy_id=policy_id,
            tenant_id=tenant_id,
            error_reason=reason,
        )
