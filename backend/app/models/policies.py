"""Policy document domain models."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class PolicyStatus(str, Enum):
    """Policy lifecycle status. ARCHIVED documents are never search candidates."""

    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class TextChunk(BaseModel):
    """Chunker output - a slice of the source text before persistence."""

    index: int = Field(..., ge=0)
    content: str
    start_index: int = Field(..., ge=0)
    end_index: int
    overlap_start: int = Field(..., ge=0)
    overlap_end: int
    page_number: int | None = None
    section: str | None = None

    @model_validator(mode="after")
    def _check_span(self) -> "TextChunk":
        if self.end_index <= self.start_index:
            raise ValueError("end_index must be greater than start_index")
        if self.overlap_start > self.start_index or self.overlap_end < self.end_index:
            raise ValueError("overlap window must contain the chunk span")
        return self

    def metadata(self) -> dict[str, Any]:
        """Per-chunk metadata persisted alongside the row."""
        return {
            "chunk_index": self.index,
            "overlap_start": self.overlap_start,
            "overlap_end": self.overlap_end,
            "page_number": self.page_number,
            "section": self.section,
        }


class PolicyChunk(BaseModel):
    """Persisted chunk with its embedding vector."""

    chunk_id: UUID
    policy_id: UUID
    chunk_index: int
    content: str
    start_index: int
    end_index: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    embedding: list[float] | None = None
    created_at: datetime


class PolicyRef(BaseModel):
    """Minimal identifying projection of a policy, joined onto search hits."""

    policy_id: UUID
    title: str
    category: str


class SimilarityResult(BaseModel):
    """One ranked chunk hit. Produced per query, never stored."""

    chunk: PolicyChunk
    similarity: float
    policy: PolicyRef


class SearchOutcome(BaseModel):
    """Search results plus the method that produced them."""

    query: str
    results: list[SimilarityResult]
    method: Literal["vector_similarity", "keyword_fallback"]


class PolicyMatch(BaseModel):
    """Chunk hits aggregated per policy."""

    policy: PolicyRef
    relevance: float
    chunks: list[PolicyChunk]

    @property
    def text(self) -> str:
        return "\n\n".join(chunk.content for chunk in self.chunks)


class PolicySummary(BaseModel):
    """Policy metadata without chunks."""

    policy_id: UUID
    title: str
    category: str
    tenant_id: str
    author_id: str
    summary: str | None = None
    status: PolicyStatus
    version: int
    effective_date: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class PolicyDetail(PolicySummary):
    """Policy with full content and its ordered chunks."""

    content: str
    chunks: list[PolicyChunk]


class IngestResult(BaseModel):
    """Outcome of a successful ingest."""

    policy_id: UUID
    chunk_count: int
    version: int


class ReingestResult(BaseModel):
    """Outcome of a successful content replacement."""

    policy_id: UUID
    chunk_count: int
    version: int


class PolicyChunkCount(BaseModel):
    """Chunk count for one policy."""

    policy_id: UUID
    title: str
    chunk_count: int


class ChunkStatistics(BaseModel):
    """Store-wide chunk totals."""

    total_chunks: int
    by_policy: list[PolicyChunkCount]
