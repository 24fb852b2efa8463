"""Models package - re-exports for convenience."""

from backend.app.models.policies import (
    ChunkStatistics,
    IngestResult,
    PolicyChunk,
    PolicyChunkCount,
    PolicyDetail,
    PolicyMatch,
    PolicyRef,
    PolicyStatus,
    PolicySummary,
    ReingestResult,
    SearchOutcome,
    SimilarityResult,
    TextChunk,
)

__all__ = [
    # Chunks
    "TextChunk",
    "PolicyChunk",
    "ChunkStatistics",
    "PolicyChunkCount",
    # Policies
    "PolicyStatus",
    "PolicyRef",
    "PolicySummary",
    "PolicyDetail",
    "IngestResult",
    "ReingestResult",
    # Search
    "SimilarityResult",
    "SearchOutcome",
    "PolicyMatch",
]
