"""Error taxonomy for the policy retrieval pipeline."""

from typing import Literal
from uuid import UUID

IngestStage = Literal["chunking", "embedding", "storage"]


class PolicyRagError(Exception):
    """Base class for policy pipeline errors."""

    pass


class InvalidConfiguration(PolicyRagError):
    """Chunk size / overlap combination is unusable."""

    pass


class DimensionMismatch(PolicyRagError):
    """Embedding width disagrees with the configured vector width."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"embedding has {actual} dimensions, expected {expected}")
        self.expected = expected
        self.actual = actual


class StorageError(PolicyRagError):
    """Chunk store unreachable or failed mid-operation. Retryable."""

    pass


class EmbeddingUnavailable(PolicyRagError):
    """Embedding provider unreachable, timed out, or quota exhausted. Retryable."""

    pass


class PolicyNotFound(PolicyRagError):
    """No policy with the given id (within the caller's tenant)."""

    def __init__(self, policy_id: UUID) -> None:
        super().__init__(f"policy {policy_id} not found")
        self.policy_id = policy_id


class VersionConflict(PolicyRagError):
    """Policy version changed between read and write."""

    def __init__(self, policy_id: UUID, expected: int, actual: int | None = None) -> None:
        detail = f"policy {policy_id} expected version {expected}"
        if actual is not None:
            detail += f", found {actual}"
        super().__init__(detail)
        self.policy_id = policy_id
        self.expected = expected
        self.actual = actual


class IngestionError(PolicyRagError):
    """Ingestion failed; `stage` names the failed pipeline step."""

    def __init__(self, stage: IngestStage, message: str) -> None:
        super().__init__(f"{stage} failed: {message}")
        self.stage = stage
        self.message = message
