"""Structured logging for policy pipeline stages."""

import logging
from typing import Any
from uuid import UUID

logger = logging.getLogger(__name__)


class StructuredPipelineLogger:
    """Structured logger for ingestion and retrieval stages."""

    def log_stage(
        self,
        stage: str,
        outcome: str,
        latency_ms: float,
        *,
        policy_id: UUID | None = None,
        tenant_id: str | None = None,
        error_reason: str | None = None,
        **fields: Any,
    ) -> None:
        """Log a pipeline stage with structured data."""
        log_data: dict[str, Any] = {
            "stage": stage,
            "outcome": outcome,
            "latency_ms": round(latency_ms, 2),
        }

        if policy_id:
            log_data["policy_id"] = str(policy_id)
        if tenant_id:
            log_data["tenant_id"] = tenant_id
        if error_reason:
            log_data["error_reason"] = error_reason
        log_data.update(fields)

        log_msg = f"Policy pipeline: {stage} - {outcome}"

        if outcome == "success":
            logger.info(log_msg, extra={"structured": log_data})
        else:
            logger.warning(log_msg, extra={"structured": log_data})
