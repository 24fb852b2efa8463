"""Policy endpoints - upload, list, search, re-ingest, archive, delete."""

import logging
import uuid
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile, status
from pydantic import BaseModel, Field

from backend.app.api.auth import get_current_context
from backend.app.api.deps import get_lifecycle_manager, get_search_engine
from backend.app.config import Settings, get_settings
from backend.app.db.context import RequestContext
from backend.app.models.policies import (
    ChunkStatistics,
    IngestResult,
    PolicyDetail,
    PolicySummary,
    ReingestResult,
    SearchOutcome,
)
from backend.app.policies.errors import (
    DimensionMismatch,
    IngestionError,
    PolicyNotFound,
    PolicyRagError,
    StorageError,
    VersionConflict,
)
from backend.app.policies.lifecycle import PolicyLifecycleManager
from backend.app.policies.search import SimilaritySearchEngine

router = APIRouter(prefix="/policies", tags=["policies"])
logger = logging.getLogger(__name__)

_INGEST_STAGE_STATUS = {
    "chunking": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "embedding": status.HTTP_502_BAD_GATEWAY,
    "storage": status.HTTP_503_SERVICE_UNAVAILABLE,
}

ALLOWED_UPLOAD_TYPES = {"text/plain", "text/markdown"}


class CreatePolicyRequest(BaseModel):
    """Request body for POST /policies."""

    title: str = Field(..., min_length=1, max_length=255, description="Policy title")
    content: str = Field(..., min_length=1, description="Extracted policy text")
    category: str | None = Field(None, max_length=100, description="Category name")
    summary: str | None = Field(None, description="Optional summary (derived if omitted)")
    effective_date: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateContentRequest(BaseModel):
    """Request body for PUT /policies/{policy_id}/content."""

    content: str = Field(..., min_length=1, description="Replacement policy text")
    expected_version: int | None = Field(
        None, ge=1, description="Reject the update unless the stored version matches"
    )


class PolicyListResponse(BaseModel):
    """Response for GET /policies."""

    policies: list[PolicySummary]


def to_http_exception(e: PolicyRagError) -> HTTPException:
    """Map policy pipeline errors to HTTP status codes."""
    if isinstance(e, PolicyNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Policy not found")
    if isinstance(e, VersionConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, IngestionError):
        return HTTPException(status_code=_INGEST_STAGE_STATUS[e.stage], detail=str(e))
    if isinstance(e, StorageError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="storage unavailable"
        )
    if isinstance(e, DimensionMismatch):
        logger.error(f"Embedding width mismatch: {e}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error")


def parse_policy_id(policy_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(policy_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid policy_id format (expected UUID)",
        ) from e


@router.post("", response_model=IngestResult, status_code=status.HTTP_201_CREATED)
async def create_policy(
    request: CreatePolicyRequest,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    manager: Annotated[PolicyLifecycleManager, Depends(get_lifecycle_manager)],
) -> IngestResult:
    """Upload a policy: chunk, embed and persist it as version 1.

    Args:
        request: Policy text and descriptive fields
        ctx: Request context (tenant_id, user_id)
        manager: Lifecycle manager bound to the request session

    Returns:
        New policy id, chunk count and version
    """
    logger.info(f"[POST /policies] tenant_id={ctx.tenant_id}, title={request.title!r}")

    try:
        return await manager.ingest(
            title=request.title,
            content=request.content,
            category_name=request.category,
            tenant_id=ctx.tenant_id,
            author_id=ctx.user_id,
            metadata=request.metadata,
            summary=request.summary,
            effective_date=request.effective_date,
        )
    except PolicyRagError as e:
        raise to_http_exception(e) from e


@router.post("/upload", response_model=IngestResult, status_code=status.HTTP_201_CREATED)
async def upload_policy_file(
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    manager: Annotated[PolicyLifecycleManager, Depends(get_lifecycle_manager)],
    settings: Annotated[Settings, Depends(get_settings)],
    file: UploadFile = File(...),
    title: str = Form(..., min_length=1, max_length=255),
    category: str | None = Form(None, max_length=100),
) -> IngestResult:
    """Upload a policy as a .txt or .md file.

    The file name, content type and size are kept in the policy metadata.

    Raises:
        HTTPException: 400 for an unsupported type or non UTF-8 content,
            413 if the file exceeds the upload limit
    """
    file_type = (file.content_type or "").split(";")[0].strip().lower()
    if file_type not in ALLOWED_UPLOAD_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid file type. Please upload a .txt or .md file",
        )

    raw = await file.read()
    if len(raw) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_upload_bytes} bytes",
        )
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="File is not valid UTF-8 text"
        ) from e

    logger.info(
        f"[POST /policies/upload] tenant_id={ctx.tenant_id}, file={file.filename!r}, "
        f"size={len(raw)}"
    )

    try:
        return await manager.ingest(
            title=title,
            content=content,
            category_name=category,
            tenant_id=ctx.tenant_id,
            author_id=ctx.user_id,
            metadata={"file_name": file.filename, "file_type": file_type, "file_size": len(raw)},
        )
    except PolicyRagError as e:
        raise to_http_exception(e) from e


@router.get("", response_model=PolicyListResponse)
async def list_policies(
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    manager: Annotated[PolicyLifecycleManager, Depends(get_lifecycle_manager)],
    category: Annotated[str | None, Query(max_length=100)] = None,
) -> PolicyListResponse:
    """List the tenant's policies, newest first, optionally by category."""
    try:
        policies = await manager.list_policies(ctx.tenant_id, category=category)
    except PolicyRagError as e:
        raise to_http_exception(e) from e
    return PolicyListResponse(policies=policies)


@router.get("/search", response_model=SearchOutcome)
async def search_policies(
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    engine: Annotated[SimilaritySearchEngine, Depends(get_search_engine)],
    settings: Annotated[Settings, Depends(get_settings)],
    query: Annotated[str, Query(min_length=1, max_length=500)],
    limit: Annotated[int | None, Query(ge=1, le=50)] = None,
    threshold: Annotated[float | None, Query(ge=-1.0, le=1.0)] = None,
) -> SearchOutcome:
    """Search active policy chunks by semantic similarity.

    Falls back to keyword overlap when the embedding provider is unavailable;
    the `method` field reports which path produced the results.
    """
    try:
        return await engine.search(
            query,
            limit=limit or settings.search_limit,
            similarity_threshold=(
                threshold if threshold is not None else settings.search_similarity_threshold
            ),
            tenant_id=ctx.tenant_id,
        )
    except PolicyRagError as e:
        raise to_http_exception(e) from e


@router.get("/stats", response_model=ChunkStatistics)
async def chunk_stats(
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    manager: Annotated[PolicyLifecycleManager, Depends(get_lifecycle_manager)],
) -> ChunkStatistics:
    """Chunk counts for the tenant's policies."""
    try:
        return await manager.store.chunk_statistics(ctx.tenant_id)
    except PolicyRagError as e:
        raise to_http_exception(e) from e


@router.get("/{policy_id}", response_model=PolicyDetail)
async def get_policy(
    policy_id: str,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    manager: Annotated[PolicyLifecycleManager, Depends(get_lifecycle_manager)],
) -> PolicyDetail:
    """Policy with its content and chunks (embeddings omitted)."""
    policy_uuid = parse_policy_id(policy_id)
    try:
        return await manager.get_policy(policy_uuid, tenant_id=ctx.tenant_id)
    except PolicyRagError as e:
        raise to_http_exception(e) from e


@router.put("/{policy_id}/content", response_model=ReingestResult)
async def update_policy_content(
    policy_id: str,
    request: UpdateContentRequest,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    manager: Annotated[PolicyLifecycleManager, Depends(get_lifecycle_manager)],
) -> ReingestResult:
    """Replace policy text, bump its version and regenerate its chunks.

    Raises:
        HTTPException: 404 if not found, 409 on a version conflict,
            502/503/422 if re-ingestion fails (previous content stays live)
    """
    policy_uuid = parse_policy_id(policy_id)
    logger.info(f"[PUT /policies/{policy_id}/content] tenant_id={ctx.tenant_id}")

    try:
        return await manager.reingest(
            policy_uuid,
            request.content,
            expected_version=request.expected_version,
            tenant_id=ctx.tenant_id,
        )
    except PolicyRagError as e:
        raise to_http_exception(e) from e


@router.post("/{policy_id}/archive", response_model=PolicySummary)
async def archive_policy(
    policy_id: str,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    manager: Annotated[PolicyLifecycleManager, Depends(get_lifecycle_manager)],
) -> PolicySummary:
    """Archive a policy so it no longer appears in search."""
    policy_uuid = parse_policy_id(policy_id)
    try:
        return await manager.archive(policy_uuid, tenant_id=ctx.tenant_id)
    except PolicyRagError as e:
        raise to_http_exception(e) from e


@router.delete("/{policy_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_policy(
    policy_id: str,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    manager: Annotated[PolicyLifecycleManager, Depends(get_lifecycle_manager)],
) -> Response:
    """Delete a policy and all of its chunks."""
    policy_uuid = parse_policy_id(policy_id)
    logger.info(f"[DELETE /policies/{policy_id}] tenant_id={ctx.tenant_id}")

    try:
        await manager.delete_policy(policy_uuid, tenant_id=ctx.tenant_id)
    except PolicyRagError as e:
        raise to_http_exception(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)
