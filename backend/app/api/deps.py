"""FastAPI dependencies wiring the policy pipeline to a request."""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.config import Settings, get_settings
from backend.app.db.engine import get_session
from backend.app.embeddings.breaker import QuotaBreaker
from backend.app.embeddings.client import Embedder
from backend.app.llm.client import CompletionClient
from backend.app.policies.context import PolicyContextAssembler
from backend.app.policies.lifecycle import PolicyLifecycleManager
from backend.app.policies.search import SimilaritySearchEngine
from backend.app.policies.store import ChunkStore


def get_quota_breaker(request: Request) -> QuotaBreaker:
    """Application-wide provider breaker created at startup."""
    breaker: QuotaBreaker = request.app.state.quota_breaker
    return breaker


def get_embedder(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    breaker: Annotated[QuotaBreaker, Depends(get_quota_breaker)],
) -> Embedder:
    return Embedder(
        request.app.state.embedding_model,
        breaker=breaker,
        timeout_ms=settings.embedding_timeout_ms,
    )


def get_completion_client(request: Request) -> CompletionClient:
    client: CompletionClient = request.app.state.completion_client
    return client


def get_lifecycle_manager(
    session: Annotated[AsyncSession, Depends(get_session)],
    embedder: Annotated[Embedder, Depends(get_embedder)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> PolicyLifecycleManager:
    return PolicyLifecycleManager(
        session,
        embedder,
        chunk_size=settings.chunk_size,
        overlap=settings.chunk_overlap,
        storage_timeout_ms=settings.storage_timeout_ms,
    )


def get_search_engine(
    session: Annotated[AsyncSession, Depends(get_session)],
    embedder: Annotated[Embedder, Depends(get_embedder)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SimilaritySearchEngine:
    store = ChunkStore(
        session, dimensions=embedder.dimensions, timeout_ms=settings.storage_timeout_ms
    )
    return SimilaritySearchEngine(store, embedder)


def get_context_assembler(
    engine: Annotated[SimilaritySearchEngine, Depends(get_search_engine)],
) -> PolicyContextAssembler:
    return PolicyContextAssembler(engine)
