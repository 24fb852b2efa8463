"""Shared pytest fixtures for all test suites."""

import os
import re
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from backend.app.db.engine import register_pgvector
from backend.app.db.models import Base
from backend.app.embeddings.client import Embedder

# Topic axes for KeywordEmbeddingModel; a token hits an axis if it starts with a keyword
TOPIC_AXES: dict[str, tuple[str, ...]] = {
    "remote": ("home", "office", "remote", "telecommut"),
    "conduct": ("conduct", "harass", "ethic", "behavio"),
    "leave": ("vacation", "leave", "pto", "holiday", "sick"),
    "pay": ("salary", "payroll", "bonus", "compensat"),
}

_TOKEN_RE = re.compile(r"[a-z]+")


class KeywordEmbeddingModel:
    """Embedding model with one axis per HR topic.

    Texts about the same topic embed to parallel vectors (similarity 1.0),
    texts about different topics to orthogonal ones (similarity 0.0), and
    texts with no topic keyword to the zero vector.
    """

    def __init__(self) -> None:
        self.calls = 0

    @property
    def dimensions(self) -> int:
        return len(TOPIC_AXES)

    def vector(self, content: str) -> list[float]:
        counts = [0.0] * len(TOPIC_AXES)
        for token in _TOKEN_RE.findall(content.lower()):
            for axis, keywords in enumerate(TOPIC_AXES.values()):
                if token.startswith(keywords):
                    counts[axis] += 1.0
        total = sum(c * c for c in counts) ** 0.5
        return [c / total for c in counts] if total else counts

    async def embed_query(self, content: str) -> list[float]:
        self.calls += 1
        return self.vector(content)

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        return [self.vector(t) for t in texts]


class FailingEmbeddingModel:
    """Provider that is always down."""

    def __init__(self, dimensions: int = len(TOPIC_AXES)) -> None:
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed_query(self, content: str) -> list[float]:
        raise ConnectionError("embedding provider unreachable")

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        raise ConnectionError("embedding provider unreachable")


@pytest.fixture
def keyword_model() -> KeywordEmbeddingModel:
    return KeywordEmbeddingModel()


@pytest.fixture
def keyword_embedder(keyword_model: KeywordEmbeddingModel) -> Embedder:
    return Embedder(keyword_model)


@pytest.fixture
def failing_embedder() -> Embedder:
    return Embedder(FailingEmbeddingModel())


@pytest_asyncio.fixture
async def sqlite_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with all tables created.

    StaticPool keeps the single in-memory connection alive for the whole test,
    so every session sees the same database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def sqlite_session(sqlite_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSession(sqlite_engine, expire_on_commit=False) as session:
        yield session


@pytest_asyncio.fixture
async def postgres_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create async engine for PostgreSQL integration tests.

    Requires DATABASE_URL to point at a PostgreSQL database where the pgvector
    extension can be created. Tests using this fixture should be marked with
    @pytest.mark.postgres.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set - skipping postgres test")

    # Ensure it's a postgres URL
    if not database_url.startswith(("postgresql://", "postgresql+asyncpg://")):
        pytest.skip(f"DATABASE_URL is not PostgreSQL: {database_url}")

    # Convert to async driver if needed
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    # Extension must exist before connections register the vector codec
    bootstrap = create_async_engine(database_url, poolclass=NullPool)
    async with bootstrap.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
    await bootstrap.dispose()

    engine = create_async_engine(
        database_url,
        poolclass=NullPool,
        echo=False,
    )
    register_pgvector(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Cleanup: drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def postgres_session(postgres_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Create async session for PostgreSQL integration tests."""
    async with AsyncSession(postgres_engine, expire_on_commit=False) as session:
        yield session
        await session.rollback()
