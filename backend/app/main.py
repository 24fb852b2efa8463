"""FastAPI application."""

from fastapi import FastAPI

from backend.app.api.routes.health import router as health_router
from backend.app.api.routes.metrics import router as metrics_router
from backend.app.api.routes.policies import router as policies_router
from backend.app.api.routes.qa import router as qa_router
from backend.app.config import get_settings
from backend.app.embeddings.breaker import QuotaBreaker
from backend.app.embeddings.client import get_embedding_model
from backend.app.llm.client import get_completion_client

settings = get_settings()

app = FastAPI(title="HR Policy API", version="0.1.0")

# One breaker per process, shared by embedding and completion calls
app.state.quota_breaker = QuotaBreaker(
    name="provider",
    failure_threshold=settings.breaker_failure_threshold,
    window_seconds=settings.breaker_window_sec,
    cooldown_seconds=settings.breaker_cooldown_sec,
)
app.state.embedding_model = get_embedding_model(settings)
app.state.completion_client = get_completion_client(settings, app.state.quota_breaker)

# Register routes
app.include_router(health_router, tags=["health"])
app.include_router(metrics_router, tags=["metrics"])
app.include_router(policies_router, tags=["policies"])
app.include_router(qa_router, tags=["qa"])


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "HR Policy API", "version": "0.1.0"}
