"""Health check endpoints.

- /health: liveness, always 200 while the process runs
- /healthz: database connectivity and embedding breaker state
"""

import json
from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_quota_breaker
from backend.app.db.engine import get_session
from backend.app.embeddings.breaker import QuotaBreaker

router = APIRouter()


async def check_db(session: AsyncSession) -> tuple[bool, str]:
    """Check database connectivity.

    Returns:
        (is_ok, status_message)
    """
    try:
        await session.execute(text("SELECT 1"))
        return (True, "ok")
    except Exception as e:
        return (False, f"error: {type(e).__name__}")


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check for Docker/k8s.

    Returns:
        200 OK always (application is running)
    """
    return {"status": "ok"}


@router.get("/healthz", response_model=None)
async def healthz(
    session: Annotated[AsyncSession, Depends(get_session)],
    breaker: Annotated[QuotaBreaker, Depends(get_quota_breaker)],
) -> dict[str, Any] | Response:
    """Component health check.

    The provider breaker being open is reported but does not fail the check;
    search keeps working through the keyword fallback.

    Returns:
        200 with component status if the database is reachable
        503 otherwise
    """
    db_ok, db_status = await check_db(session)

    response_body = {
        "status": "ok" if db_ok else "degraded",
        "components": {
            "db": db_status,
            "embedding_provider": breaker.check_and_update_state(datetime.now(timezone.utc)).value,
        },
    }

    if not db_ok:
        return Response(
            content=json.dumps(response_body),
            status_code=503,
            media_type="application/json",
        )

    return response_body
