"""Minimal auth dependency.

Stub implementation that extracts tenant_id/user_id from a bearer token or
uses development defaults. Real token validation lives in the gateway in
front of this service.
"""

from typing import Annotated

from fastapi import Header, HTTPException, status

from backend.app.db.context import RequestContext

DEV_TENANT_ID = "dev-tenant"
DEV_USER_ID = "dev-user"


async def get_current_context(
    authorization: Annotated[str | None, Header()] = None,
) -> RequestContext:
    """Extract request context from authorization header.

    Either parses a simple "Bearer <tenant_id>:<user_id>" token or returns
    the development identity if no header is sent.

    Args:
        authorization: Authorization header (e.g., "Bearer acme:alice")

    Returns:
        RequestContext with tenant_id and user_id

    Raises:
        HTTPException: If authorization is invalid
    """
    if not authorization:
        return RequestContext(tenant_id=DEV_TENANT_ID, user_id=DEV_USER_ID)

    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = authorization[7:]  # Strip "Bearer "

    tenant_id, sep, user_id = token.partition(":")
    if not sep or not tenant_id.strip() or not user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token format (expected tenant_id:user_id)",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return RequestContext(tenant_id=tenant_id.strip(), user_id=user_id.strip())
