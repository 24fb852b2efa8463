"""Request context for tenancy enforcement."""

from dataclasses import dataclass


@dataclass(frozen=True)
class RequestContext:
    """Request context containing tenant and user identity.

    Every policy read and write is scoped to `tenant_id`; `user_id` is
    recorded as the author of uploaded policies.
    """

    tenant_id: str
    user_id: str
