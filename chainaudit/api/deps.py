from typing import Optional

from fastapi import Header, Request

from chainaudit.core.rate_limiter import get_client_ip
from chainaudit.db.session import get_db
from chainaudit.schemas.audit import AuditActorContext

__all__ = ["get_db", "get_actor_context"]


def get_actor_context(
    request: Request,
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-ID"),
) -> AuditActorContext:
    """
    Identity of whoever is making the request, for ``AuditRecorder.record``.

    The upstream authentication layer stores the user on ``request.state``;
    the client IP honours X-Forwarded-For only from trusted proxies.

    Usage:
        @router.delete("/products/{product_id}")
        def delete_product(actor: AuditActorContext = Depends(get_actor_context)):
            ...
    """
    return AuditActorContext(
        tenant_id=getattr(request.state, "tenant_id", None) or x_tenant_id,
        actor_user_id=getattr(request.state, "user_id", None),
        actor_email=getattr(request.state, "user_email", None),
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
