"""
=============================================================================
CHAINAUDIT - SECURITY MODULE
=============================================================================
API Key authentication with Role-Based Access Control (RBAC) and tenant
scoping for the audit endpoints.

Roles:
- ADMIN: Full access, may omit X-Tenant-ID to run in cross-tenant mode
- USER : Tenant-scoped read access; X-Tenant-ID is mandatory

The tenant-selection flow itself lives upstream; this module only reads the
tenant it selected from the X-Tenant-ID header.

Usage:
    from chainaudit.core.security import get_audit_scope, require_admin

    @router.get("/stats")
    def stats(scope: AuditScope = Depends(get_audit_scope)): ...
=============================================================================
"""

import logging
import secrets
from enum import Enum
from typing import Optional

from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, SecretStr

from chainaudit.core.config import settings

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(
    name="X-API-Key",
    auto_error=False,
    description="API Key for authenticated access (Admin or User)",
)


class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


class UserPrincipal(BaseModel):
    key: str
    role: UserRole


class AuditScope(BaseModel):
    """Tenant scope a read operation runs under."""

    principal: UserPrincipal
    tenant_id: Optional[str] = None
    cross_tenant: bool = False


def _get_secret_value(secret: Optional[SecretStr]) -> Optional[str]:
    """Helper to extract string from SecretStr safely."""
    if secret is None:
        return None
    value = secret.get_secret_value()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def resolve_principal(api_key: Optional[str]) -> Optional[UserPrincipal]:
    """Match an API key against the configured admin and user keys."""
    if not api_key:
        return None

    admin_key = _get_secret_value(settings.ADMIN_API_KEY)
    if admin_key and secrets.compare_digest(api_key, admin_key):
        return UserPrincipal(key=api_key, role=UserRole.ADMIN)

    user_key = _get_secret_value(settings.API_KEY)
    if user_key and secrets.compare_digest(api_key, user_key):
        return UserPrincipal(key=api_key, role=UserRole.USER)

    return None


async def get_current_user(api_key: str = Security(api_key_header)) -> UserPrincipal:
    """
    Dependency to verify API key and return the authenticated user with role.

    Raises:
        HTTPException: 403 if key is missing or invalid
    """
    if not api_key:
        logger.warning("API request without API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing API Key. Include 'X-API-Key' header.",
        )

    principal = resolve_principal(api_key)
    if principal is None:
        logger.warning(f"Invalid API key attempt: {api_key[:8]}...")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API Key"
        )
    return principal


async def get_current_user_optional(
    api_key: str = Security(api_key_header),
) -> Optional[UserPrincipal]:
    """
    Dependency to get authenticated user if present, otherwise None.
    An invalid key still fails, so anonymous callers cannot brute force.
    """
    if not api_key:
        return None
    principal = resolve_principal(api_key)
    if principal is None:
        logger.warning(f"Invalid API key attempt in optional auth: {api_key[:8]}...")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API Key"
        )
    return principal


async def require_admin(
    user: UserPrincipal = Depends(get_current_user),
) -> UserPrincipal:
    """
    Dependency that ensures the user has ADMIN role.
    """
    if user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required"
        )
    return user


async def get_audit_scope(
    user: UserPrincipal = Depends(get_current_user),
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-ID"),
) -> AuditScope:
    """
    Resolve the tenant scope for audit reads.

    - USER without tenant: 400, tenant selection is mandatory
    - ADMIN without tenant: cross-tenant administrative mode
    """
    tenant_id = (x_tenant_id or "").strip() or None

    if tenant_id is None and user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required.",
        )

    return AuditScope(
        principal=user,
        tenant_id=tenant_id,
        cross_tenant=tenant_id is None,
    )
