from __future__ import annotations

import logging
from typing import Any, List, Optional

from pydantic import ValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from chainaudit.core.config import settings
from chainaudit.core.errors import AuditQueryError
from chainaudit.models.audit_event import AuditEvent
from chainaudit.schemas.audit import AuditEventRead, AuditFilters, AuditLogPage

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


def tenant_clauses(tenant_id: Optional[str], cross_tenant: bool = False) -> List[Any]:
    """WHERE clauses for tenant isolation; empty only in cross-tenant mode."""
    if cross_tenant:
        return []
    if not tenant_id:
        raise AuditQueryError("tenant_id is required outside cross-tenant mode")
    return [AuditEvent.tenant_id == tenant_id]


def validate_window(window_days: int) -> int:
    if window_days is None or window_days < 1 or window_days > settings.AUDIT_MAX_WINDOW_DAYS:
        raise AuditQueryError(
            f"window_days must be between 1 and {settings.AUDIT_MAX_WINDOW_DAYS}",
            detail={"window_days": window_days},
        )
    return window_days


def parse_filters(**raw: Any) -> AuditFilters:
    """Build AuditFilters from loose values (query strings, CLI args)."""
    try:
        return AuditFilters(**raw)
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise AuditQueryError(
            f"Invalid audit filter value: {', '.join(fields) or 'unknown'}",
            detail={"fields": fields},
        ) from exc


def filter_clauses(filters: Optional[AuditFilters]) -> List[Any]:
    """
    Translate AuditFilters into WHERE clauses (AND semantics).

    Raises:
        AuditQueryError: date_from is after date_to
    """
    if filters is None:
        return []

    clauses: List[Any] = []
    start, end = filters.bounds()
    if start is not None and end is not None and start >= end:
        raise AuditQueryError(
            "date_from must not be after date_to",
            detail={
                "date_from": str(filters.date_from),
                "date_to": str(filters.date_to),
            },
        )
    if start is not None:
        clauses.append(AuditEvent.created_at >= start)
    if end is not None:
        clauses.append(AuditEvent.created_at < end)

    if filters.action:
        clauses.append(AuditEvent.action == filters.action)
    if filters.actor_email:
        clauses.append(AuditEvent.actor_email == filters.actor_email)
    if filters.entity_type:
        clauses.append(AuditEvent.entity_type == filters.entity_type)
    if filters.q:
        clauses.append(
            or_(
                AuditEvent.actor_email.icontains(filters.q, autoescape=True),
                AuditEvent.action.icontains(filters.q, autoescape=True),
                AuditEvent.entity_type.icontains(filters.q, autoescape=True),
                AuditEvent.entity_id.icontains(filters.q, autoescape=True),
            )
        )
    return clauses


class AuditQueryService:
    """Paginated, tenant-scoped event listing (most recent first)."""

    def __init__(self, db: Session):
        self.db = db

    def list_events(
        self,
        tenant_id: Optional[str],
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        filters: Optional[AuditFilters] = None,
        cross_tenant: bool = False,
    ) -> AuditLogPage:
        page = max(1, int(page or 1))
        limit = min(max(1, int(limit or DEFAULT_PAGE_SIZE)), MAX_PAGE_SIZE)

        clauses = tenant_clauses(tenant_id, cross_tenant) + filter_clauses(filters)

        total = self.db.scalar(
            select(func.count()).select_from(AuditEvent).where(*clauses)
        ) or 0
        rows = self.db.scalars(
            select(AuditEvent)
            .where(*clauses)
            .order_by(AuditEvent.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()

        return AuditLogPage(
            page=page,
            limit=limit,
            total=total,
            logs=[AuditEventRead.model_validate(row) for row in rows],
        )

    def latest_event(self, tenant_id: Optional[str], cross_tenant: bool = False):
        return self.db.scalars(
            select(AuditEvent)
            .where(*tenant_clauses(tenant_id, cross_tenant))
            .order_by(AuditEvent.id.desc())
            .limit(1)
        ).first()
