import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from chainaudit.core.config import settings
from chainaudit.models.audit_event import AuditEvent
from chainaudit.schemas.audit import (
    ActionCount,
    AuditStats,
    DayCount,
    EntityCount,
    UserCount,
)
from chainaudit.services.audit_query_service import tenant_clauses, validate_window

logger = logging.getLogger(__name__)


def _as_date(value: Any) -> date:
    # func.date() returns a date on PostgreSQL and an ISO string on SQLite
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def utc_day(column, dialect_name: str):
    """Calendar day of a timestamp column, taken in UTC on every backend."""
    if dialect_name == "postgresql":
        # date() of a timestamptz follows the session TimeZone
        return func.date(func.timezone("UTC", column))
    return func.date(column)


class AuditAggregator:
    """
    Tenant-scoped counts over a trailing window.

    All groupings are bounded by the max(id) read first, so the numbers
    describe one consistent prefix of the log even while appends continue.
    """

    def __init__(self, db: Session):
        self.db = db

    def stats(
        self,
        tenant_id: Optional[str],
        window_days: int,
        now: Optional[datetime] = None,
        cross_tenant: bool = False,
    ) -> AuditStats:
        validate_window(window_days)
        scope = tenant_clauses(tenant_id, cross_tenant)

        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        now = now.astimezone(timezone.utc)
        since = now - timedelta(days=window_days)

        max_id = self.db.scalar(select(func.max(AuditEvent.id)))
        if max_id is None:
            return AuditStats(tenant_id=tenant_id, window_days=window_days, total=0)

        where = [
            *scope,
            AuditEvent.id <= max_id,
            AuditEvent.created_at >= since,
            AuditEvent.created_at <= now,
        ]

        total = self.db.scalar(
            select(func.count()).select_from(AuditEvent).where(*where)
        ) or 0

        day = utc_day(AuditEvent.created_at, self.db.get_bind().dialect.name)
        by_day = [
            DayCount(day=_as_date(d), count=c)
            for d, c in self.db.execute(
                select(day, func.count()).where(*where).group_by(day).order_by(day)
            )
        ]
        by_day.sort(key=lambda item: item.day)

        by_action = [
            ActionCount(action=key, count=count)
            for key, count in self._grouped(AuditEvent.action, where)
        ]
        by_entity = [
            EntityCount(entity_type=key, count=count)
            for key, count in self._grouped(AuditEvent.entity_type, where)
        ]
        top_users = [
            UserCount(user_email=key, count=count)
            for key, count in self._grouped(
                AuditEvent.actor_email, where, limit=settings.AUDIT_TOP_N
            )
        ]

        return AuditStats(
            tenant_id=tenant_id,
            window_days=window_days,
            total=total,
            by_day=by_day,
            by_action=by_action,
            by_entity=by_entity,
            top_users=top_users,
        )

    def _grouped(self, column, where: List[Any], limit: Optional[int] = None):
        count = func.count().label("count")
        stmt = (
            select(column, count)
            .where(*where, column.isnot(None))
            .group_by(column)
            .order_by(desc("count"), column.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return [(key, n) for key, n in self.db.execute(stmt)]
