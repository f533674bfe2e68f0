"""
SOC-style compliance report over a trailing window.

Summary counters plus four findings: failed logins by email and by IP,
logins outside business hours, and destructive actions.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import case, desc, false, func, or_, select
from sqlalchemy.orm import Session

from chainaudit.core.config import settings
from chainaudit.models.audit_event import AuditEvent
from chainaudit.schemas.audit import (
    AuditReport,
    EmailCount,
    IpCount,
    ReportEvent,
    ReportFindings,
    ReportSummary,
)
from chainaudit.services.audit_query_service import tenant_clauses, validate_window

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReportPolicy:
    """Which action codes count as what, and what business hours are."""

    login_actions: Tuple[str, ...] = ("LOGIN",)
    failed_login_actions: Tuple[str, ...] = ("LOGIN_FAILED",)
    role_change_actions: Tuple[str, ...] = ("USER_ROLE_UPDATE",)
    destructive_suffixes: Tuple[str, ...] = ("_DELETE",)
    destructive_actions: Tuple[str, ...] = field(default_factory=tuple)
    business_hours_start: int = 7
    business_hours_end: int = 20
    timezone: str = "UTC"
    top_n: int = 10
    max_events: int = 200

    @classmethod
    def from_settings(cls) -> "ReportPolicy":
        return cls(
            login_actions=tuple(settings.AUDIT_LOGIN_ACTIONS),
            failed_login_actions=tuple(settings.AUDIT_FAILED_LOGIN_ACTIONS),
            role_change_actions=tuple(settings.AUDIT_ROLE_CHANGE_ACTIONS),
            destructive_suffixes=tuple(settings.AUDIT_DESTRUCTIVE_SUFFIXES),
            destructive_actions=tuple(settings.AUDIT_DESTRUCTIVE_ACTIONS),
            business_hours_start=settings.AUDIT_BUSINESS_HOURS_START,
            business_hours_end=settings.AUDIT_BUSINESS_HOURS_END,
            timezone=settings.AUDIT_BUSINESS_TZ,
            top_n=settings.AUDIT_TOP_N,
            max_events=settings.AUDIT_REPORT_MAX_EVENTS,
        )

    def is_after_hours(self, created_at: datetime) -> bool:
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        hour = created_at.astimezone(ZoneInfo(self.timezone)).hour
        return hour < self.business_hours_start or hour >= self.business_hours_end

    def destructive_clause(self):
        conditions = [
            AuditEvent.action.endswith(suffix, autoescape=True)
            for suffix in self.destructive_suffixes
            if suffix
        ]
        if self.destructive_actions:
            conditions.append(AuditEvent.action.in_(self.destructive_actions))
        return or_(*conditions) if conditions else false()


def _count_of(actions: Tuple[str, ...]):
    if not actions:
        return func.sum(0)
    return func.sum(case((AuditEvent.action.in_(actions), 1), else_=0))


def _report_event(row: AuditEvent) -> ReportEvent:
    created_at = row.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return ReportEvent(
        id=row.id,
        action=row.action,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        user_email=row.actor_email,
        ip_address=row.ip_address,
        created_at=created_at,
    )


class AuditReportGenerator:
    def __init__(self, db: Session, policy: Optional[ReportPolicy] = None):
        self.db = db
        self.policy = policy or ReportPolicy.from_settings()

    def generate(
        self,
        tenant_id: Optional[str],
        window_days: int,
        now: Optional[datetime] = None,
        cross_tenant: bool = False,
    ) -> AuditReport:
        """
        Build the report for the window ending at ``now``.

        ``now`` is truncated to the second, so two calls in the same second
        over an unchanged log produce identical summary and findings.
        """
        validate_window(window_days)
        scope = tenant_clauses(tenant_id, cross_tenant)

        now = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        now = now.astimezone(timezone.utc)
        since = now - timedelta(days=window_days)

        max_id = self.db.scalar(select(func.max(AuditEvent.id))) or 0
        where = [
            *scope,
            AuditEvent.id <= max_id,
            AuditEvent.created_at >= since,
            AuditEvent.created_at <= now,
        ]

        summary = self._summary(where)
        findings = ReportFindings(
            failed_logins_by_email=[
                EmailCount(user_email=key, count=n)
                for key, n in self._failed_logins_by(AuditEvent.actor_email, where)
            ],
            failed_logins_by_ip=[
                IpCount(ip_address=key, count=n)
                for key, n in self._failed_logins_by(AuditEvent.ip_address, where)
            ],
            after_hours_logins=self._after_hours_logins(where),
            destructive_events=self._destructive_events(where),
        )

        logger.info(
            "Audit report generated tenant=%s days=%s events=%s",
            tenant_id,
            window_days,
            summary.total_events,
        )
        return AuditReport(
            generated_at=now,
            window_days=window_days,
            tenant_id=tenant_id,
            summary=summary,
            findings=findings,
        )

    def _summary(self, where) -> ReportSummary:
        row = self.db.execute(
            select(
                func.count(),
                _count_of(self.policy.login_actions),
                _count_of(self.policy.failed_login_actions),
                _count_of(self.policy.role_change_actions),
            )
            .select_from(AuditEvent)
            .where(*where)
        ).one()
        total, logins, failed, role_changes = (int(v or 0) for v in row)
        return ReportSummary(
            total_events=total,
            logins=logins,
            failed_logins=failed,
            role_changes=role_changes,
        )

    def _failed_logins_by(self, column, where) -> List[Tuple[str, int]]:
        if not self.policy.failed_login_actions:
            return []
        count = func.count().label("count")
        stmt = (
            select(column, count)
            .where(
                *where,
                AuditEvent.action.in_(self.policy.failed_login_actions),
                column.isnot(None),
            )
            .group_by(column)
            .order_by(desc("count"), column.asc())
            .limit(self.policy.top_n)
        )
        return [(key, n) for key, n in self.db.execute(stmt)]

    def _after_hours_logins(self, where) -> List[ReportEvent]:
        if not self.policy.login_actions:
            return []
        stmt = (
            select(AuditEvent)
            .where(*where, AuditEvent.action.in_(self.policy.login_actions))
            .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .execution_options(yield_per=500)
        )
        # Local hour needs the tz database, so the filter runs here, not in SQL
        found: List[ReportEvent] = []
        result = self.db.scalars(stmt)
        try:
            for row in result:
                if self.policy.is_after_hours(row.created_at):
                    found.append(_report_event(row))
                    if len(found) >= self.policy.max_events:
                        break
        finally:
            result.close()
        return found

    def _destructive_events(self, where) -> List[ReportEvent]:
        rows = self.db.scalars(
            select(AuditEvent)
            .where(*where, self.policy.destructive_clause())
            .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .limit(self.policy.max_events)
        ).all()
        return [_report_event(row) for row in rows]
