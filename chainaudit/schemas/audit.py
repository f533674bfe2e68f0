from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AuditAction(str, Enum):
    """
    Action codes emitted by this codebase's own call sites.

    The stored ``action`` column stays a free string: collaborators may log
    codes that are not listed here.
    """

    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    USER_CREATE = "USER_CREATE"
    USER_ROLE_UPDATE = "USER_ROLE_UPDATE"
    USER_DELETE = "USER_DELETE"
    INVITE_ACCEPTED = "INVITE_ACCEPTED"
    PRODUCT_CREATE = "PRODUCT_CREATE"
    PRODUCT_UPDATE = "PRODUCT_UPDATE"
    PRODUCT_DELETE = "PRODUCT_DELETE"
    PRODUCTS_CSV_IMPORT = "PRODUCTS_CSV_IMPORT"
    CATEGORY_CREATE = "CATEGORY_CREATE"
    CATEGORY_DELETE = "CATEGORY_DELETE"
    STOCK_IN = "STOCK_IN"
    STOCK_OUT = "STOCK_OUT"
    TENANT_CREATE = "TENANT_CREATE"
    TENANT_SETTING_UPDATE = "TENANT_SETTING_UPDATE"
    TENANT_BRANDING_UPDATE = "TENANT_BRANDING_UPDATE"
    PLAN_CHANGED = "PLAN_CHANGED"


VerifyReason = Literal["hash_mismatch", "missing_id", "out_of_order"]


def _clean_optional(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# =============================================================================
# WRITE SIDE
# =============================================================================


class AuditActorContext(BaseModel):
    """Identity/session context supplied by the authentication layer."""

    tenant_id: Optional[str] = None
    actor_user_id: Optional[str] = None
    actor_email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @field_validator("tenant_id", "actor_user_id", "ip_address", mode="before")
    @classmethod
    def _as_text(cls, v):
        return _clean_optional(v)


class AuditEventCreate(BaseModel):
    """Everything an append needs; id, created_at and hashes are assigned."""

    tenant_id: Optional[str] = None
    actor_user_id: Optional[str] = None
    actor_email: Optional[str] = None
    action: str = Field(..., min_length=1, max_length=100)
    entity_type: Optional[str] = Field(default=None, max_length=100)
    entity_id: Optional[str] = Field(default=None, max_length=128)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = None
    details: Optional[Any] = None

    @field_validator("action", mode="before")
    @classmethod
    def _action_code(cls, v):
        if isinstance(v, AuditAction):
            return v.value
        return v

    @field_validator("tenant_id", "actor_user_id", "entity_id", "ip_address", mode="before")
    @classmethod
    def _as_text(cls, v):
        return _clean_optional(v)

    @field_validator("actor_email", mode="before")
    @classmethod
    def _normalize_email(cls, v):
        cleaned = _clean_optional(v)
        return cleaned.lower() if cleaned else None

    @field_validator("user_agent", mode="before")
    @classmethod
    def _clip_user_agent(cls, v):
        cleaned = _clean_optional(v)
        return cleaned[:500] if cleaned else None


class AuditEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: Optional[str] = None
    actor_user_id: Optional[str] = None
    actor_email: Optional[str] = None
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[Any] = None
    created_at: datetime
    prev_hash: str
    hash: str

    @field_validator("created_at", mode="after")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        # SQLite hands back naive values; everything is stored in UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


# =============================================================================
# QUERY SIDE
# =============================================================================


class AuditFilters(BaseModel):
    """
    Optional, AND-combined filters shared by listing and CSV export.

    A plain date in ``date_to`` covers that whole day.
    """

    date_from: Optional[Union[datetime, date]] = None
    date_to: Optional[Union[datetime, date]] = None
    action: Optional[str] = None
    actor_email: Optional[str] = None
    entity_type: Optional[str] = None
    q: Optional[str] = None

    @field_validator("date_from", "date_to", mode="before")
    @classmethod
    def _plain_day(cls, v):
        # Lax datetime parsing would read "2026-03-01" as midnight
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return None
            if len(v) == 10:
                try:
                    return date.fromisoformat(v)
                except ValueError:
                    return v
        return v

    @field_validator("action", "entity_type", "q", mode="before")
    @classmethod
    def _strip(cls, v):
        return _clean_optional(v)

    @field_validator("actor_email", mode="before")
    @classmethod
    def _email(cls, v):
        cleaned = _clean_optional(v)
        return cleaned.lower() if cleaned else None

    def bounds(self) -> Tuple[Optional[datetime], Optional[datetime]]:
        """(inclusive start, exclusive end) as aware UTC datetimes."""
        return _lower_bound(self.date_from), _upper_bound(self.date_to)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _lower_bound(value: Optional[Union[datetime, date]]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _upper_bound(value: Optional[Union[datetime, date]]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        # Datetime upper bounds are inclusive: nudge past them
        return _as_utc(value) + timedelta(microseconds=1)
    return datetime.combine(value + timedelta(days=1), time.min, tzinfo=timezone.utc)


class AuditLogPage(BaseModel):
    page: int
    limit: int
    total: int
    logs: List[AuditEventRead]


# =============================================================================
# VERIFICATION
# =============================================================================


class VerifyResult(BaseModel):
    ok: bool
    checked: int = 0
    start_id: Optional[int] = None
    end_id: Optional[int] = None
    end_hash: Optional[str] = None
    broken_at_id: Optional[int] = None
    reason: Optional[VerifyReason] = None
    truncated: bool = False
    next_start_id: Optional[int] = None

    def describe(self) -> str:
        if not self.ok:
            return f"BROKEN at id={self.broken_at_id}: {self.reason}"
        suffix = f", startId {self.start_id}" if self.start_id else ""
        more = " (truncated)" if self.truncated else ""
        return f"OK (checked {self.checked}{suffix}){more}"


# =============================================================================
# STATISTICS
# =============================================================================


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DayCount(_CamelModel):
    day: date
    count: int


class ActionCount(_CamelModel):
    action: str
    count: int


class EntityCount(_CamelModel):
    entity_type: str
    count: int


class UserCount(_CamelModel):
    user_email: str
    count: int


class AuditStats(_CamelModel):
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")
    window_days: int = Field(alias="windowDays")
    total: int
    by_day: List[DayCount] = Field(default_factory=list, alias="byDay")
    by_action: List[ActionCount] = Field(default_factory=list, alias="byAction")
    by_entity: List[EntityCount] = Field(default_factory=list, alias="byEntity")
    top_users: List[UserCount] = Field(default_factory=list, alias="topUsers")


# =============================================================================
# REPORT
# =============================================================================


class ReportSummary(BaseModel):
    total_events: int
    logins: int
    failed_logins: int
    role_changes: int


class EmailCount(BaseModel):
    user_email: str
    count: int


class IpCount(BaseModel):
    ip_address: str
    count: int


class ReportEvent(BaseModel):
    id: int
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    user_email: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime


class ReportFindings(BaseModel):
    failed_logins_by_email: List[EmailCount] = Field(default_factory=list)
    failed_logins_by_ip: List[IpCount] = Field(default_factory=list)
    after_hours_logins: List[ReportEvent] = Field(default_factory=list)
    destructive_events: List[ReportEvent] = Field(default_factory=list)


class AuditReport(BaseModel):
    generated_at: datetime
    window_days: int
    tenant_id: Optional[str] = None
    summary: ReportSummary
    findings: ReportFindings


# =============================================================================
# SNAPSHOTS / PROOF / HEALTH
# =============================================================================


class AuditSnapshotRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    snapshot_date: date
    start_id: Optional[int] = None
    end_id: Optional[int] = None
    end_hash: Optional[str] = None
    events_count: int
    last_created_at: Optional[datetime] = None
    snapshot_hash: str


class SnapshotRunResult(BaseModel):
    ok: bool
    tenant_id: str
    snapshot_date: date
    snapshot: Optional[AuditSnapshotRead] = None
    error: Optional[str] = None


class ProofBundle(BaseModel):
    v: str
    generated_at: str
    summary: Dict[str, Any]
    snapshot: Optional[Dict[str, Any]] = None
    rows_root: str
    bundle_hash: str
    rows: List[Dict[str, Any]]


class ProofVerification(BaseModel):
    ok: bool
    reason: Optional[str] = None


class LatestEvent(BaseModel):
    id: int
    created_at: datetime
    hash: str


class AuditHealth(BaseModel):
    ok: bool
    tenant_id: Optional[str] = None
    chain: VerifyResult
    latest_event: Optional[LatestEvent] = None
    latest_snapshot: Optional[AuditSnapshotRead] = None
