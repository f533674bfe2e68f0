from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from chainaudit.db.base import Base
from chainaudit.models.audit_event import IdType


class AuditDailySnapshot(Base):
    """
    Keyed summary of one tenant's events for one UTC day.

    Upserted by the daily job; lives outside the chain.
    """

    __tablename__ = "audit_daily_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    snapshot_date = Column(Date, nullable=False)

    start_id = Column(IdType)
    end_id = Column(IdType)
    end_hash = Column(String(64))
    events_count = Column(Integer, nullable=False, default=0)
    last_created_at = Column(DateTime(timezone=True))
    snapshot_hash = Column(String(64), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "snapshot_date", name="uq_audit_snapshot_day"),
    )

    def __repr__(self):
        return f"<AuditDailySnapshot(tenant={self.tenant_id}, date={self.snapshot_date}, count={self.events_count})>"


class AuditVerifyCheckpoint(Base):
    """Last-known-good (id, hash) pair left by a clean verification run."""

    __tablename__ = "audit_verify_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    verified_id = Column(IdType, nullable=False, index=True)
    verified_hash = Column(String(64), nullable=False)
    checked = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
