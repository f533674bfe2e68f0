from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from chainaudit.db.base import Base

# BIGINT in PostgreSQL, plain INTEGER in SQLite (rowid alias)
IdType = BigInteger().with_variant(Integer(), "sqlite")


class AuditEvent(Base):
    """
    One privileged action, chained to its predecessor by ``prev_hash``.

    Rows are insert-only: ids are assigned by the recorder under the chain
    head lock, never by a sequence, so the id space stays gapless.
    """

    __tablename__ = "audit_events"

    id = Column(IdType, primary_key=True, autoincrement=False)

    # Who
    tenant_id = Column(String(64), index=True)  # NULL for platform-level events
    actor_user_id = Column(String(64))
    actor_email = Column(String(255), index=True)

    # What
    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(100))
    entity_id = Column(String(128))

    # Context
    details = Column(JSON().with_variant(JSONB(), "postgresql"))
    ip_address = Column(String(64))
    user_agent = Column(Text)

    # When
    created_at = Column(DateTime(timezone=True), nullable=False)

    # Chain
    prev_hash = Column(String(64), nullable=False)
    hash = Column(String(64), nullable=False, unique=True)

    __table_args__ = (
        Index("ix_audit_events_tenant_created", "tenant_id", "created_at"),
    )

    def __repr__(self):
        return f"<AuditEvent(id={self.id}, action={self.action}, tenant={self.tenant_id})>"


class AuditChainHead(Base):
    """
    Tail pointer of the global chain (single row, id=1).

    Locked FOR UPDATE by every append; re-derived from the newest event when
    missing.
    """

    __tablename__ = "audit_chain_head"

    id = Column(Integer, primary_key=True, autoincrement=False)
    last_id = Column(IdType, nullable=False)
    last_hash = Column(String(64), nullable=False)
    last_created_at = Column(DateTime(timezone=True))
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


@event.listens_for(AuditEvent, "before_update")
def _reject_update(mapper, connection, target):
    raise ValueError("audit_events rows are immutable")


@event.listens_for(AuditEvent, "before_delete")
def _reject_delete(mapper, connection, target):
    raise ValueError("audit_events rows cannot be deleted")
