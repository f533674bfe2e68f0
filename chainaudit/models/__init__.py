"""
All audit models in one place, so ``Base.metadata`` knows every table.

Usage:
    from chainaudit.models import AuditEvent, AuditChainHead
"""

from chainaudit.db.base import Base

from .audit_event import AuditChainHead, AuditEvent
from .audit_snapshot import AuditDailySnapshot, AuditVerifyCheckpoint

__all__ = [
    "Base",
    "AuditEvent",
    "AuditChainHead",
    "AuditDailySnapshot",
    "AuditVerifyCheckpoint",
]
