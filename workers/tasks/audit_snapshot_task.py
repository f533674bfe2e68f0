"""
Daily audit snapshot task.
"""

import logging
from datetime import date
from typing import Optional

from chainaudit.db.session import SessionLocal
from chainaudit.services.audit_snapshot_service import (
    AuditSnapshotService,
    default_snapshot_date,
)
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="workers.tasks.audit_snapshot_task.create_daily_snapshots",
    queue="audit",
    max_retries=3,
)
def create_daily_snapshots(self, snapshot_date: Optional[str] = None):
    """
    Snapshot every tenant for one UTC day (default: yesterday).
    """
    day = date.fromisoformat(snapshot_date) if snapshot_date else default_snapshot_date()
    db = SessionLocal()
    try:
        results = AuditSnapshotService(db).create_daily_snapshots_for_all_tenants(day)
        failed = [r.tenant_id for r in results if not r.ok]
        if failed:
            logger.error("Audit snapshots failed for tenants: %s", failed)
        logger.info(
            "Audit snapshots for %s: %d tenants, %d failed", day, len(results), len(failed)
        )
        return {
            "success": not failed,
            "snapshot_date": day.isoformat(),
            "tenants": len(results),
            "failed": failed,
        }
    except Exception as exc:
        db.rollback()
        logger.exception("Audit snapshot run failed: %s", exc)
        raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1))
    finally:
        db.close()
