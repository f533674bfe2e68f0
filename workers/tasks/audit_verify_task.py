"""
Hourly incremental chain verification.
"""

import logging
from typing import Optional

from chainaudit.db.session import SessionLocal
from chainaudit.services.audit_snapshot_service import AuditSnapshotService
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="workers.tasks.audit_verify_task.verify_chain_incremental",
    queue="audit",
    max_retries=3,
)
def verify_chain_incremental(self, limit: Optional[int] = None):
    """
    Resume verification from the newest checkpoint.

    A broken chain is a result, not a task failure: it is logged at error
    level and returned, never retried.
    """
    db = SessionLocal()
    try:
        result = AuditSnapshotService(db).verify_incremental(limit=limit)
        if result.ok:
            logger.info("Audit chain verified: %s", result.describe())
        return result.model_dump()
    except Exception as exc:
        db.rollback()
        logger.exception("Audit verification run failed: %s", exc)
        raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1))
    finally:
        db.close()
