"""
Daily per-tenant snapshots and verification checkpoints.

A snapshot pins, for one tenant and one UTC day, the first/last event ids,
the last event hash and the event count under a keyed digest. Snapshots live
outside the chain: they are upserted, and re-running a day is harmless.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chainaudit.core.config import get_snapshot_secret
from chainaudit.models.audit_event import AuditEvent
from chainaudit.models.audit_snapshot import AuditDailySnapshot, AuditVerifyCheckpoint
from chainaudit.schemas.audit import AuditSnapshotRead, SnapshotRunResult, VerifyResult
from chainaudit.services.chain_verifier import ChainVerifier
from chainaudit.utils.hash_utils import iso_utc, keyed_digest

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "snapshot-v1"


def day_bounds_utc(day: date):
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def snapshot_material(
    tenant_id: str,
    snapshot_date: date,
    count: int,
    start_id: Optional[int],
    end_id: Optional[int],
    end_hash: Optional[str],
    last_created_at: Optional[datetime],
) -> str:
    def blank(value):
        return "" if value is None else value

    return "|".join(
        [
            SNAPSHOT_VERSION,
            f"tenant={tenant_id}",
            f"date={snapshot_date.isoformat()}",
            f"count={count}",
            f"startId={blank(start_id)}",
            f"endId={blank(end_id)}",
            f"endHash={blank(end_hash)}",
            f"lastCreatedAt={iso_utc(last_created_at) if last_created_at else ''}",
        ]
    )


class AuditSnapshotService:
    def __init__(self, db: Session, secret: Optional[str] = None):
        self.db = db
        self._secret = secret

    @property
    def secret(self) -> Optional[str]:
        return self._secret if self._secret is not None else get_snapshot_secret()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def create_daily_snapshot(self, tenant_id: str, snapshot_date: date) -> AuditSnapshotRead:
        """Compute and upsert the snapshot of ``tenant_id`` for one UTC day."""
        start, end = day_bounds_utc(snapshot_date)
        max_id = self.db.scalar(select(func.max(AuditEvent.id))) or 0

        where = [
            AuditEvent.tenant_id == tenant_id,
            AuditEvent.created_at >= start,
            AuditEvent.created_at < end,
            AuditEvent.id <= max_id,
        ]
        count, start_id, end_id = self.db.execute(
            select(func.count(), func.min(AuditEvent.id), func.max(AuditEvent.id)).where(*where)
        ).one()

        end_hash = None
        last_created_at = None
        if end_id is not None:
            last = self.db.get(AuditEvent, end_id)
            end_hash = last.hash
            last_created_at = last.created_at

        snapshot_hash = keyed_digest(
            snapshot_material(
                tenant_id, snapshot_date, count, start_id, end_id, end_hash, last_created_at
            ),
            self.secret,
        )
        values = dict(
            start_id=start_id,
            end_id=end_id,
            end_hash=end_hash,
            events_count=count,
            last_created_at=last_created_at,
            snapshot_hash=snapshot_hash,
        )

        try:
            row = self._upsert(tenant_id, snapshot_date, values)
        except IntegrityError:
            # Another worker inserted the same day first; update theirs
            self.db.rollback()
            row = self._upsert(tenant_id, snapshot_date, values)

        logger.info(
            "Audit snapshot tenant=%s date=%s count=%s", tenant_id, snapshot_date, count
        )
        return AuditSnapshotRead.model_validate(row)

    def _upsert(self, tenant_id: str, snapshot_date: date, values: dict) -> AuditDailySnapshot:
        row = self.db.scalars(
            select(AuditDailySnapshot).where(
                AuditDailySnapshot.tenant_id == tenant_id,
                AuditDailySnapshot.snapshot_date == snapshot_date,
            )
        ).first()
        if row is None:
            row = AuditDailySnapshot(tenant_id=tenant_id, snapshot_date=snapshot_date)
            self.db.add(row)
        for key, value in values.items():
            setattr(row, key, value)
        self.db.commit()
        self.db.refresh(row)
        return row

    def tenant_ids(self) -> List[str]:
        return list(
            self.db.scalars(
                select(AuditEvent.tenant_id)
                .where(AuditEvent.tenant_id.isnot(None))
                .distinct()
                .order_by(AuditEvent.tenant_id)
            )
        )

    def create_daily_snapshots_for_all_tenants(
        self, snapshot_date: date
    ) -> List[SnapshotRunResult]:
        """One snapshot per tenant seen in the log; failures are reported per tenant."""
        results = []
        for tenant_id in self.tenant_ids():
            try:
                snapshot = self.create_daily_snapshot(tenant_id, snapshot_date)
                results.append(
                    SnapshotRunResult(
                        ok=True,
                        tenant_id=tenant_id,
                        snapshot_date=snapshot_date,
                        snapshot=snapshot,
                    )
                )
            except Exception as exc:
                self.db.rollback()
                logger.exception("Audit snapshot failed for tenant=%s", tenant_id)
                results.append(
                    SnapshotRunResult(
                        ok=False,
                        tenant_id=tenant_id,
                        snapshot_date=snapshot_date,
                        error=str(exc),
                    )
                )
        return results

    def latest_snapshot(self, tenant_id: str) -> Optional[AuditSnapshotRead]:
        row = self.db.scalars(
            select(AuditDailySnapshot)
            .where(AuditDailySnapshot.tenant_id == tenant_id)
            .order_by(AuditDailySnapshot.snapshot_date.desc())
            .limit(1)
        ).first()
        return AuditSnapshotRead.model_validate(row) if row else None

    def verify_snapshot(self, snapshot: AuditSnapshotRead) -> bool:
        """Recompute a stored snapshot's keyed digest."""
        expected = keyed_digest(
            snapshot_material(
                snapshot.tenant_id,
                snapshot.snapshot_date,
                snapshot.events_count,
                snapshot.start_id,
                snapshot.end_id,
                snapshot.end_hash,
                snapshot.last_created_at,
            ),
            self.secret,
        )
        return expected == snapshot.snapshot_hash

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def latest_checkpoint(self) -> Optional[AuditVerifyCheckpoint]:
        return self.db.scalars(
            select(AuditVerifyCheckpoint)
            .order_by(AuditVerifyCheckpoint.verified_id.desc(), AuditVerifyCheckpoint.id.desc())
            .limit(1)
        ).first()

    def save_checkpoint(self, result: VerifyResult) -> Optional[AuditVerifyCheckpoint]:
        """Persist the end of a clean run; broken or empty runs leave no checkpoint."""
        if not result.ok or not result.checked or result.end_id is None:
            return None
        checkpoint = AuditVerifyCheckpoint(
            verified_id=result.end_id,
            verified_hash=result.end_hash,
            checked=result.checked,
        )
        self.db.add(checkpoint)
        self.db.commit()
        return checkpoint

    def verify_incremental(
        self,
        limit: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
    ) -> VerifyResult:
        """Verify from the newest checkpoint onward and checkpoint a clean run."""
        verifier = ChainVerifier(self.db)
        checkpoint = self.latest_checkpoint()
        if checkpoint is None:
            result = verifier.verify(limit=limit, deadline_seconds=deadline_seconds)
        else:
            result = verifier.verify(
                start_id=checkpoint.verified_id + 1,
                anchor_hash=checkpoint.verified_hash,
                limit=limit,
                deadline_seconds=deadline_seconds,
            )

        if result.ok:
            self.save_checkpoint(result)
        else:
            logger.error(
                "Incremental audit verification BROKEN at id=%s: %s",
                result.broken_at_id,
                result.reason,
            )
        return result


def default_snapshot_date(now: Optional[datetime] = None) -> date:
    """The previous UTC day, which is what the nightly job snapshots."""
    now = now or datetime.now(timezone.utc)
    return (now.astimezone(timezone.utc) - timedelta(days=1)).date()
