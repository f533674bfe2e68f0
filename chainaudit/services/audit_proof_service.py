"""
Self-verifying proof bundles.

A bundle carries the rows of one tenant for one UTC day (or an id range),
the matching daily snapshot if there is one, a root digest over the rows,
and a keyed ``bundle_hash`` over everything but the rows themselves. Anyone
holding the key can check that nothing in the bundle was altered.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from chainaudit.core.config import get_snapshot_secret, settings
from chainaudit.core.errors import AuditQueryError
from chainaudit.models.audit_event import AuditEvent
from chainaudit.models.audit_snapshot import AuditDailySnapshot
from chainaudit.schemas.audit import ProofBundle, ProofVerification
from chainaudit.services.audit_snapshot_service import day_bounds_utc
from chainaudit.utils.hash_utils import (
    canonical_json,
    digests_equal,
    iso_utc,
    keyed_digest,
    sha256_hex,
)

logger = logging.getLogger(__name__)

PROOF_VERSION = "proof-v1"

ROW_FIELDS = (
    "id",
    "tenant_id",
    "actor_user_id",
    "actor_email",
    "action",
    "entity_type",
    "entity_id",
    "details",
    "ip_address",
    "user_agent",
    "prev_hash",
    "hash",
    "created_at",
)


def normalize_row(row: Any) -> Dict[str, Any]:
    """Stable, JSON-native view of an event (ORM row or decoded mapping)."""
    out = {}
    for name in ROW_FIELDS:
        value = row.get(name) if isinstance(row, Mapping) else getattr(row, name)
        if name == "created_at" and isinstance(value, datetime):
            value = iso_utc(value)
        out[name] = value
    return out


def rows_root(rows: List[Dict[str, Any]]) -> str:
    """sha256 of the '|'-joined sha256 of each row's canonical JSON."""
    digests = [sha256_hex(canonical_json(row)) for row in rows]
    return sha256_hex("|".join(digests))


def _bundle_material(bundle: Mapping[str, Any]) -> str:
    return canonical_json(
        {
            "v": PROOF_VERSION,
            "generated_at": bundle.get("generated_at"),
            "summary": bundle.get("summary"),
            "snapshot": bundle.get("snapshot"),
            "rows_root": bundle.get("rows_root"),
        }
    )


def _snapshot_payload(snapshot: Optional[AuditDailySnapshot]) -> Optional[Dict[str, Any]]:
    if snapshot is None:
        return None
    return {
        "tenant_id": snapshot.tenant_id,
        "snapshot_date": snapshot.snapshot_date.isoformat(),
        "start_id": snapshot.start_id,
        "end_id": snapshot.end_id,
        "end_hash": snapshot.end_hash,
        "events_count": snapshot.events_count,
        "last_created_at": iso_utc(snapshot.last_created_at)
        if snapshot.last_created_at
        else None,
        "snapshot_hash": snapshot.snapshot_hash,
    }


class AuditProofService:
    def __init__(self, db: Session, secret: Optional[str] = None):
        self.db = db
        self._secret = secret

    @property
    def secret(self) -> Optional[str]:
        return self._secret if self._secret is not None else get_snapshot_secret()

    def build_bundle(
        self,
        tenant_id: str,
        day: Optional[date] = None,
        from_id: Optional[int] = None,
        to_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ProofBundle:
        """
        Build a bundle for either one UTC ``day`` or the id range
        ``from_id..to_id`` (inclusive) of ``tenant_id``.

        Raises:
            AuditQueryError: missing tenant, both or neither selector, bad range
        """
        if not tenant_id:
            raise AuditQueryError("tenant_id is required for proof bundles")

        has_range = from_id is not None or to_id is not None
        if (day is None) == (not has_range):
            raise AuditQueryError("Provide either date or from_id and to_id")

        where = [AuditEvent.tenant_id == tenant_id]
        snapshot = None
        if day is not None:
            mode = "date"
            start, end = day_bounds_utc(day)
            where += [AuditEvent.created_at >= start, AuditEvent.created_at < end]
            snapshot = self.db.scalars(
                select(AuditDailySnapshot).where(
                    AuditDailySnapshot.tenant_id == tenant_id,
                    AuditDailySnapshot.snapshot_date == day,
                )
            ).first()
        else:
            mode = "range"
            if from_id is None or to_id is None or from_id > to_id:
                raise AuditQueryError(
                    "from_id and to_id must both be set with from_id <= to_id",
                    detail={"from_id": from_id, "to_id": to_id},
                )
            where += [AuditEvent.id >= from_id, AuditEvent.id <= to_id]

        max_rows = settings.AUDIT_EXPORT_MAX_ROWS
        events = self.db.scalars(
            select(AuditEvent)
            .where(*where)
            .order_by(AuditEvent.id.asc())
            .limit(max_rows + 1)
        ).all()
        if len(events) > max_rows:
            raise AuditQueryError(
                f"Proof range exceeds {max_rows} events; narrow it",
                detail={"max_rows": max_rows},
            )

        rows = [normalize_row(event) for event in events]
        summary = {
            "tenant_id": tenant_id,
            "mode": mode,
            "date": day.isoformat() if day else None,
            "from_id": from_id,
            "to_id": to_id,
            "count": len(rows),
            "start_id": rows[0]["id"] if rows else None,
            "end_id": rows[-1]["id"] if rows else None,
            "start_prev_hash": rows[0]["prev_hash"] if rows else None,
            "end_hash": rows[-1]["hash"] if rows else None,
            "last_created_at": rows[-1]["created_at"] if rows else None,
        }

        bundle = {
            "v": PROOF_VERSION,
            "generated_at": iso_utc(now or datetime.now(timezone.utc)),
            "summary": summary,
            "snapshot": _snapshot_payload(snapshot),
            "rows_root": rows_root(rows),
        }
        bundle["bundle_hash"] = keyed_digest(_bundle_material(bundle), self.secret)
        bundle["rows"] = rows

        logger.info(
            "Audit proof bundle built tenant=%s mode=%s rows=%s",
            tenant_id,
            mode,
            len(rows),
        )
        return ProofBundle(**bundle)

    def verify_bundle(self, bundle: Mapping[str, Any]) -> ProofVerification:
        """Recompute rows_root and bundle_hash of a (decoded) bundle."""
        if not isinstance(bundle, Mapping) or bundle.get("v") != PROOF_VERSION:
            return ProofVerification(ok=False, reason="invalid bundle format")

        raw_rows = bundle.get("rows") or []
        summary = bundle.get("summary") or {}
        if (
            not isinstance(raw_rows, list)
            or not all(isinstance(row, Mapping) for row in raw_rows)
            or not isinstance(summary, Mapping)
        ):
            return ProofVerification(ok=False, reason="invalid bundle format")

        rows = [normalize_row(row) for row in raw_rows]
        if not digests_equal(rows_root(rows), bundle.get("rows_root")):
            return ProofVerification(ok=False, reason="rows_root mismatch")

        if summary.get("count") != len(rows):
            return ProofVerification(ok=False, reason="row count mismatch")

        expected = keyed_digest(_bundle_material(bundle), self.secret)
        if not digests_equal(expected, bundle.get("bundle_hash")):
            return ProofVerification(ok=False, reason="bundle_hash mismatch")

        return ProofVerification(ok=True)
