"""
Tamper detection over the audit chain.

Verification is read-only. A broken chain is reported as a result, never
raised: ``VerifyResult(ok=False, broken_at_id=..., reason=...)``.
"""

import logging
import time
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from chainaudit.core.config import get_hash_secret, settings
from chainaudit.core.errors import AuditQueryError
from chainaudit.models.audit_event import AuditEvent
from chainaudit.schemas.audit import VerifyResult
from chainaudit.utils.hash_utils import (
    CHAINED_FIELDS,
    GENESIS_HASH,
    canonical_event,
    chain_digest,
    digests_equal,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 1000


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name)


class ChainCursor:
    """Running state of a verification pass: last good (id, hash)."""

    def __init__(self, prev_id: int, prev_hash: str, secret: Optional[str]):
        self.prev_id = prev_id
        self.prev_hash = prev_hash
        self.secret = secret
        self.checked = 0
        self.first_id: Optional[int] = None

    def feed(self, record: Any) -> Optional[str]:
        """Check one record; returns the failure reason or None."""
        record_id = _field(record, "id")

        if record_id <= self.prev_id:
            return "out_of_order"
        if record_id != self.prev_id + 1:
            return "missing_id"
        if not digests_equal(_field(record, "prev_hash"), self.prev_hash):
            return "hash_mismatch"

        fields = {name: _field(record, name) for name in CHAINED_FIELDS}
        expected = chain_digest(canonical_event(fields), self.prev_hash, self.secret)
        stored = _field(record, "hash")
        if not digests_equal(stored, expected):
            return "hash_mismatch"

        if self.first_id is None:
            self.first_id = record_id
        self.prev_id = record_id
        self.prev_hash = stored
        self.checked += 1
        return None

    def result(self, start_id: Optional[int], **extra) -> VerifyResult:
        broken = extra.get("broken_at_id") is not None
        if start_id is None:
            start_id = self.first_id
        if start_id is None and broken:
            # Broke on the very first record
            start_id = self.prev_id + 1
        return VerifyResult(
            ok=not broken,
            checked=self.checked,
            start_id=start_id,
            end_id=self.prev_id if self.checked else None,
            end_hash=self.prev_hash if self.checked else None,
            **extra,
        )


def verify_records(
    records: Iterable[Any],
    prev_id: int = 0,
    prev_hash: str = GENESIS_HASH,
    secret: Optional[str] = None,
) -> VerifyResult:
    """
    Verify an id-ordered sequence of records (ORM rows or mappings).

    ``prev_id``/``prev_hash`` describe the record just before the sequence;
    the defaults mean the sequence starts at the genesis record (id 1).
    """
    cursor = ChainCursor(prev_id, prev_hash, secret)
    for record in records:
        reason = cursor.feed(record)
        if reason is not None:
            return cursor.result(None, broken_at_id=_field(record, "id"), reason=reason)
    return cursor.result(None)


class ChainVerifier:
    def __init__(self, db: Session, secret: Optional[str] = None):
        self.db = db
        self._secret = secret

    @property
    def secret(self) -> Optional[str]:
        return self._secret if self._secret is not None else get_hash_secret()

    def verify(
        self,
        start_id: Optional[int] = None,
        limit: Optional[int] = None,
        anchor_hash: Optional[str] = None,
        deadline_seconds: Optional[float] = None,
    ) -> VerifyResult:
        """
        Walk up to ``limit`` records in ascending id order from ``start_id``.

        Starting at the beginning chains from the genesis hash. A later
        ``start_id`` chains from ``anchor_hash`` when given, otherwise from
        the stored hash of the record before it.

        Raises:
            AuditQueryError: ``anchor_hash`` without a ``start_id`` past 1
        """
        if anchor_hash and (start_id is None or start_id <= 1):
            raise AuditQueryError(
                "anchor_hash requires start_id greater than 1",
                detail={"start_id": start_id},
            )
        limit = max(1, limit or settings.AUDIT_VERIFY_LIMIT)
        if deadline_seconds is None:
            deadline_seconds = settings.AUDIT_VERIFY_DEADLINE_SECONDS
        deadline = (
            time.monotonic() + deadline_seconds if deadline_seconds else None
        )

        # Records committed after this point are outside the scan
        max_id = self.db.scalar(select(func.max(AuditEvent.id)))

        if start_id is None or start_id <= 1:
            start_id = None
            cursor = ChainCursor(0, GENESIS_HASH, self.secret)
            lower = 1
        elif anchor_hash:
            cursor = ChainCursor(start_id - 1, anchor_hash, self.secret)
            lower = start_id
        else:
            cursor = self._cursor_from_predecessor(start_id)
            lower = start_id

        if max_id is None or lower > max_id:
            return cursor.result(start_id)

        while cursor.checked < limit:
            if deadline is not None and time.monotonic() >= deadline:
                logger.info("Chain verification hit its deadline at id=%s", cursor.prev_id)
                return cursor.result(
                    start_id, truncated=True, next_start_id=lower
                )

            batch = self.db.scalars(
                select(AuditEvent)
                .where(AuditEvent.id >= lower, AuditEvent.id <= max_id)
                .order_by(AuditEvent.id.asc())
                .limit(min(BATCH_SIZE, limit - cursor.checked))
            ).all()
            if not batch:
                return cursor.result(start_id)

            for record in batch:
                reason = cursor.feed(record)
                if reason is not None:
                    logger.warning(
                        "Audit chain BROKEN at id=%s: %s", record.id, reason
                    )
                    return cursor.result(
                        start_id, broken_at_id=record.id, reason=reason
                    )
            lower = batch[-1].id + 1
            if lower > max_id:
                return cursor.result(start_id)

        # Limit reached with rows left before max_id
        return cursor.result(start_id, truncated=True, next_start_id=lower)

    def _cursor_from_predecessor(self, start_id: int) -> ChainCursor:
        prev = self.db.execute(
            select(AuditEvent.id, AuditEvent.hash)
            .where(AuditEvent.id < start_id)
            .order_by(AuditEvent.id.desc())
            .limit(1)
        ).first()
        if prev is None:
            # No predecessor at all: the first record must be the genesis one
            return ChainCursor(0, GENESIS_HASH, self.secret)
        return ChainCursor(prev.id, prev.hash, self.secret)
