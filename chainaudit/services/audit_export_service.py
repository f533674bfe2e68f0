from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from chainaudit.core.config import settings
from chainaudit.models.audit_event import AuditEvent
from chainaudit.schemas.audit import AuditFilters
from chainaudit.services.audit_query_service import filter_clauses, tenant_clauses
from chainaudit.utils.hash_utils import canonical_json, iso_utc

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "id",
    "created_at",
    "tenant_id",
    "actor_user_id",
    "actor_email",
    "action",
    "entity_type",
    "entity_id",
    "ip_address",
    "user_agent",
    "details",
    "prev_hash",
    "hash",
]
ROWS_PER_CHUNK = 500


def _cell(value) -> str:
    return "" if value is None else str(value)


def _csv_row(event: AuditEvent) -> List[str]:
    return [
        str(event.id),
        iso_utc(event.created_at),
        _cell(event.tenant_id),
        _cell(event.actor_user_id),
        _cell(event.actor_email),
        event.action,
        _cell(event.entity_type),
        _cell(event.entity_id),
        _cell(event.ip_address),
        _cell(event.user_agent),
        "" if event.details is None else canonical_json(event.details),
        event.prev_hash,
        event.hash,
    ]


@dataclass
class ExportResult:
    """
    A materialized export, most recent event first.

    ``total_matched`` counts every row the filters matched; ``exported`` is
    what made it under the cap.
    """

    total_matched: int
    exported: int
    truncated: bool
    rows: List[List[str]] = field(default_factory=list, repr=False)
    filename: str = "audit.csv"

    def chunks(self, rows_per_chunk: int = ROWS_PER_CHUNK) -> Iterator[bytes]:
        """Header chunk, then whole rows only; no row is ever split."""
        yield self._encode([EXPORT_COLUMNS])
        for i in range(0, len(self.rows), rows_per_chunk):
            yield self._encode(self.rows[i : i + rows_per_chunk])

    def text(self) -> str:
        return b"".join(self.chunks()).decode("utf-8")

    @staticmethod
    def _encode(rows: List[List[str]]) -> bytes:
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerows(rows)
        return output.getvalue().encode("utf-8")


class AuditExporter:
    def __init__(self, db: Session):
        self.db = db

    def stream(
        self,
        tenant_id: Optional[str],
        filters: Optional[AuditFilters] = None,
        limit: Optional[int] = None,
        cross_tenant: bool = False,
    ) -> ExportResult:
        hard_cap = settings.AUDIT_EXPORT_MAX_ROWS
        if limit is None:
            limit = hard_cap
        limit = max(1, min(limit, hard_cap))

        clauses = tenant_clauses(tenant_id, cross_tenant) + filter_clauses(filters)

        # Snapshot bound keeps the count and the rows describing the same prefix
        max_id = self.db.scalar(select(func.max(AuditEvent.id))) or 0
        clauses.append(AuditEvent.id <= max_id)

        total = self.db.scalar(
            select(func.count()).select_from(AuditEvent).where(*clauses)
        ) or 0

        rows = [
            _csv_row(event)
            for event in self.db.scalars(
                select(AuditEvent)
                .where(*clauses)
                .order_by(AuditEvent.id.desc())
                .limit(limit)
            )
        ]

        truncated = total > len(rows)
        if truncated:
            logger.warning("Audit export capped to %s rows (total=%s)", limit, total)

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        return ExportResult(
            total_matched=total,
            exported=len(rows),
            truncated=truncated,
            rows=rows,
            filename=f"audit_{timestamp}.csv",
        )
