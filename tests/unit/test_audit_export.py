"""Tests for CSV export of audit events."""
import csv
import io
import json
from datetime import date, datetime, timezone

import pytest

from chainaudit.core.config import settings
from chainaudit.core.errors import AuditQueryError
from chainaudit.models import AuditEvent
from chainaudit.services.audit_export_service import EXPORT_COLUMNS, AuditExporter
from chainaudit.services.audit_query_service import parse_filters
from chainaudit.utils.hash_utils import canonical_json, iso_utc


def _at(day, hour=9):
    return datetime(2026, 3, day, hour, 0, tzinfo=timezone.utc)


def _parse(text):
    reader = csv.DictReader(io.StringIO(text))
    assert reader.fieldnames == EXPORT_COLUMNS
    return list(reader)


@pytest.fixture
def seeded(record_event):
    record_event("LOGIN", _at(1), actor_email="a@example.com", ip_address="1.1.1.1")
    record_event(
        "PRODUCT_UPDATE",
        _at(2),
        actor_email="a@example.com",
        entity_type="product",
        entity_id=7,
        details={"name": 'Widget, "deluxe"\nsecond line', "price": 12},
        user_agent="Mozilla/5.0 (X11; Linux), like Gecko",
        ip_address='203.0.113.5, "edge"\nproxy',
    )
    record_event("LOGIN", _at(3), tenant_id="tenant-b", actor_email="b@example.com")
    record_event("PRODUCT_DELETE", _at(4), actor_email="c@example.com", entity_type="product", entity_id=7)


class TestExport:
    def test_rows_most_recent_first(self, db_session, seeded):
        result = AuditExporter(db_session).stream("tenant-a")
        rows = _parse(result.text())

        assert [r["action"] for r in rows] == ["PRODUCT_DELETE", "PRODUCT_UPDATE", "LOGIN"]
        assert result.total_matched == 3
        assert result.exported == 3
        assert not result.truncated
        assert result.filename.startswith("audit_") and result.filename.endswith(".csv")

    def test_special_characters_survive(self, db_session, seeded):
        rows = _parse(AuditExporter(db_session).stream("tenant-a").text())
        update = rows[1]
        assert update["user_agent"] == "Mozilla/5.0 (X11; Linux), like Gecko"
        assert update["details"] == (
            '{"name":"Widget, \\"deluxe\\"\\nsecond line","price":12}'
        )
        assert update["entity_id"] == "7"

    def test_round_trip_matches_source_rows(self, db_session, seeded):
        rows = _parse(AuditExporter(db_session).stream("tenant-a").text())
        source = db_session.get(AuditEvent, int(rows[1]["id"]))

        assert rows[1]["ip_address"] == '203.0.113.5, "edge"\nproxy'
        assert rows[1] == {
            "id": str(source.id),
            "created_at": iso_utc(source.created_at),
            "tenant_id": source.tenant_id,
            "actor_user_id": "",
            "actor_email": source.actor_email,
            "action": source.action,
            "entity_type": source.entity_type,
            "entity_id": source.entity_id,
            "ip_address": source.ip_address,
            "user_agent": source.user_agent,
            "details": canonical_json(source.details),
            "prev_hash": source.prev_hash,
            "hash": source.hash,
        }
        assert json.loads(rows[1]["details"]) == source.details

    def test_nulls_are_empty_cells(self, db_session, seeded):
        login = _parse(AuditExporter(db_session).stream("tenant-a").text())[-1]
        assert login["entity_type"] == ""
        assert login["details"] == ""
        assert login["created_at"] == "2026-03-01T09:00:00.000000Z"

    def test_hashes_included(self, db_session, seeded):
        rows = _parse(AuditExporter(db_session).stream("tenant-a").text())
        assert all(len(r["hash"]) == 64 and len(r["prev_hash"]) == 64 for r in rows)

    def test_limit_truncates(self, db_session, seeded):
        result = AuditExporter(db_session).stream("tenant-a", limit=2)
        assert result.truncated
        assert result.total_matched == 3
        assert result.exported == 2
        assert len(_parse(result.text())) == 2

    def test_hard_cap(self, db_session, seeded, monkeypatch):
        monkeypatch.setattr(settings, "AUDIT_EXPORT_MAX_ROWS", 1)
        result = AuditExporter(db_session).stream("tenant-a", limit=100)
        assert result.exported == 1
        assert result.truncated

    def test_filters(self, db_session, seeded):
        filters = parse_filters(entity_type="product", date_from="2026-03-03")
        rows = _parse(AuditExporter(db_session).stream("tenant-a", filters).text())
        assert [r["action"] for r in rows] == ["PRODUCT_DELETE"]

    def test_date_to_covers_whole_day(self, db_session, seeded):
        filters = parse_filters(date_to=date(2026, 3, 2))
        rows = _parse(AuditExporter(db_session).stream("tenant-a", filters).text())
        assert [r["action"] for r in rows] == ["PRODUCT_UPDATE", "LOGIN"]

    def test_empty_result_has_header_only(self, db_session, seeded):
        filters = parse_filters(action="NOPE")
        result = AuditExporter(db_session).stream("tenant-a", filters)
        assert result.text().splitlines() == [",".join(EXPORT_COLUMNS)]

    def test_chunks_never_split_rows(self, db_session, seeded):
        result = AuditExporter(db_session).stream("tenant-a")
        chunks = list(result.chunks(rows_per_chunk=1))
        assert len(chunks) == 4
        assert len(list(csv.reader(io.StringIO(chunks[2].decode("utf-8"))))) == 1

    def test_cross_tenant(self, db_session, seeded):
        result = AuditExporter(db_session).stream(None, cross_tenant=True)
        assert result.exported == 4

    def test_inverted_range_rejected(self, db_session, seeded):
        filters = parse_filters(date_from="2026-03-05", date_to="2026-03-01")
        with pytest.raises(AuditQueryError):
            AuditExporter(db_session).stream("tenant-a", filters)

    def test_tenant_required(self, db_session):
        with pytest.raises(AuditQueryError):
            AuditExporter(db_session).stream(None)
