"""End-to-end tests for the /api/v1/audit endpoints."""
import csv
import io
import types
from datetime import datetime, timedelta, timezone

import pytest

from chainaudit.core import rate_limiter
from chainaudit.core.config import settings
from chainaudit.models import AuditEvent

BASE = "/api/v1/audit"


@pytest.fixture
def events(record_event):
    """Recent events for two tenants, a few minutes apart."""
    start = datetime.now(timezone.utc) - timedelta(hours=1)
    created = []
    plan = [
        ("LOGIN", "tenant-a", "a@example.com", None),
        ("LOGIN_FAILED", "tenant-a", "b@example.com", None),
        ("PRODUCT_CREATE", "tenant-a", "a@example.com", "product"),
        ("LOGIN", "tenant-b", "z@example.com", None),
        ("PRODUCT_DELETE", "tenant-a", "a@example.com", "product"),
    ]
    for i, (action, tenant, email, entity_type) in enumerate(plan):
        created.append(
            record_event(
                action,
                start + timedelta(minutes=i),
                tenant_id=tenant,
                actor_email=email,
                entity_type=entity_type,
                entity_id=i if entity_type else None,
                ip_address="203.0.113.7",
            )
        )
    return created


def _user_headers(tenant="tenant-a"):
    headers = {"X-API-Key": settings.API_KEY.get_secret_value()}
    if tenant:
        headers["X-Tenant-ID"] = tenant
    return headers


def _admin_headers(tenant=None):
    headers = {"X-API-Key": settings.ADMIN_API_KEY.get_secret_value()}
    if tenant:
        headers["X-Tenant-ID"] = tenant
    return headers


# =============================================================================
# Authentication & scope
# =============================================================================


class TestAccess:
    def test_missing_key(self, client):
        assert client.get(f"{BASE}/logs").status_code == 403

    def test_invalid_key(self, client):
        response = client.get(f"{BASE}/logs", headers={"X-API-Key": "nope", "X-Tenant-ID": "tenant-a"})
        assert response.status_code == 403

    def test_user_must_select_tenant(self, client):
        response = client.get(f"{BASE}/logs", headers=_user_headers(tenant=None))
        assert response.status_code == 400

    def test_verify_is_admin_only(self, user_client):
        assert user_client.get(f"{BASE}/verify").status_code == 403

    def test_snapshots_are_admin_only(self, user_client):
        assert user_client.post(f"{BASE}/snapshots").status_code == 403


# =============================================================================
# Listing
# =============================================================================


class TestLogs:
    def test_tenant_scoped_listing(self, user_client, events):
        response = user_client.get(f"{BASE}/logs")
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 4
        assert [log["id"] for log in body["logs"]] == [5, 3, 2, 1]
        assert all(log["tenant_id"] == "tenant-a" for log in body["logs"])

    def test_admin_cross_tenant_listing(self, admin_client, events):
        assert admin_client.get(f"{BASE}/logs").json()["total"] == 5

    def test_filters_and_search(self, user_client, events):
        body = user_client.get(f"{BASE}/logs", params={"actor_email": "A@example.com", "q": "product"}).json()
        assert [log["action"] for log in body["logs"]] == ["PRODUCT_DELETE", "PRODUCT_CREATE"]

    def test_limit_is_clamped(self, user_client, events):
        body = user_client.get(f"{BASE}/logs", params={"limit": 5000, "page": 0}).json()
        assert body["limit"] == 200
        assert body["page"] == 1

    def test_invalid_date(self, user_client):
        response = user_client.get(f"{BASE}/logs", params={"date_from": "not-a-date"})
        assert response.status_code == 422
        assert response.json()["code"] == "audit_query_invalid"
        assert response.json()["fields"] == ["date_from"]

    def test_inverted_date_range(self, user_client):
        response = user_client.get(
            f"{BASE}/logs", params={"date_from": "2026-03-05", "date_to": "2026-03-01"}
        )
        assert response.status_code == 422
        assert response.json()["code"] == "audit_query_invalid"


# =============================================================================
# Verification
# =============================================================================


class TestVerify:
    def test_intact_chain(self, admin_client, events):
        body = admin_client.get(f"{BASE}/verify").json()
        assert body["ok"] is True
        assert body["checked"] == 5
        assert body["end_hash"] == events[-1].hash

    def test_broken_chain_is_a_result(self, admin_client, events, db_session):
        db_session.execute(
            AuditEvent.__table__.update().where(AuditEvent.id == 2).values(actor_email="x@example.com")
        )
        db_session.commit()
        db_session.expire_all()

        response = admin_client.get(f"{BASE}/verify")
        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is False
        assert body["broken_at_id"] == 2
        assert body["reason"] == "hash_mismatch"

    def test_windowed_and_anchored(self, admin_client, events):
        first = admin_client.get(f"{BASE}/verify", params={"limit": 2}).json()
        assert first["truncated"] is True
        rest = admin_client.get(
            f"{BASE}/verify",
            params={"start_id": first["next_start_id"], "anchor_hash": first["end_hash"]},
        ).json()
        assert rest["ok"] is True
        assert rest["checked"] == 3

    def test_anchor_without_start_id_is_rejected(self, admin_client, events):
        response = admin_client.get(f"{BASE}/verify", params={"anchor_hash": "a" * 64})
        assert response.status_code == 422
        assert response.json()["code"] == "audit_query_invalid"

    def test_resume_from_checkpoint(self, admin_client, events):
        assert admin_client.get(f"{BASE}/verify", params={"resume": True}).json()["checked"] == 5
        assert admin_client.get(f"{BASE}/verify", params={"resume": True}).json()["checked"] == 0


# =============================================================================
# Analytics
# =============================================================================


class TestAnalytics:
    def test_stats_use_camel_case(self, user_client, events):
        body = user_client.get(f"{BASE}/stats", params={"days": 7}).json()
        assert body["tenantId"] == "tenant-a"
        assert body["windowDays"] == 7
        assert body["total"] == 4
        # Ties are broken alphabetically
        assert body["byAction"][0] == {"action": "LOGIN", "count": 1}
        assert body["topUsers"][0] == {"user_email": "a@example.com", "count": 3}
        assert sum(day["count"] for day in body["byDay"]) == 4

    def test_stats_window_validated(self, user_client):
        response = user_client.get(f"{BASE}/stats", params={"days": 10_000})
        assert response.status_code == 422

    def test_report(self, user_client, events):
        body = user_client.get(f"{BASE}/report").json()
        assert body["summary"]["total_events"] == 4
        assert body["summary"]["failed_logins"] == 1
        assert body["findings"]["failed_logins_by_email"] == [{"user_email": "b@example.com", "count": 1}]
        assert [e["action"] for e in body["findings"]["destructive_events"]] == ["PRODUCT_DELETE"]


# =============================================================================
# Export
# =============================================================================


class TestCsv:
    def test_export(self, user_client, events):
        response = user_client.get(f"{BASE}/csv")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.headers["content-disposition"].startswith("attachment; filename=audit_")
        assert response.headers["x-total-count"] == "4"
        assert response.headers["x-export-rows"] == "4"
        assert response.headers["x-export-truncated"] == "false"

        rows = list(csv.DictReader(io.StringIO(response.text)))
        assert [int(r["id"]) for r in rows] == [5, 3, 2, 1]

    def test_export_truncated(self, user_client, events):
        response = user_client.get(f"{BASE}/csv", params={"limit": 1})
        assert response.headers["x-export-truncated"] == "true"
        assert len(list(csv.DictReader(io.StringIO(response.text)))) == 1


# =============================================================================
# Health, snapshots, proofs
# =============================================================================


class TestChainHealth:
    def test_health(self, user_client, events):
        body = user_client.get(f"{BASE}/health").json()
        assert body["ok"] is True
        assert body["tenant_id"] == "tenant-a"
        assert body["latest_event"]["id"] == 5
        assert body["latest_snapshot"] is None


class TestSnapshotsAndProofs:
    def test_snapshot_all_tenants(self, admin_client, events):
        day = events[0].created_at.date().isoformat()
        response = admin_client.post(f"{BASE}/snapshots", params={"date": day})
        assert response.status_code == 200
        assert sorted(r["tenant_id"] for r in response.json()) == ["tenant-a", "tenant-b"]
        assert all(r["ok"] for r in response.json())

    def test_snapshot_one_tenant(self, admin_client, events):
        day = events[3].created_at.date().isoformat()
        response = admin_client.post(
            f"{BASE}/snapshots", params={"date": day}, headers={"X-Tenant-ID": "tenant-b"}
        )
        body = response.json()
        assert [r["tenant_id"] for r in body] == ["tenant-b"]
        assert body[0]["snapshot"]["events_count"] == 1

    def test_proof_round_trip(self, user_client, events):
        bundle = user_client.get(f"{BASE}/proof", params={"from_id": 1, "to_id": 5}).json()
        assert [row["id"] for row in bundle["rows"]] == [1, 2, 3, 5]

        verdict = user_client.post(f"{BASE}/proof/verify", json=bundle).json()
        assert verdict == {"ok": True, "reason": None}

        bundle["rows"][0]["actor_email"] = "forged@example.com"
        verdict = user_client.post(f"{BASE}/proof/verify", json=bundle).json()
        assert verdict == {"ok": False, "reason": "rows_root mismatch"}

    def test_malformed_bundle_is_a_verdict(self, user_client, events):
        response = user_client.post(f"{BASE}/proof/verify", json={"v": "proof-v1", "rows": [1]})
        assert response.status_code == 200
        assert response.json() == {"ok": False, "reason": "invalid bundle format"}

    def test_proof_needs_a_selector(self, user_client, events):
        response = user_client.get(f"{BASE}/proof")
        assert response.status_code == 422
        assert response.json()["code"] == "audit_query_invalid"

    def test_proof_is_per_tenant(self, admin_client, events):
        response = admin_client.get(f"{BASE}/proof", params={"from_id": 1, "to_id": 5})
        assert response.status_code == 422


# =============================================================================
# Rate limiting
# =============================================================================


class TestRateLimit:
    def test_limit_per_key_per_minute(self, user_client, monkeypatch):
        monkeypatch.setattr(settings, "AUDIT_RATE_LIMIT_PER_MINUTE", 2)
        # Pin the window so the test cannot straddle a minute boundary
        clock = types.SimpleNamespace(time=lambda: 1_800_000_000.0, monotonic=lambda: 0.0)
        monkeypatch.setattr(rate_limiter, "time", clock)

        assert user_client.get(f"{BASE}/logs").status_code == 200
        assert user_client.get(f"{BASE}/logs").status_code == 200
        response = user_client.get(f"{BASE}/logs")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
