"""Tests for the request identity handed to AuditRecorder.record."""
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from chainaudit.api.deps import get_actor_context
from chainaudit.schemas.audit import AuditActorContext


def _actor_app():
    app = FastAPI()

    @app.get("/whoami")
    def whoami(actor: AuditActorContext = Depends(get_actor_context)):
        return actor.model_dump()

    return app


def _behind_proxy(app, proxy_ip="10.0.0.7", state=None):
    """Serve ``app`` as if every request arrived through ``proxy_ip``."""

    async def asgi(scope, receive, send):
        if scope["type"] == "http":
            scope = dict(scope, client=(proxy_ip, 50000), state=dict(state or {}))
        await app(scope, receive, send)

    return asgi


def test_headers_from_trusted_proxy():
    with TestClient(_behind_proxy(_actor_app())) as client:
        response = client.get(
            "/whoami",
            headers={
                "X-Tenant-ID": "tenant-a",
                "X-Forwarded-For": "203.0.113.77, 10.0.0.3",
                "User-Agent": "inventory-ui/2.1",
            },
        )
    assert response.status_code == 200
    assert response.json() == {
        "tenant_id": "tenant-a",
        "actor_user_id": None,
        "actor_email": None,
        "ip_address": "203.0.113.77",
        "user_agent": "inventory-ui/2.1",
    }


def test_untrusted_peer_keeps_its_own_address():
    app = _behind_proxy(_actor_app(), proxy_ip="198.51.100.4")
    with TestClient(app) as client:
        body = client.get("/whoami", headers={"X-Forwarded-For": "203.0.113.77"}).json()
    assert body["ip_address"] == "198.51.100.4"
    assert body["tenant_id"] is None


def test_authenticated_user_on_request_state_wins():
    state = {"tenant_id": "tenant-b", "user_id": 42, "user_email": "ops@example.com"}
    with TestClient(_behind_proxy(_actor_app(), state=state)) as client:
        body = client.get("/whoami", headers={"X-Tenant-ID": "tenant-a"}).json()
    assert body["tenant_id"] == "tenant-b"
    assert body["actor_user_id"] == "42"
    assert body["actor_email"] == "ops@example.com"
