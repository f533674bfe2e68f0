import os

# Settings are read at import time; pin a hermetic test environment first.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_DIR", "")
os.environ.setdefault("API_KEY", "user-test-key")
os.environ.setdefault("ADMIN_API_KEY", "admin-test-key")
os.environ.setdefault("AUDIT_HASH_SECRET", "test-hash-secret")

from datetime import datetime, timezone  # noqa: E402
from typing import Callable  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from chainaudit.api import deps as api_deps  # noqa: E402
from chainaudit.core import rate_limiter  # noqa: E402
from chainaudit.core.config import settings  # noqa: E402
from chainaudit.db.session import build_engine  # noqa: E402
from chainaudit.main import app  # noqa: E402
from chainaudit.models import Base  # noqa: E402
from chainaudit.schemas.audit import AuditEventCreate  # noqa: E402
from chainaudit.services.audit_recorder import AuditRecorder  # noqa: E402

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"

# -----------------------------------------------------------------------------
# Database Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture(scope="function")
def db_engine():
    """
    Fresh in-memory SQLite database per test.
    StaticPool keeps the single connection alive for every session.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    """
    Session on the per-test database.

    No outer transaction: the recorder commits, and every test gets its
    own database anyway.
    """
    session = sessionmaker(bind=db_engine, autoflush=False)()

    yield session

    session.close()


@pytest.fixture(scope="function")
def file_engine(tmp_path):
    """File-backed SQLite for tests that need real per-thread connections."""
    engine = build_engine(f"sqlite:///{tmp_path / 'audit.db'}")
    Base.metadata.create_all(engine)

    yield engine
    engine.dispose()


# -----------------------------------------------------------------------------
# Event helpers
# -----------------------------------------------------------------------------


@pytest.fixture
def record_event(db_session) -> Callable:
    """
    Append one event with a pinned timestamp.

    Timestamps are clamped to be non-decreasing, so seed in chronological
    order.
    """

    def _record(action: str, at: datetime = None, tenant_id: str = TENANT, **fields):
        at = at or datetime.now(timezone.utc)
        recorder = AuditRecorder(db_session, clock=lambda: at)
        return recorder.append(
            AuditEventCreate(action=action, tenant_id=tenant_id, **fields)
        )

    return _record


# -----------------------------------------------------------------------------
# Client Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture(scope="function")
def client(db_session):
    """
    TestClient with overridden get_db dependency to use the isolated db_session.
    """

    def override_get_db():
        yield db_session

    app.dependency_overrides[api_deps.get_db] = override_get_db
    rate_limiter.use_in_memory_backend()

    # Using 'with' context manager to trigger lifespan events (startup/shutdown)
    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def admin_client(client):
    """
    Authenticated client with Admin privileges and no tenant (cross-tenant).
    """
    client.headers.update({"X-API-Key": settings.ADMIN_API_KEY.get_secret_value()})
    return client


@pytest.fixture(scope="function")
def user_client(client):
    """
    Authenticated client with Standard User privileges scoped to TENANT.
    """
    client.headers.update(
        {"X-API-Key": settings.API_KEY.get_secret_value(), "X-Tenant-ID": TENANT}
    )
    return client
