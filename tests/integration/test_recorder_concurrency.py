"""Concurrent appends must still produce one gapless, verifiable chain."""
from concurrent.futures import ThreadPoolExecutor

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from chainaudit.models import AuditEvent
from chainaudit.schemas.audit import AuditEventCreate
from chainaudit.services.audit_recorder import AuditRecorder
from chainaudit.services.chain_verifier import ChainVerifier

WRITERS = 50


def test_parallel_writers_form_a_single_chain(file_engine):
    Session = sessionmaker(bind=file_engine, autoflush=False)

    def write(n):
        session = Session()
        try:
            return AuditRecorder(session).append(
                AuditEventCreate(
                    action="STOCK_IN",
                    tenant_id=f"tenant-{n % 3}",
                    entity_type="product",
                    entity_id=n,
                    details={"writer": n},
                )
            ).id
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=10) as pool:
        ids = list(pool.map(write, range(WRITERS)))

    assert sorted(ids) == list(range(1, WRITERS + 1))

    session = Session()
    try:
        rows = session.scalars(select(AuditEvent).order_by(AuditEvent.id)).all()
        for prev, current in zip(rows, rows[1:]):
            assert current.prev_hash == prev.hash
            assert current.created_at >= prev.created_at

        result = ChainVerifier(session).verify()
        assert result.ok
        assert result.checked == WRITERS
    finally:
        session.close()
