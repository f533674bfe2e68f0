"""
=============================================================================
CHAINAUDIT API - AUDIT LOG ENDPOINTS
=============================================================================

Read-only access to the tamper-evident audit log.

Endpoints:
    GET  /audit/logs          - Paginated, filtered listing
    GET  /audit/verify        - Chain verification (admin)
    GET  /audit/stats         - Aggregated counts over a trailing window
    GET  /audit/report        - SOC-style compliance report
    GET  /audit/csv           - CSV export
    GET  /audit/health        - Chain health for the caller's tenant
    POST /audit/snapshots     - Create daily snapshots (admin)
    GET  /audit/proof         - Proof bundle for a day or id range
    POST /audit/proof/verify  - Check a proof bundle

Authentication:
    X-API-Key on every endpoint; X-Tenant-ID selects the tenant. The admin
    key may omit X-Tenant-ID to work across tenants.
=============================================================================
"""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from chainaudit.api import deps
from chainaudit.core.config import settings
from chainaudit.core.errors import AuditQueryError
from chainaudit.core.rate_limiter import audit_rate_limit
from chainaudit.core.security import (
    AuditScope,
    UserPrincipal,
    get_audit_scope,
    require_admin,
)
from chainaudit.schemas.audit import (
    AuditHealth,
    AuditLogPage,
    AuditReport,
    AuditStats,
    LatestEvent,
    ProofBundle,
    ProofVerification,
    SnapshotRunResult,
    VerifyResult,
)
from chainaudit.services.audit_export_service import AuditExporter
from chainaudit.services.audit_proof_service import AuditProofService
from chainaudit.services.audit_query_service import AuditQueryService, parse_filters
from chainaudit.services.audit_report_service import AuditReportGenerator
from chainaudit.services.audit_snapshot_service import (
    AuditSnapshotService,
    default_snapshot_date,
)
from chainaudit.services.audit_stats_service import AuditAggregator
from chainaudit.services.chain_verifier import ChainVerifier

router = APIRouter(dependencies=[Depends(audit_rate_limit)])


def _filters(
    action: Optional[str] = Query(None, description="Exact action code"),
    actor_email: Optional[str] = Query(None, description="Exact actor email"),
    entity_type: Optional[str] = Query(None),
    date_from: Optional[str] = Query(None, description="ISO date or datetime (inclusive)"),
    date_to: Optional[str] = Query(None, description="ISO date or datetime (inclusive)"),
):
    return parse_filters(
        action=action,
        actor_email=actor_email,
        entity_type=entity_type,
        date_from=date_from,
        date_to=date_to,
    )


@router.get("/logs", response_model=AuditLogPage, summary="List audit events")
def list_logs(
    page: int = Query(1, description="1-based; lower values are clamped"),
    limit: int = Query(50, description="Clamped to 1..200"),
    q: Optional[str] = Query(None, description="Substring over email, action, entity"),
    filters=Depends(_filters),
    scope: AuditScope = Depends(get_audit_scope),
    db: Session = Depends(deps.get_db),
):
    """Most recent first."""
    filters = filters.model_copy(update={"q": (q or "").strip() or None})
    return AuditQueryService(db).list_events(
        scope.tenant_id,
        page=page,
        limit=limit,
        filters=filters,
        cross_tenant=scope.cross_tenant,
    )


@router.get("/verify", response_model=VerifyResult, summary="Verify the hash chain")
def verify_chain(
    start_id: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    anchor_hash: Optional[str] = Query(None, min_length=64, max_length=64),
    resume: bool = Query(False, description="Continue from the newest checkpoint"),
    _admin: UserPrincipal = Depends(require_admin),
    db: Session = Depends(deps.get_db),
):
    """
    Walk the global chain. A broken chain is a 200 with ``ok=false``,
    ``broken_at_id`` and ``reason``.
    """
    limit = min(limit or settings.AUDIT_VERIFY_LIMIT, settings.AUDIT_VERIFY_LIMIT)
    if resume:
        return AuditSnapshotService(db).verify_incremental(limit=limit)
    return ChainVerifier(db).verify(
        start_id=start_id, limit=limit, anchor_hash=anchor_hash
    )


@router.get("/stats", response_model=AuditStats, summary="Audit statistics")
def audit_stats(
    days: int = Query(30, ge=1),
    scope: AuditScope = Depends(get_audit_scope),
    db: Session = Depends(deps.get_db),
):
    return AuditAggregator(db).stats(
        scope.tenant_id, days, cross_tenant=scope.cross_tenant
    )


@router.get("/report", response_model=AuditReport, summary="Compliance report")
def audit_report(
    days: int = Query(7, ge=1),
    scope: AuditScope = Depends(get_audit_scope),
    db: Session = Depends(deps.get_db),
):
    return AuditReportGenerator(db).generate(
        scope.tenant_id, days, cross_tenant=scope.cross_tenant
    )


@router.get("/csv", summary="Export audit events as CSV")
def export_csv(
    limit: Optional[int] = Query(None, ge=1),
    filters=Depends(_filters),
    scope: AuditScope = Depends(get_audit_scope),
    db: Session = Depends(deps.get_db),
):
    result = AuditExporter(db).stream(
        scope.tenant_id, filters, limit=limit, cross_tenant=scope.cross_tenant
    )
    return StreamingResponse(
        result.chunks(),
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f"attachment; filename={result.filename}",
            "X-Total-Count": str(result.total_matched),
            "X-Export-Rows": str(result.exported),
            "X-Export-Truncated": "true" if result.truncated else "false",
        },
    )


@router.get("/health", response_model=AuditHealth, summary="Audit chain health")
def audit_health(
    scope: AuditScope = Depends(get_audit_scope),
    db: Session = Depends(deps.get_db),
):
    chain = ChainVerifier(db).verify(limit=settings.AUDIT_VERIFY_LIMIT)

    latest = AuditQueryService(db).latest_event(
        scope.tenant_id, cross_tenant=scope.cross_tenant
    )
    latest_event = (
        LatestEvent(id=latest.id, created_at=latest.created_at, hash=latest.hash)
        if latest
        else None
    )
    latest_snapshot = (
        AuditSnapshotService(db).latest_snapshot(scope.tenant_id)
        if scope.tenant_id
        else None
    )

    return AuditHealth(
        ok=chain.ok,
        tenant_id=scope.tenant_id,
        chain=chain,
        latest_event=latest_event,
        latest_snapshot=latest_snapshot,
    )


@router.post(
    "/snapshots",
    response_model=List[SnapshotRunResult],
    summary="Create daily snapshots",
)
def create_snapshots(
    snapshot_date: Optional[date] = Query(None, alias="date"),
    scope: AuditScope = Depends(get_audit_scope),
    _admin: UserPrincipal = Depends(require_admin),
    db: Session = Depends(deps.get_db),
):
    """Snapshot one UTC day (default: yesterday) for the tenant, or all tenants."""
    day = snapshot_date or default_snapshot_date()
    service = AuditSnapshotService(db)
    if scope.cross_tenant:
        return service.create_daily_snapshots_for_all_tenants(day)
    snapshot = service.create_daily_snapshot(scope.tenant_id, day)
    return [
        SnapshotRunResult(
            ok=True, tenant_id=scope.tenant_id, snapshot_date=day, snapshot=snapshot
        )
    ]


@router.get("/proof", response_model=ProofBundle, summary="Build a proof bundle")
def build_proof(
    proof_date: Optional[date] = Query(None, alias="date"),
    from_id: Optional[int] = Query(None, ge=1),
    to_id: Optional[int] = Query(None, ge=1),
    scope: AuditScope = Depends(get_audit_scope),
    db: Session = Depends(deps.get_db),
):
    if scope.cross_tenant:
        raise AuditQueryError("Proof bundles are per tenant; send X-Tenant-ID")
    return AuditProofService(db).build_bundle(
        scope.tenant_id, day=proof_date, from_id=from_id, to_id=to_id
    )


@router.post(
    "/proof/verify", response_model=ProofVerification, summary="Verify a proof bundle"
)
def verify_proof(
    bundle: Dict[str, Any] = Body(...),
    _scope: AuditScope = Depends(get_audit_scope),
    db: Session = Depends(deps.get_db),
):
    return AuditProofService(db).verify_bundle(bundle)
