"""
ChainAudit Services Module.

Services:
    - AuditRecorder: appends events to the hash chain
    - ChainVerifier: detects tampering (hash_mismatch, missing_id, out_of_order)
    - AuditAggregator: tenant-scoped statistics
    - AuditReportGenerator: SOC-style compliance report
    - AuditExporter: CSV export
    - AuditQueryService: paginated listing
    - AuditSnapshotService: daily snapshots and verification checkpoints
    - AuditProofService: self-verifying proof bundles
"""

from .audit_export_service import AuditExporter, ExportResult
from .audit_proof_service import AuditProofService
from .audit_query_service import AuditQueryService, parse_filters
from .audit_recorder import AuditRecorder
from .audit_report_service import AuditReportGenerator, ReportPolicy
from .audit_snapshot_service import AuditSnapshotService
from .audit_stats_service import AuditAggregator
from .chain_verifier import ChainVerifier, verify_records

__all__ = [
    "AuditAggregator",
    "AuditExporter",
    "AuditProofService",
    "AuditQueryService",
    "AuditRecorder",
    "AuditReportGenerator",
    "AuditSnapshotService",
    "ChainVerifier",
    "ExportResult",
    "ReportPolicy",
    "parse_filters",
    "verify_records",
]
