"""
=============================================================================
CHAINAUDIT - ERROR HANDLING MODULE
=============================================================================
Audit error taxonomy and global exception handlers.

Taxonomy:
- AuditWriteError: an append could not be persisted. The transaction was
  rolled back wholesale; the caller decides how to fail or compensate.
- AuditQueryError: a read was rejected (bad date range, bad scope, bad
  filter value). Never silently defaulted.
- Integrity failures are NOT exceptions: the verifier returns them as a
  result (ok=false, broken_at_id, reason).

Usage:
    # In main.py
    from chainaudit.core.errors import register_exception_handlers
    register_exception_handlers(app)
=============================================================================
"""

import logging
import traceback
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from chainaudit.core.config import settings

logger = logging.getLogger(__name__)


class AuditError(Exception):
    """Base class for audit subsystem errors."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "audit_error"

    def __init__(self, message: str, *, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class AuditWriteError(AuditError):
    """Append rejected and rolled back (storage unavailable, constraint violation)."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "audit_write_failed"


class AuditQueryError(AuditError):
    """Invalid read request (date range, filter value, tenant scope)."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "audit_query_invalid"


def register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app."""

    @app.exception_handler(AuditError)
    async def audit_error_handler(request: Request, exc: AuditError):
        logger.warning(
            "%s on %s %s: %s",
            exc.code,
            request.method,
            request.url.path,
            exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code, **exc.detail},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Catch-all handler for unhandled exceptions.

        - Logs the full traceback for debugging
        - Returns a generic error message to prevent info leakage
        - In debug mode, includes more details
        """
        logger.error(
            f"Unhandled exception on {request.method} {request.url.path}:\n"
            f"{traceback.format_exc()}"
        )

        if settings.DEBUG:
            return JSONResponse(
                status_code=500,
                content={
                    "detail": "Internal Server Error",
                    "error_type": type(exc).__name__,
                    "message": str(exc),
                    "path": request.url.path,
                },
            )
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal Server Error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )
