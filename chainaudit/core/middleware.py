import logging
import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("chainaudit.latency")

# Service Level Objectives (SLOs) - max latency per endpoint family
SLO_THRESHOLDS = {
    "/api/v1/audit/logs": 0.400,
    "/api/v1/audit/stats": 0.800,
    "/api/v1/audit/report": 1.500,
    "/api/v1/audit/csv": 3.000,
    "/api/v1/audit/verify": 10.000,
    "/api/v1/health/": 0.200,
}


class LatencyMonitorMiddleware(BaseHTTPMiddleware):
    """
    Middleware to monitor request latency and check against defined SLOs.
    Logs warnings if SLO is breached.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time = time.perf_counter() - start_time

        # Add processing time to headers for transparency
        response.headers["X-Process-Time"] = str(process_time)

        self._check_slo(request.url.path, process_time)

        return response

    def _check_slo(self, path: str, duration: float):
        budget = None
        # Longest configured prefix wins
        for slo_path in sorted(SLO_THRESHOLDS, key=len, reverse=True):
            if path == slo_path or (
                slo_path.endswith("/") and path.startswith(slo_path)
            ) or path.startswith(slo_path + "/"):
                budget = SLO_THRESHOLDS[slo_path]
                break

        if budget and duration > budget:
            logger.warning(
                f"SLO_BREACH | Endpoint: {path} | Duration: {duration:.4f}s | Budget: {budget:.3f}s"
            )


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add X-Request-ID header for distributed tracing.

    If the client sends X-Request-ID, it is preserved.
    Otherwise, a new UUID is generated.

    The request ID is:
    - Available in request.state.request_id for logging
    - Bound into structlog contextvars for the duration of the request
    - Returned in response headers for client correlation
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            logger.info(
                f"REQUEST | id={request_id} | method={request.method} | path={request.url.path}"
            )
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["X-Request-ID"] = request_id
        return response
