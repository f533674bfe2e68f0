"""
Health check endpoints for ChainAudit API.

Provides:
- /live  - Liveness probe (service alive)
- /ready - Readiness probe (DB connectivity)
- /db    - Database connectivity check
- /redis - Broker / rate-limit store check

Audit chain health lives under /api/v1/audit/health.
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

import redis
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from chainaudit.api import deps
from chainaudit.core.celery_runtime import resolve_celery_broker_url

router = APIRouter(tags=["health"])


class ServiceHealth(BaseModel):
    """Health status of an individual service."""

    status: Literal["healthy", "degraded", "unhealthy"]
    latency_ms: Optional[float] = None
    message: Optional[str] = None


def check_database(db: Session) -> ServiceHealth:
    """Check database connectivity and latency."""
    try:
        start = time.perf_counter()
        db.execute(text("SELECT 1"))
        latency = (time.perf_counter() - start) * 1000
        return ServiceHealth(status="healthy", latency_ms=round(latency, 2))
    except Exception as e:
        return ServiceHealth(status="unhealthy", message=str(e)[:100])


def check_redis() -> ServiceHealth:
    """Check Redis connectivity."""
    try:
        start = time.perf_counter()
        client = redis.from_url(resolve_celery_broker_url(), socket_timeout=2)
        client.ping()
        latency = (time.perf_counter() - start) * 1000
        return ServiceHealth(status="healthy", latency_ms=round(latency, 2))
    except redis.RedisError as e:
        return ServiceHealth(
            status="degraded", message=f"Redis unavailable: {str(e)[:50]}"
        )


@router.get(
    "/live",
    summary="Liveness probe",
    description="Quick check if the service is alive.",
)
def liveness_probe() -> Dict[str, Any]:
    """Kubernetes-style liveness probe."""
    return {"alive": True, "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get(
    "/ready",
    summary="Readiness probe",
    description="Quick check if the service is ready to accept traffic.",
)
def readiness_probe(db: Session = Depends(deps.get_db)) -> Dict[str, Any]:
    """Kubernetes-style readiness probe."""
    return {"ready": check_database(db).status == "healthy"}


@router.get(
    "/db",
    summary="Database health check",
    description="Check database connectivity and latency.",
)
def db_health_check(db: Session = Depends(deps.get_db)):
    result = check_database(db)
    status_code = 200 if result.status == "healthy" else 503
    return JSONResponse(content=result.model_dump(), status_code=status_code)


@router.get(
    "/redis",
    summary="Redis health check",
    description="Check Celery broker (Redis) connectivity.",
)
def redis_health_check():
    result = check_redis()
    status_code = 200 if result.status == "healthy" else 503
    return JSONResponse(content=result.model_dump(), status_code=status_code)
