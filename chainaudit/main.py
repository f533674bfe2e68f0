from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chainaudit.api.routes import health
from chainaudit.api.v1 import audit
from chainaudit.core.config import settings
from chainaudit.core.errors import register_exception_handlers
from chainaudit.core.logging import setup_logging
from chainaudit.core.middleware import LatencyMonitorMiddleware, RequestIdMiddleware

# Setup logging
logger = setup_logging()


# =============================================================================
# OpenAPI Tags Metadata
# =============================================================================
tags_metadata = [
    {
        "name": "audit",
        "description": "**Audit Log** - Tamper-evident, hash-chained record of privileged actions: listing, verification, statistics, compliance report, CSV export, snapshots and proof bundles. **Requires API key.**",
    },
    {
        "name": "health",
        "description": "**Health** - Liveness, readiness and dependency checks.",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info(
        "startup",
        project=settings.PROJECT_NAME,
        version=settings.VERSION,
        environment=settings.ENVIRONMENT,
        debug=settings.DEBUG,
        keyed_hashes=settings.AUDIT_HASH_SECRET is not None,
    )

    yield

    logger.info("shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## ChainAudit API

Immutable, hash-chained audit log for a multi-tenant business application.
Every privileged action is chained to its predecessor so tampering (edits,
deletions, reordering) is detectable.
    """,
    openapi_tags=tags_metadata,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count", "X-Export-Rows", "X-Export-Truncated"],
)

# Latency Monitoring (SLO Check)
app.add_middleware(LatencyMonitorMiddleware)

# Request ID Tracing
app.add_middleware(RequestIdMiddleware)

# Register global exception handlers
register_exception_handlers(app)

app.include_router(
    audit.router, prefix=f"{settings.API_V1_PREFIX}/audit", tags=["audit"]
)

app.include_router(
    health.router, prefix=f"{settings.API_V1_PREFIX}/health", tags=["health"]
)


@app.get("/", summary="API root")
async def root():
    """Root endpoint with API info"""
    return {
        "name": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "docs": "/docs",
        "health": f"{settings.API_V1_PREFIX}/health/live",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chainaudit.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
