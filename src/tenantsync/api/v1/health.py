"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
verifies the database and Redis the lifespan connected to.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    """Basic liveness check. No external dependencies are checked."""
    settings = request.app.state.settings
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database and Redis connectivity. Returns check results dict."""
    checks: dict = {"database": "ok", "redis": "ok"}

    try:
        async with request.app.state.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    redis = getattr(request.app.state, "redis", None)
    if redis is None:
        checks["redis"] = "disabled"
    else:
        try:
            pong = await redis.ping()
            if not pong:
                checks["redis"] = "error"
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is not None:
        checks["dispatch_pending"] = dispatcher.pending

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when the database is reachable, 503 otherwise.

    Redis only backs a lookup cache, so a Redis outage degrades readiness
    reporting without failing it.
    """
    checks = await _check_dependencies(request)
    ready = checks.get("database") == "ok"
    degraded = checks.get("redis") == "error"

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": ("degraded" if degraded else "ready") if ready else "unavailable",
            "checks": checks,
        },
    )
