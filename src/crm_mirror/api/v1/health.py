"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks.
Readiness requires every partition store to answer a trivial query.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.crm_mirror.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check every partition store and the CRM configuration."""
    checks: dict = {"partitions": {}, "crm": "ok"}

    service = getattr(request.app.state, "mirror_service", None)
    if service is None:
        checks["partitions"] = "not_initialized"
    else:
        for store in service.registry:
            try:
                await store.ping()
                checks["partitions"][store.key] = "ok"
            except Exception as e:
                checks["partitions"][store.key] = "error"
                checks[f"{store.key}_error"] = str(e)

    if not get_settings().CRM_WEBHOOK_URL:
        checks["crm"] = "not_configured"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if every partition store answers, 503 otherwise."""
    checks = await _check_dependencies(request)
    partitions = checks["partitions"]
    all_healthy = (
        isinstance(partitions, dict)
        and bool(partitions)
        and all(state == "ok" for state in partitions.values())
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
