"""FastAPI dependencies shared by the v1 routers."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.crm_mirror.catalog.service import MirrorService


def get_mirror_service(request: Request) -> MirrorService:
    """Retrieve MirrorService from app.state, 503 if not available."""
    service = getattr(request.app.state, "mirror_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Catalog mirror not initialized",
        )
    return service
