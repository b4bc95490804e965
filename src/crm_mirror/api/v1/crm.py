"""Read-through CRM lookups used by the booking UI (not cached)."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from src.crm_mirror.api.deps import get_mirror_service
from src.crm_mirror.api.errors import success
from src.crm_mirror.catalog.service import MirrorService

router = APIRouter(prefix="/crm", tags=["crm"])


@router.get("/sections")
async def list_sections(service: MirrorService = Depends(get_mirror_service)) -> dict[str, Any]:
    return success(sections=await service.list_sections())


@router.get("/cities")
async def list_cities(service: MirrorService = Depends(get_mirror_service)) -> dict[str, Any]:
    """City names offered by the CRM's product city attribute."""
    return success(cities=await service.list_cities())


@router.get("/deal-categories")
async def list_deal_categories(
    service: MirrorService = Depends(get_mirror_service),
) -> dict[str, Any]:
    return success(categories=await service.list_deal_categories())


@router.get("/quantities")
async def list_quantities(
    service: MirrorService = Depends(get_mirror_service),
) -> dict[str, Any]:
    return success(quantities=await service.list_store_quantities())


@router.get("/products/{product_id}/pictures")
async def list_product_pictures(
    product_id: str, service: MirrorService = Depends(get_mirror_service)
) -> dict[str, Any]:
    return success(pictures=await service.list_product_pictures(product_id))


@router.get("/contacts")
async def list_contacts(service: MirrorService = Depends(get_mirror_service)) -> dict[str, Any]:
    contacts = await service.list_remote_contacts()
    return success(contacts=[c.model_dump(mode="json") for c in contacts])
