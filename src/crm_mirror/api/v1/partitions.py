"""Partition endpoints: sync, cached reads, and writes that go through the CRM.

All routes take the city as the ``{city}`` path parameter. Unknown cities
are rejected with 400 before the CRM or any store is touched.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from src.crm_mirror.api.deps import get_mirror_service
from src.crm_mirror.api.errors import SyncTimeoutError, error_response, success, unsuccessful
from src.crm_mirror.catalog.schemas import ContactCreate, DealCreate, SyncReport
from src.crm_mirror.catalog.service import MirrorService
from src.crm_mirror.config import get_settings

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/partitions", tags=["partitions"])


async def _bounded_sync(city: str, run: Awaitable[SyncReport]) -> SyncReport:
    timeout = get_settings().SYNC_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(run, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise SyncTimeoutError(city, timeout) from exc


def _sync_response(report: SyncReport) -> dict[str, Any]:
    return success(
        partition=report.partition,
        products=[p.model_dump(mode="json") for p in report.products],
        sync={
            "mode": report.mode.value,
            "watermarks": report.watermarks.model_dump(),
            "fetched_products": report.fetched_products,
            "fetched_deals": report.fetched_deals,
            "fetched_contacts": report.fetched_contacts,
            "written_links": report.written_links,
            "started_at": report.started_at.isoformat(),
            "finished_at": report.finished_at.isoformat(),
        },
    )


# ── Sync ─────────────────────────────────────────────────────────────────────


@router.post("/{city}/sync")
async def sync_partition(
    city: str, service: MirrorService = Depends(get_mirror_service)
) -> dict[str, Any]:
    """Fetch CRM records newer than the cached watermarks and return the merged catalog."""
    report = await _bounded_sync(city, service.sync_partition(city))
    return _sync_response(report)


@router.post("/{city}/sync/full")
async def full_sync_partition(
    city: str, service: MirrorService = Depends(get_mirror_service)
) -> dict[str, Any]:
    """Refetch every CRM record for the city, ignoring watermarks."""
    report = await _bounded_sync(city, service.full_sync_partition(city))
    return _sync_response(report)


# ── Cached Reads ─────────────────────────────────────────────────────────────


@router.get("/{city}/products")
async def list_products(
    city: str, service: MirrorService = Depends(get_mirror_service)
) -> dict[str, Any]:
    """Cached catalog without contacting the CRM."""
    products = await service.read_partition(city)
    return success(products=[p.model_dump(mode="json") for p in products])


@router.get("/{city}/contacts")
async def list_contacts(
    city: str, service: MirrorService = Depends(get_mirror_service)
) -> dict[str, Any]:
    contacts = await service.list_cached_contacts(city)
    return success(contacts=[c.model_dump(mode="json") for c in contacts])


# ── Writes ───────────────────────────────────────────────────────────────────


@router.post("/{city}/contacts")
async def create_contact(
    city: str,
    body: ContactCreate,
    service: MirrorService = Depends(get_mirror_service),
) -> dict[str, Any]:
    contact = await service.upsert_contact(city, body)
    if contact is None:
        return unsuccessful("Contact was not created")
    return success(message=f"Contact created: {contact.id}", contact_id=contact.id)


@router.post("/{city}/deals")
async def create_deal(
    city: str,
    body: DealCreate,
    service: MirrorService = Depends(get_mirror_service),
) -> dict[str, Any]:
    """Create a deal with its products in the CRM and cache it."""
    outcome = await service.record_deal(city, body)
    if outcome is None:
        return unsuccessful("Deal was not created")

    details = {
        "deal_id": outcome.deal.id,
        "line_items_set": outcome.line_items_set,
        "amount_updated": outcome.amount_updated,
        "linked_product_ids": outcome.linked_product_ids,
    }
    if not outcome.succeeded:
        return unsuccessful("Deal created but products or amount were not applied", **details)
    return success(message="Deal created and products added", **details)


@router.delete("/{city}/deals/{deal_id}", response_model=None)
async def delete_deal(
    city: str,
    deal_id: str,
    service: MirrorService = Depends(get_mirror_service),
) -> dict[str, Any] | JSONResponse:
    if not await service.delete_deal(deal_id, city):
        return error_response(status.HTTP_404_NOT_FOUND, f"Deal {deal_id} is not cached")
    return success(message=f"Deal {deal_id} deleted")
