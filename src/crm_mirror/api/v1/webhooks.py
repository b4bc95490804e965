"""CRM outbound webhook receivers.

Bitrix24 posts form-encoded events such as ``ONCRMPRODUCTUPDATE`` with the
entity id under ``data[FIELDS][ID]``. JSON bodies of the same shape
(``{"data": {"FIELDS": {"ID": ...}}}``) are accepted too.

The business-process hook for removing a deal sends ``document_id[]``
(``["crm", "CCrmDocumentDeal", "DEAL_123"]``) and the city as a query
parameter.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from src.crm_mirror.api.deps import get_mirror_service
from src.crm_mirror.api.errors import error_response, success, unsuccessful
from src.crm_mirror.catalog.service import MirrorService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

DEAL_DOCUMENT_PREFIX = "DEAL_"


async def _read_payload(request: Request) -> tuple[dict[str, Any], list[tuple[str, str]]]:
    """Return (json body, form items); exactly one of them is populated."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        body = await request.json()
        return (body if isinstance(body, dict) else {}), []
    form = await request.form()
    return {}, [(key, str(value)) for key, value in form.multi_items()]


async def _entity_id(request: Request) -> str | None:
    body, form_items = await _read_payload(request)
    if body:
        fields = (body.get("data") or {}).get("FIELDS") or {}
        value = fields.get("ID")
    else:
        value = dict(form_items).get("data[FIELDS][ID]")
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


async def _document_deal_id(request: Request) -> str | None:
    body, form_items = await _read_payload(request)
    if body:
        document = body.get("document_id") or []
    else:
        document = [value for key, value in form_items if key.startswith("document_id")]
    if not document:
        return None
    last = str(document[-1])
    if not last.startswith(DEAL_DOCUMENT_PREFIX):
        return None
    return last[len(DEAL_DOCUMENT_PREFIX):] or None


def _missing_id() -> JSONResponse:
    return error_response(status.HTTP_400_BAD_REQUEST, "Webhook payload has no entity id")


# ── Products ─────────────────────────────────────────────────────────────────


@router.post("/product/add", response_model=None)
async def product_added(
    request: Request, service: MirrorService = Depends(get_mirror_service)
) -> dict[str, Any] | JSONResponse:
    product_id = await _entity_id(request)
    if product_id is None:
        return _missing_id()
    if not await service.add_product(product_id):
        return unsuccessful(f"Product {product_id} has no known partition")
    return success(message=f"Product {product_id} added")


@router.post("/product/update", response_model=None)
async def product_updated(
    request: Request, service: MirrorService = Depends(get_mirror_service)
) -> dict[str, Any] | JSONResponse:
    """Refresh a product and move it if its city changed."""
    product_id = await _entity_id(request)
    if product_id is None:
        return _missing_id()
    if not await service.migrate_product(product_id):
        return unsuccessful(f"Product {product_id} has no known partition")
    return success(message=f"Product {product_id} updated")


@router.post("/product/delete", response_model=None)
async def product_deleted(
    request: Request, service: MirrorService = Depends(get_mirror_service)
) -> dict[str, Any] | JSONResponse:
    product_id = await _entity_id(request)
    if product_id is None:
        return _missing_id()
    if not await service.delete_product(product_id):
        return unsuccessful(f"Product {product_id} is not cached", product_id=product_id)
    return success(message=f"Product {product_id} deleted", product_id=product_id)


# ── Deals & Contacts ─────────────────────────────────────────────────────────


@router.post("/deal/delete", response_model=None)
async def deal_deleted(
    request: Request, service: MirrorService = Depends(get_mirror_service)
) -> dict[str, Any] | JSONResponse:
    deal_id = await _entity_id(request)
    if deal_id is None:
        return _missing_id()
    if not await service.delete_deal(deal_id):
        return unsuccessful(f"Deal {deal_id} is not cached", deal_id=deal_id)
    return success(message=f"Deal {deal_id} deleted", deal_id=deal_id)


@router.post("/deal/remove", response_model=None)
async def deal_removed_by_process(
    request: Request,
    city: str = Query(...),
    service: MirrorService = Depends(get_mirror_service),
) -> dict[str, Any] | JSONResponse:
    """Business-process hook: drop a deal from one city's cache."""
    deal_id = await _document_deal_id(request)
    if deal_id is None:
        return error_response(
            status.HTTP_400_BAD_REQUEST, "Webhook payload has no deal document id"
        )
    if not await service.delete_deal(deal_id, city):
        return unsuccessful(f"Deal {deal_id} is not cached", deal_id=deal_id)
    return success(message=f"Deal {deal_id} removed", deal_id=deal_id)


@router.post("/contact/delete", response_model=None)
async def contact_deleted(
    request: Request, service: MirrorService = Depends(get_mirror_service)
) -> dict[str, Any] | JSONResponse:
    contact_id = await _entity_id(request)
    if contact_id is None:
        return _missing_id()
    if not await service.delete_contact(contact_id):
        return unsuccessful(f"Contact {contact_id} is not cached", contact_id=contact_id)
    return success(message=f"Contact {contact_id} deleted", contact_id=contact_id)
