"""Bitrix24 CRM source -- REST client over an inbound webhook URL.

Implements CRMSource against ``POST {webhook}/{method}.json``.

Key implementation details:
- One shared httpx.AsyncClient; tests inject one built on MockTransport
- List methods page with ``start`` and follow the ``next`` cursor
- Only rate-limit answers (QUERY_LIMIT_EXCEEDED, HTTP 503) are retried, with
  tenacity exponential backoff; every other failure propagates to the caller
- Deal user fields, the city attribute and the offers catalog id are
  discovered from metadata and cached for METADATA_TTL seconds
- Trade offers come from the offers catalog (catalog.product.offer.list)
  and are attached to their parent product by parentId
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.crm_mirror.catalog.schemas import (
    ContactCreate,
    ContactRecord,
    DealCreate,
    DealWithLineItems,
    LineItem,
    PartitionAttribute,
    ProductRecord,
)
from src.crm_mirror.config import Settings, get_settings
from src.crm_mirror.core.concurrency import gather_all
from src.crm_mirror.crm.adapter import (
    CRMRateLimitError,
    CRMResponseError,
    CRMSource,
    CRMUnavailableError,
)
from src.crm_mirror.crm.field_mapping import (
    POSTPAYMENT,
    PREPAYMENT,
    WEDDING_DATE,
    contact_from_crm,
    contact_to_crm,
    deal_from_crm,
    deal_to_crm,
    find_deal_user_fields,
    find_partition_attribute,
    line_items_from_crm,
    line_items_to_crm,
    offers_by_parent,
    product_from_crm,
)

logger = structlog.get_logger(__name__)

RATE_LIMIT_ERROR = "QUERY_LIMIT_EXCEEDED"
DEAL_ENTITY_TYPE_ID = 2


class Bitrix24Client(CRMSource):
    """Bitrix24 REST client for the catalog mirror.

    Args:
        webhook_url: Inbound webhook base, e.g. ``https://x.bitrix24.kz/rest/1/token``.
        settings: Application settings (defaults to get_settings()).
        http_client: Optional preconfigured client; owned by the caller if given.
        backoff_min: Minimum backoff in seconds between rate-limited attempts.
    """

    METADATA_TTL = 300.0
    MAX_CONCURRENT_DEAL_LOADS = 4

    def __init__(
        self,
        webhook_url: str,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        backoff_min: float = 1.0,
    ) -> None:
        self._settings = settings or get_settings()
        self._base_url = webhook_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self._settings.CRM_TIMEOUT)
        self._backoff_min = backoff_min
        self._deal_fields: tuple[float, dict[str, str]] | None = None
        self._partition_attribute: tuple[float, PartitionAttribute] | None = None
        self._offers_catalog: tuple[float, str | None] | None = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # ── Transport ───────────────────────────────────────────────────────────

    async def _post(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """Single REST call mapped onto the CRM exception hierarchy."""
        try:
            response = await self._http.post(f"{self._base_url}/{method}.json", json=params)
        except httpx.HTTPError as exc:
            logger.warning("bitrix.transport_error", method=method, error=str(exc))
            raise CRMUnavailableError(f"{method}: {exc}") from exc

        if response.status_code == 503:
            raise CRMRateLimitError(f"{method}: HTTP 503")

        try:
            payload = response.json()
        except ValueError as exc:
            if response.status_code >= 500:
                raise CRMUnavailableError(
                    f"{method}: HTTP {response.status_code}"
                ) from exc
            raise CRMResponseError(
                method, "INVALID_RESPONSE", response.text[:200], response.status_code
            ) from exc

        if isinstance(payload, dict) and payload.get("error"):
            error_code = str(payload["error"])
            if error_code == RATE_LIMIT_ERROR:
                raise CRMRateLimitError(f"{method}: {error_code}")
            raise CRMResponseError(
                method,
                error_code,
                str(payload.get("error_description", "")),
                response.status_code,
            )

        if response.status_code >= 500:
            raise CRMUnavailableError(f"{method}: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise CRMResponseError(
                method, f"HTTP_{response.status_code}", status_code=response.status_code
            )
        return payload if isinstance(payload, dict) else {"result": payload}

    async def _call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self._settings.CRM_MAX_RETRIES)),
            wait=wait_exponential(multiplier=self._backoff_min, min=self._backoff_min, max=10),
            retry=retry_if_exception_type(CRMRateLimitError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "bitrix.rate_limited_retry",
                        method=method,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._post(method, params or {})
        raise CRMUnavailableError(f"{method}: retries exhausted")

    async def _list(
        self,
        method: str,
        params: dict[str, Any],
        extract: Callable[[Any], list[dict[str, Any]] | None] | None = None,
    ) -> list[dict[str, Any]]:
        """Collect every page of a list method by following ``next``."""
        items: list[dict[str, Any]] = []
        start = 0
        while True:
            payload = await self._call(method, {**params, "start": start})
            result = payload.get("result")
            page = extract(result) if extract and result is not None else result
            if not page:
                break
            items.extend(page)
            next_start = payload.get("next")
            if next_start is None:
                break
            start = int(next_start)
        return items

    # ── Metadata ────────────────────────────────────────────────────────────

    async def _deal_user_fields(self) -> dict[str, str]:
        now = time.monotonic()
        if self._deal_fields and now - self._deal_fields[0] < self.METADATA_TTL:
            return self._deal_fields[1]

        payload = await self._call("crm.deal.fields")
        fields = find_deal_user_fields(
            payload.get("result") or {},
            {
                WEDDING_DATE: self._settings.CRM_WEDDING_DATE_LABEL,
                PREPAYMENT: self._settings.CRM_PREPAYMENT_LABEL,
                POSTPAYMENT: self._settings.CRM_POSTPAYMENT_LABEL,
            },
        )
        self._deal_fields = (now, fields)
        return fields

    async def resolve_partition_attribute(self) -> PartitionAttribute:
        now = time.monotonic()
        if self._partition_attribute and now - self._partition_attribute[0] < self.METADATA_TTL:
            return self._partition_attribute[1]

        payload = await self._call("crm.product.fields")
        attribute = find_partition_attribute(
            payload.get("result") or {}, self._settings.CRM_CITY_FIELD_TITLE
        )
        if attribute is None:
            raise CRMResponseError(
                "crm.product.fields",
                "PARTITION_ATTRIBUTE_NOT_FOUND",
                f"no product field titled {self._settings.CRM_CITY_FIELD_TITLE!r}",
            )
        self._partition_attribute = (now, attribute)
        return attribute

    async def _offers_catalog_id(self) -> str | None:
        """Id of the catalog iblock holding trade offers, None if the portal has none."""
        now = time.monotonic()
        if self._offers_catalog and now - self._offers_catalog[0] < self.METADATA_TTL:
            return self._offers_catalog[1]

        catalogs = await self._list(
            "catalog.catalog.list",
            {"select": ["id"]},
            extract=lambda result: result.get("catalogs"),
        )
        catalog_id: str | None = None
        for catalog in catalogs:
            payload = await self._call("catalog.catalog.isOffers", {"id": catalog["id"]})
            if payload.get("result"):
                catalog_id = str(catalog["id"])
                break
        self._offers_catalog = (now, catalog_id)
        return catalog_id

    async def _offer_ids(self, filters: dict[str, Any]) -> dict[str, list[str]]:
        """Offer ids per parent product id for offers matching ``filters``."""
        catalog_id = await self._offers_catalog_id()
        if catalog_id is None:
            return {}
        offers = await self._list(
            "catalog.product.offer.list",
            {
                "select": ["id", "iblockId", "parentId"],
                "filter": {"iblockId": catalog_id, **filters},
                "order": {"id": "ASC"},
            },
            extract=lambda result: result.get("offers"),
        )
        return offers_by_parent(offers)

    # ── Delta Fetches ───────────────────────────────────────────────────────

    async def list_products_since(
        self, watermark: int | None, partition_key: str
    ) -> list[ProductRecord]:
        attribute = await self.resolve_partition_attribute()
        value = attribute.find_by_value(partition_key)
        if value is None:
            logger.warning(
                "bitrix.partition_value_missing",
                partition=partition_key,
                attribute=attribute.key,
            )
            return []

        filters: dict[str, Any] = {attribute.key: value.id}
        if watermark is not None:
            filters[">ID"] = watermark
        raw = await self._list(
            "crm.product.list",
            {"select": ["*", "PROPERTY_*"], "filter": filters, "order": {"ID": "ASC"}},
        )
        offers: dict[str, list[str]] = {}
        if raw:
            offers = await self._offer_ids(
                {">parentId": watermark} if watermark is not None else {}
            )
        products = [
            product_from_crm(
                item,
                placeholder=self._settings.DESCRIPTION_PLACEHOLDER,
                offer_ids=offers.get(str(item["ID"])),
            )
            for item in raw
        ]
        logger.info(
            "bitrix.products_fetched",
            partition=partition_key,
            watermark=watermark,
            count=len(products),
        )
        return products

    async def list_deals_with_line_items(
        self, watermark: int | None
    ) -> list[DealWithLineItems]:
        user_fields = await self._deal_user_fields()
        filters: dict[str, Any] = {"!=STAGE_ID": self._settings.EXCLUDED_DEAL_STAGE}
        if watermark is not None:
            filters[">ID"] = watermark
        headers = await self._list(
            "crm.deal.list",
            {"select": ["ID"], "filter": filters, "order": {"ID": "ASC"}},
        )

        semaphore = asyncio.Semaphore(self.MAX_CONCURRENT_DEAL_LOADS)

        async def load(deal_id: str) -> DealWithLineItems:
            async with semaphore:
                full, rows = await gather_all(
                    self._call("crm.deal.get", {"id": deal_id}),
                    self._call("crm.deal.productrows.get", {"id": deal_id}),
                )
            return DealWithLineItems(
                deal=deal_from_crm(full.get("result") or {"ID": deal_id}, user_fields),
                line_items=line_items_from_crm(rows.get("result")),
            )

        deals = await gather_all(*(load(str(item["ID"])) for item in headers))
        logger.info("bitrix.deals_fetched", watermark=watermark, count=len(deals))
        return deals

    async def list_contacts_since(self, watermark: int | None) -> list[ContactRecord]:
        params: dict[str, Any] = {
            "select": ["ID", "NAME", "LAST_NAME", "PHONE"],
            "order": {"ID": "ASC"},
        }
        if watermark is not None:
            params["filter"] = {">ID": watermark}
        raw = await self._list("crm.contact.list", params)
        contacts = [contact_from_crm(item) for item in raw]
        logger.info("bitrix.contacts_fetched", watermark=watermark, count=len(contacts))
        return contacts

    # ── Mutations ───────────────────────────────────────────────────────────

    async def create_contact(self, fields: ContactCreate) -> str | None:
        payload = await self._call("crm.contact.add", {"fields": contact_to_crm(fields)})
        contact_id = payload.get("result")
        logger.info("bitrix.contact_created", contact_id=contact_id)
        return str(contact_id) if contact_id else None

    async def create_deal(self, fields: DealCreate) -> str | None:
        user_fields = await self._deal_user_fields()
        payload = await self._call(
            "crm.deal.add",
            {
                "fields": deal_to_crm(
                    fields, user_fields, self._settings.CRM_DEAL_TZ_OFFSET
                )
            },
        )
        deal_id = payload.get("result")
        logger.info("bitrix.deal_created", deal_id=deal_id, title=fields.title)
        return str(deal_id) if deal_id else None

    async def set_deal_line_items(self, deal_id: str, line_items: list[LineItem]) -> bool:
        if not line_items:
            return False
        payload = await self._call(
            "crm.deal.productrows.set",
            {"id": deal_id, "rows": line_items_to_crm(line_items)},
        )
        return bool(payload.get("result"))

    async def update_deal_amount(self, deal_id: str, amount: float) -> bool:
        payload = await self._call(
            "crm.deal.update",
            {"id": deal_id, "fields": {"OPPORTUNITY": float(amount)}},
        )
        return bool(payload.get("result"))

    # ── Lookups ─────────────────────────────────────────────────────────────

    async def get_product(self, product_id: str) -> ProductRecord | None:
        attribute = await self.resolve_partition_attribute()
        payload = await self._call("crm.product.get", {"id": product_id})
        raw = payload.get("result")
        if not raw:
            return None
        offers = await self._offer_ids({"parentId": product_id})
        return product_from_crm(
            raw,
            placeholder=self._settings.DESCRIPTION_PLACEHOLDER,
            offer_ids=offers.get(str(raw["ID"])),
            partition_key=attribute.key,
            strip_markup=True,
        )

    async def list_sections(self) -> list[dict[str, Any]]:
        return await self._list(
            "crm.productsection.list", {"select": ["ID", "CATALOG_ID", "NAME"]}
        )

    async def list_deal_categories(self) -> list[dict[str, Any]]:
        return await self._list(
            "crm.category.list",
            {"entityTypeId": DEAL_ENTITY_TYPE_ID},
            extract=lambda result: result.get("categories"),
        )

    async def list_product_pictures(self, product_id: str) -> list[dict[str, Any]]:
        payload = await self._call("catalog.productImage.list", {"productId": product_id})
        result = payload.get("result") or {}
        return list(result.get("productImages") or [])

    async def list_store_quantities(self) -> list[dict[str, Any]]:
        return await self._list(
            "catalog.storeproduct.list",
            {"select": ["*"], "filter": {"storeId": self._settings.QUANTITY_STORE_ID}},
            extract=lambda result: result.get("storeProducts"),
        )
