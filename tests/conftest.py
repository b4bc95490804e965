"""Shared fixtures for the catalog mirror tests.

Provides:
- Settings pointing DATA_DIR at a per-test temporary directory
- A StoreRegistry with two initialized partitions (Астана, Караганда)
- InMemoryCRM: a CRMSource double with call recording and failure injection
- MirrorService wired to the registry and the double
- An async HTTP client over the FastAPI app with the service on app.state
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Sequence
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.crm_mirror.catalog.schemas import (
    ContactCreate,
    ContactRecord,
    DealCreate,
    DealRecord,
    DealWithLineItems,
    LineItem,
    PartitionAttribute,
    PartitionValue,
    ProductRecord,
)
from src.crm_mirror.catalog.service import MirrorService
from src.crm_mirror.config import Settings, normalize_partition_key
from src.crm_mirror.core.database import StoreRegistry
from src.crm_mirror.crm.adapter import CRMSource
from src.crm_mirror.main import create_app

CITY_ATTRIBUTE = PartitionAttribute(
    key="PROPERTY_107",
    values=[
        PartitionValue(id="45", value="Астана"),
        PartitionValue(id="46", value="Караганда"),
        PartitionValue(id="47", value="Алматы"),
    ],
)


class InMemoryCRM(CRMSource):
    """CRMSource double backed by plain lists.

    ``fail`` maps a method name to the exception it raises; ``return_none``
    names mutations that answer without an id. Every call is appended to
    ``calls`` as (method, args).
    """

    def __init__(self) -> None:
        self.products: dict[str, tuple[ProductRecord, str]] = {}
        self.deals: list[DealWithLineItems] = []
        self.contacts: list[ContactRecord] = []
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail: dict[str, Exception] = {}
        self.return_none: set[str] = set()
        self.line_items_accepted = True
        self.amounts: dict[str, float] = {}
        self.delay = 0.0
        self._next_id = 1000

    # ── Seeding ──────────────────────────────────────────────────────────

    def add_product(
        self,
        product_id: str,
        city: str = "Астана",
        *,
        name: str | None = None,
        offer_ids: Sequence[str] = (),
    ) -> ProductRecord:
        value = next(v for v in CITY_ATTRIBUTE.values if v.value == city)
        record = ProductRecord(
            id=product_id,
            name=name or f"Dress {product_id}",
            description="Тут будет описание",
            section_id="12",
            offer_ids=list(offer_ids),
        )
        self.products[product_id] = (record, value.id)
        return record

    def add_contact(
        self, contact_id: str, name: str = "Aigerim", phone: str | None = "+77010000000"
    ) -> ContactRecord:
        contact = ContactRecord(id=contact_id, name=name, last_name="Sadykova", phone=phone)
        self.contacts.append(contact)
        return contact

    def add_deal(
        self,
        deal_id: str,
        product_ids: list[str],
        contact_id: str | None = None,
        stage_id: str = "NEW",
    ) -> DealRecord:
        deal = DealRecord(
            id=deal_id,
            title=f"Booking {deal_id}",
            contact_id=contact_id,
            begin_date="2026-06-01T10:00:00+03:00",
            close_date="2026-06-03T10:00:00+03:00",
            stage_id=stage_id,
            opportunity=15000.0,
        )
        self.deals.append(
            DealWithLineItems(
                deal=deal,
                line_items=[LineItem(product_id=pid) for pid in product_ids],
            )
        )
        return deal

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        if self.delay:
            await asyncio.sleep(self.delay)
        exc = self.fail.get(method)
        if exc is not None:
            raise exc

    def called(self, method: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    # ── CRMSource ────────────────────────────────────────────────────────

    async def list_products_since(
        self, watermark: int | None, partition_key: str
    ) -> list[ProductRecord]:
        await self._record("list_products_since", watermark, partition_key)
        result = []
        for record, value_id in self.products.values():
            city = CITY_ATTRIBUTE.find_by_id(value_id)
            if normalize_partition_key(city.value) != partition_key:
                continue
            if watermark is not None and int(record.id) <= watermark:
                continue
            result.append(record.model_copy())
        return sorted(result, key=lambda p: int(p.id))

    async def list_deals_with_line_items(
        self, watermark: int | None
    ) -> list[DealWithLineItems]:
        await self._record("list_deals_with_line_items", watermark)
        return [
            entry.model_copy(deep=True)
            for entry in self.deals
            if (watermark is None or int(entry.deal.id) > watermark)
            and entry.deal.stage_id != "PREPAYMENT_INVOICE"
        ]

    async def list_contacts_since(self, watermark: int | None) -> list[ContactRecord]:
        await self._record("list_contacts_since", watermark)
        return [
            c.model_copy()
            for c in self.contacts
            if watermark is None or int(c.id) > watermark
        ]

    async def create_contact(self, fields: ContactCreate) -> str | None:
        await self._record("create_contact", fields)
        if "create_contact" in self.return_none:
            return None
        contact_id = self._new_id()
        self.contacts.append(
            ContactRecord(
                id=contact_id, name=fields.name, last_name=fields.last_name, phone=fields.phone
            )
        )
        return contact_id

    async def create_deal(self, fields: DealCreate) -> str | None:
        await self._record("create_deal", fields)
        if "create_deal" in self.return_none:
            return None
        deal_id = self._new_id()
        self.deals.append(
            DealWithLineItems(
                deal=DealRecord(id=deal_id, title=fields.title, contact_id=fields.contact_id)
            )
        )
        return deal_id

    async def set_deal_line_items(self, deal_id: str, line_items: list[LineItem]) -> bool:
        await self._record("set_deal_line_items", deal_id, line_items)
        if not self.line_items_accepted or not line_items:
            return False
        for entry in self.deals:
            if entry.deal.id == deal_id:
                entry.line_items = list(line_items)
        return True

    async def update_deal_amount(self, deal_id: str, amount: float) -> bool:
        await self._record("update_deal_amount", deal_id, amount)
        self.amounts[deal_id] = amount
        return True

    async def get_product(self, product_id: str) -> ProductRecord | None:
        await self._record("get_product", product_id)
        entry = self.products.get(product_id)
        if entry is None:
            return None
        record, value_id = entry
        return record.model_copy(update={"partition_value_id": value_id})

    async def resolve_partition_attribute(self) -> PartitionAttribute:
        await self._record("resolve_partition_attribute")
        return CITY_ATTRIBUTE

    async def list_sections(self) -> list[dict[str, Any]]:
        await self._record("list_sections")
        return [{"ID": "12", "CATALOG_ID": "24", "NAME": "Платья"}]

    async def list_deal_categories(self) -> list[dict[str, Any]]:
        await self._record("list_deal_categories")
        return [{"id": 0, "name": "Прокат"}]

    async def list_product_pictures(self, product_id: str) -> list[dict[str, Any]]:
        await self._record("list_product_pictures", product_id)
        return [{"id": 1, "productId": int(product_id), "detailUrl": "/upload/1.jpg"}]

    async def list_store_quantities(self) -> list[dict[str, Any]]:
        await self._record("list_store_quantities")
        return [{"productId": 101, "storeId": 2, "amount": 3}]


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATA_DIR=str(tmp_path / "data"),
        PARTITIONS="Астана,Караганда",
        CRM_WEBHOOK_URL="https://crm.test/rest/1/token",
    )


@pytest_asyncio.fixture
async def registry(settings) -> AsyncGenerator[StoreRegistry, None]:
    """Two initialized partition stores under tmp_path."""
    registry = StoreRegistry.from_settings(settings)
    await registry.init_all()
    yield registry
    await registry.dispose_all()


@pytest.fixture
def crm() -> InMemoryCRM:
    return InMemoryCRM()


@pytest.fixture
def service(registry, crm, settings) -> MirrorService:
    return MirrorService(registry, crm, settings=settings)


@pytest_asyncio.fixture
async def client(service) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client with the mirror service on app.state."""
    app = create_app()
    app.state.mirror_service = service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
