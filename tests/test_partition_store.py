"""Tests for PartitionRepository against real SQLite partition stores.

Each test gets fresh store files under tmp_path; failures are provoked by
dropping a table underneath the repository.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import text

from src.crm_mirror.catalog.repository import PartitionRepository, assemble_views
from src.crm_mirror.catalog.schemas import (
    ContactRecord,
    DealRecord,
    EntityType,
    ProductDealPair,
    ProductRecord,
    WriteSet,
)
from src.crm_mirror.core.database import StoreError


def _product(product_id: str, **overrides) -> ProductRecord:
    defaults = {"id": product_id, "name": f"Dress {product_id}", "description": "desc"}
    defaults.update(overrides)
    return ProductRecord(**defaults)


def _deal(deal_id: str, contact_id: str | None = None) -> DealRecord:
    return DealRecord(id=deal_id, title=f"Booking {deal_id}", contact_id=contact_id)


async def _drop_table(store, table: str) -> None:
    async with store.engine.begin() as conn:
        await conn.execute(text(f"DROP TABLE {table}"))


@pytest_asyncio.fixture
async def store(registry):
    return registry.get("астана")


@pytest.fixture
def repo(store) -> PartitionRepository:
    return PartitionRepository.for_store(store)


# ── Upserts ────────────────────────────────────────────────────────────────


class TestUpserts:
    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, repo):
        await repo.upsert_products([_product("101"), _product("102")])
        await repo.upsert_products([_product("101"), _product("102")])

        products = await repo.list_products()
        assert [p.id for p in products] == ["101", "102"]

    @pytest.mark.asyncio
    async def test_upsert_replaces_attributes(self, repo):
        await repo.upsert_products([_product("101", name="Old")])
        await repo.upsert_products([_product("101", name="New", offer_ids=["501"])])

        product = await repo.get_product("101")
        assert product.name == "New"
        assert product.offer_ids == ["501"]

    @pytest.mark.asyncio
    async def test_upsert_keeps_stored_quantity(self, repo):
        await repo.upsert_products([_product("101", quantity=3)])
        await repo.upsert_products([_product("101", name="Renamed")])

        product = await repo.get_product("101")
        assert product.quantity == 3
        assert product.name == "Renamed"

    @pytest.mark.asyncio
    async def test_links_are_unique_per_pair(self, repo):
        pair = ProductDealPair(product_id="101", deal_id="7")
        await repo.link_products([pair])
        await repo.link_products([pair, pair])

        assert await repo.count_links() == 1

    @pytest.mark.asyncio
    async def test_contacts_upsert(self, repo):
        await repo.upsert_contact(ContactRecord(id="5", name="Aigerim"))
        await repo.upsert_contact(ContactRecord(id="5", name="Aigerim", phone="+7701"))

        contacts = await repo.list_contacts()
        assert len(contacts) == 1
        assert contacts[0].phone == "+7701"


# ── Write Sets ─────────────────────────────────────────────────────────────


class TestApplyWriteSet:
    @pytest.mark.asyncio
    async def test_applies_all_relations(self, repo):
        await repo.apply_write_set(
            WriteSet(
                products=[_product("101")],
                deals=[_deal("7", contact_id="5")],
                contacts=[ContactRecord(id="5", name="Aigerim")],
                links=[ProductDealPair(product_id="101", deal_id="7")],
            )
        )

        views = await repo.list_products_with_deals()
        assert len(views) == 1
        assert views[0].deals[0].id == "7"
        assert views[0].deals[0].contact.name == "Aigerim"

    @pytest.mark.asyncio
    async def test_empty_write_set_is_noop(self, repo):
        await repo.apply_write_set(WriteSet())
        assert await repo.list_products() == []

    @pytest.mark.asyncio
    async def test_failure_rolls_back_whole_batch(self, store, repo):
        await _drop_table(store, "product_deal_links")

        with pytest.raises(StoreError) as exc_info:
            await repo.apply_write_set(
                WriteSet(
                    products=[_product("101")],
                    deals=[_deal("7")],
                    links=[ProductDealPair(product_id="101", deal_id="7")],
                )
            )

        assert exc_info.value.partition == "астана"
        assert exc_info.value.operation == "apply_write_set"
        assert await repo.list_products() == []
        assert await repo.get_deal("7") is None


# ── Watermarks ─────────────────────────────────────────────────────────────


class TestMaxId:
    @pytest.mark.asyncio
    async def test_empty_relation_is_none(self, repo):
        assert await repo.max_id(EntityType.PRODUCT) is None

    @pytest.mark.asyncio
    async def test_compares_numerically(self, repo):
        await repo.upsert_products([_product("9"), _product("100"), _product("10")])
        assert await repo.max_id(EntityType.PRODUCT) == 100

    @pytest.mark.asyncio
    async def test_per_entity_type(self, repo):
        await repo.upsert_deals([_deal("42")])
        assert await repo.max_id(EntityType.DEAL) == 42
        assert await repo.max_id(EntityType.CONTACT) is None


# ── Reads ──────────────────────────────────────────────────────────────────


class TestReads:
    @pytest.mark.asyncio
    async def test_products_ordered_by_numeric_id(self, repo):
        await repo.upsert_products([_product("20"), _product("3")])
        assert [p.id for p in await repo.list_products()] == ["3", "20"]

    @pytest.mark.asyncio
    async def test_missing_contact_embeds_none(self, repo):
        await repo.apply_write_set(
            WriteSet(
                products=[_product("101")],
                deals=[_deal("7", contact_id="999")],
                links=[ProductDealPair(product_id="101", deal_id="7")],
            )
        )

        views = await repo.list_products_with_deals()
        assert views[0].deals[0].contact is None

    @pytest.mark.asyncio
    async def test_product_without_deals(self, repo):
        await repo.upsert_products([_product("101")])
        views = await repo.list_products_with_deals()
        assert views[0].deals == []

    @pytest.mark.asyncio
    async def test_store_error_on_broken_store(self, store, repo):
        await _drop_table(store, "products")
        with pytest.raises(StoreError) as exc_info:
            await repo.list_products()
        assert exc_info.value.operation == "list_products"


# ── Single-Row Writes ──────────────────────────────────────────────────────


class TestSingleRowWrites:
    @pytest.mark.asyncio
    async def test_update_product_missing(self, repo):
        assert await repo.update_product("101", _product("101")) is False

    @pytest.mark.asyncio
    async def test_update_product_keeps_quantity(self, repo):
        await repo.upsert_product(_product("101", quantity=2))
        assert await repo.update_product("101", _product("101", name="New")) is True

        product = await repo.get_product("101")
        assert product.name == "New"
        assert product.quantity == 2

    @pytest.mark.asyncio
    async def test_record_deal_links_only_cached_products(self, repo):
        await repo.upsert_product(_product("101"))

        linked = await repo.record_deal(_deal("7"), ["101", "202", "101"])

        assert linked == ["101"]
        assert await repo.count_links() == 1
        assert (await repo.get_deal("7")).title == "Booking 7"

    @pytest.mark.asyncio
    async def test_delete_product_removes_links(self, repo):
        await repo.apply_write_set(
            WriteSet(
                products=[_product("101")],
                deals=[_deal("7")],
                links=[ProductDealPair(product_id="101", deal_id="7")],
            )
        )

        assert await repo.delete_product("101") is True
        assert await repo.count_links() == 0
        assert await repo.delete_product("101") is False

    @pytest.mark.asyncio
    async def test_delete_deal_removes_links(self, repo):
        await repo.apply_write_set(
            WriteSet(
                products=[_product("101")],
                deals=[_deal("7")],
                links=[ProductDealPair(product_id="101", deal_id="7")],
            )
        )

        assert await repo.delete_deal("7") is True
        assert await repo.count_links() == 0
        views = await repo.list_products_with_deals()
        assert views[0].deals == []

    @pytest.mark.asyncio
    async def test_delete_contact(self, repo):
        await repo.upsert_contact(ContactRecord(id="5"))
        assert await repo.delete_contact("5") is True
        assert await repo.delete_contact("5") is False


# ── Partition Isolation ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_partitions_do_not_share_rows(registry):
    astana = PartitionRepository.for_store(registry.get("астана"))
    karaganda = PartitionRepository.for_store(registry.get("караганда"))

    await astana.upsert_product(_product("101"))

    assert await karaganda.get_product("101") is None
    assert await karaganda.max_id(EntityType.PRODUCT) is None


def test_assemble_views_skips_dangling_links():
    views = assemble_views(
        [_product("101")],
        [
            ProductDealPair(product_id="101", deal_id="7"),
            ProductDealPair(product_id="101", deal_id="8"),
        ],
        [_deal("8", contact_id="5")],
        [ContactRecord(id="5", name="Aigerim")],
    )
    assert [d.id for d in views[0].deals] == ["8"]
    assert views[0].deals[0].contact.id == "5"
