"""Integration tests for incremental and full partition syncs.

Runs MirrorService against real SQLite stores and the InMemoryCRM double.
"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from src.crm_mirror.catalog.reconciler import SyncError
from src.crm_mirror.catalog.repository import PartitionRepository
from src.crm_mirror.catalog.schemas import EntityType, SyncMode
from src.crm_mirror.catalog.watermark import WatermarkTracker
from src.crm_mirror.core.database import StoreError
from src.crm_mirror.core.partitions import InvalidPartitionError
from src.crm_mirror.crm.adapter import CRMResponseError, CRMUnavailableError


def _seed(crm) -> None:
    crm.add_product("101", "Астана", offer_ids=["501"])
    crm.add_product("102", "Астана")
    crm.add_product("201", "Караганда")
    crm.add_contact("5")
    crm.add_deal("7", ["501"], contact_id="5")
    crm.add_deal("8", ["102", "201"], contact_id="404")


# ── First Sync ─────────────────────────────────────────────────────────────


class TestFirstSync:
    @pytest.mark.asyncio
    async def test_fetches_everything_without_watermarks(self, service, crm):
        _seed(crm)

        report = await service.sync_partition("Астана")

        assert report.partition == "астана"
        assert report.mode == SyncMode.INCREMENTAL
        assert report.watermarks.model_dump() == {"product": None, "deal": None, "contact": None}
        assert crm.called("list_products_since") == [(None, "астана")]
        assert crm.called("list_deals_with_line_items") == [(None,)]
        assert crm.called("list_contacts_since") == [(None,)]

    @pytest.mark.asyncio
    async def test_builds_product_view(self, service, crm):
        _seed(crm)

        report = await service.sync_partition("астана")

        by_id = {p.id: p for p in report.products}
        assert set(by_id) == {"101", "102"}
        assert [d.id for d in by_id["101"].deals] == ["7"]
        assert by_id["101"].deals[0].contact.name == "Aigerim"
        assert [d.id for d in by_id["102"].deals] == ["8"]
        assert by_id["102"].deals[0].contact is None
        assert report.written_links == 2

    @pytest.mark.asyncio
    async def test_other_partition_untouched(self, service, crm, registry):
        _seed(crm)

        await service.sync_partition("Астана")

        karaganda = PartitionRepository.for_store(registry.get("караганда"))
        assert await karaganda.list_products() == []

    @pytest.mark.asyncio
    async def test_sync_then_read_matches(self, service, crm):
        _seed(crm)

        report = await service.sync_partition("Астана")
        cached = await service.read_partition("Астана")

        assert [p.model_dump() for p in cached] == [p.model_dump() for p in report.products]


# ── Incremental Sync ───────────────────────────────────────────────────────


class TestIncrementalSync:
    @pytest.mark.asyncio
    async def test_second_sync_uses_watermarks(self, service, crm):
        _seed(crm)
        await service.sync_partition("Астана")

        report = await service.sync_partition("Астана")

        assert report.watermarks.product == 102
        assert report.watermarks.deal == 8
        assert report.watermarks.contact == 5
        assert crm.called("list_products_since")[-1] == (102, "астана")
        assert report.fetched_products == 0

    @pytest.mark.asyncio
    async def test_rerun_creates_no_duplicate_links(self, service, crm, registry):
        _seed(crm)
        await service.sync_partition("Астана")
        await service.full_sync_partition("Астана")
        await service.full_sync_partition("Астана")

        repo = PartitionRepository.for_store(registry.get("астана"))
        assert await repo.count_links() == 2

    @pytest.mark.asyncio
    async def test_new_deal_on_cached_product(self, service, crm):
        _seed(crm)
        await service.sync_partition("Астана")

        crm.add_deal("9", ["101"], contact_id="5")
        report = await service.sync_partition("Астана")

        product = next(p for p in report.products if p.id == "101")
        assert [d.id for d in product.deals] == ["7", "9"]

    @pytest.mark.asyncio
    async def test_watermarks_never_decrease(self, service, crm, registry):
        _seed(crm)
        tracker = WatermarkTracker(registry)

        await service.sync_partition("Астана")
        before = await tracker.read_all("астана")
        await service.sync_partition("Астана")
        after = await tracker.read_all("астана")

        assert after.product >= before.product
        assert after.deal >= before.deal
        assert after.contact >= before.contact

    @pytest.mark.asyncio
    async def test_excluded_stage_not_cached(self, service, crm):
        crm.add_product("101", "Астана")
        crm.add_deal("7", ["101"], stage_id="PREPAYMENT_INVOICE")

        report = await service.sync_partition("Астана")

        assert report.products[0].deals == []


# ── Full Sync ──────────────────────────────────────────────────────────────


class TestFullSync:
    @pytest.mark.asyncio
    async def test_ignores_watermarks(self, service, crm):
        _seed(crm)
        await service.sync_partition("Астана")

        report = await service.full_sync_partition("Астана")

        assert report.mode == SyncMode.FULL
        assert crm.called("list_products_since")[-1] == (None, "астана")
        assert crm.called("list_deals_with_line_items")[-1] == (None,)
        assert report.fetched_products == 2

    @pytest.mark.asyncio
    async def test_refreshes_changed_attributes(self, service, crm):
        _seed(crm)
        await service.sync_partition("Астана")

        crm.add_product("101", "Астана", name="Renamed", offer_ids=["501"])
        report = await service.full_sync_partition("Астана")

        assert next(p for p in report.products if p.id == "101").name == "Renamed"


# ── Failures ───────────────────────────────────────────────────────────────


class TestSyncFailures:
    @pytest.mark.asyncio
    async def test_fetch_failure_writes_nothing(self, service, crm, registry):
        _seed(crm)
        crm.fail["list_contacts_since"] = CRMUnavailableError("timeout")

        with pytest.raises(SyncError) as exc_info:
            await service.sync_partition("Астана")

        assert exc_info.value.stage == "fetch"
        assert isinstance(exc_info.value.cause, CRMUnavailableError)
        repo = PartitionRepository.for_store(registry.get("астана"))
        assert await repo.list_products() == []
        assert await repo.count_links() == 0

    @pytest.mark.asyncio
    async def test_response_error_aborts(self, service, crm):
        _seed(crm)
        crm.fail["list_products_since"] = CRMResponseError("crm.product.list", "ERROR_CORE")

        with pytest.raises(SyncError):
            await service.sync_partition("Астана")

    @pytest.mark.asyncio
    async def test_persist_failure(self, service, crm, registry):
        _seed(crm)
        async with registry.get("астана").engine.begin() as conn:
            await conn.execute(text("DROP TABLE product_deal_links"))

        with pytest.raises(SyncError) as exc_info:
            await service.sync_partition("Астана")

        assert exc_info.value.stage == "persist"
        assert isinstance(exc_info.value.cause, StoreError)

    @pytest.mark.asyncio
    async def test_unknown_partition_never_reaches_crm(self, service, crm):
        with pytest.raises(InvalidPartitionError):
            await service.sync_partition("Алматы")
        assert crm.calls == []


# ── Watermark Tracker ──────────────────────────────────────────────────────


class TestWatermarkTracker:
    @pytest.mark.asyncio
    async def test_unreadable_store_degrades_to_none(self, registry):
        store = registry.get("астана")
        async with store.engine.begin() as conn:
            await conn.execute(text("DROP TABLE deals"))

        tracker = WatermarkTracker(registry)
        assert await tracker.max_id("астана", EntityType.DEAL) is None

    @pytest.mark.asyncio
    async def test_unknown_partition(self, registry):
        with pytest.raises(KeyError):
            await WatermarkTracker(registry).max_id("алматы", EntityType.PRODUCT)
