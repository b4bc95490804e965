"""MirrorService -- the operations the HTTP layer exposes.

Every partition-scoped operation resolves its partition first, so an
unknown city fails with InvalidPartitionError before any CRM call or store
access. Webhook-driven deletes fan out over every partition.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.crm_mirror.catalog.migration import MigrationHandler
from src.crm_mirror.catalog.reconciler import Reconciler
from src.crm_mirror.catalog.repository import PartitionRepository
from src.crm_mirror.catalog.schemas import (
    ContactCreate,
    ContactRecord,
    DealCreate,
    DealOutcome,
    DealRecord,
    LineItem,
    ProductView,
    SyncMode,
    SyncReport,
)
from src.crm_mirror.catalog.watermark import WatermarkTracker
from src.crm_mirror.config import Settings, get_settings
from src.crm_mirror.core.database import StoreRegistry
from src.crm_mirror.core.partitions import PartitionRouter
from src.crm_mirror.crm.adapter import CRMSource
from src.crm_mirror.crm.field_mapping import format_crm_datetime

logger = structlog.get_logger(__name__)


class MirrorService:
    """Facade over router, reconciler, migration handler and repositories.

    Args:
        registry: Partition stores built at startup.
        crm: Remote CRM source.
        settings: Application settings (defaults to get_settings()).
    """

    def __init__(
        self,
        registry: StoreRegistry,
        crm: CRMSource,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._registry = registry
        self._crm = crm
        self._router = PartitionRouter(registry)
        self._watermarks = WatermarkTracker(registry)
        self._reconciler = Reconciler(crm, self._watermarks)
        self._migration = MigrationHandler(registry, crm)

    @property
    def registry(self) -> StoreRegistry:
        return self._registry

    @property
    def crm(self) -> CRMSource:
        return self._crm

    def _repository(self, partition_key: str) -> PartitionRepository:
        return PartitionRepository.for_store(self._router.resolve(partition_key))

    # ── Sync ────────────────────────────────────────────────────────────────

    async def sync_partition(self, partition_key: str) -> SyncReport:
        """Incremental sync bounded by the partition's watermarks."""
        store = self._router.resolve(partition_key)
        with structlog.contextvars.bound_contextvars(partition=store.key):
            return await self._reconciler.sync(store, SyncMode.INCREMENTAL)

    async def full_sync_partition(self, partition_key: str) -> SyncReport:
        """Refetch everything for the partition, ignoring watermarks."""
        store = self._router.resolve(partition_key)
        with structlog.contextvars.bound_contextvars(partition=store.key):
            return await self._reconciler.sync(store, SyncMode.FULL)

    # ── Reads ───────────────────────────────────────────────────────────────

    async def read_partition(self, partition_key: str) -> list[ProductView]:
        return await self._repository(partition_key).list_products_with_deals()

    async def list_cached_contacts(self, partition_key: str) -> list[ContactRecord]:
        return await self._repository(partition_key).list_contacts()

    # ── Writes ──────────────────────────────────────────────────────────────

    async def upsert_contact(
        self, partition_key: str, fields: ContactCreate
    ) -> ContactRecord | None:
        """Create the contact in the CRM, then cache it.

        Returns:
            The cached contact, or None if the CRM returned no id.
        """
        repository = self._repository(partition_key)
        contact_id = await self._crm.create_contact(fields)
        if contact_id is None:
            logger.warning("contact.create_returned_no_id", partition=repository.partition)
            return None

        contact = ContactRecord(
            id=contact_id,
            name=fields.name,
            last_name=fields.last_name,
            phone=fields.phone,
        )
        await repository.upsert_contact(contact)
        logger.info("contact.created", partition=repository.partition, contact_id=contact_id)
        return contact

    async def record_deal(self, partition_key: str, fields: DealCreate) -> DealOutcome | None:
        """Create a deal with its products in the CRM and cache it.

        Steps: create the deal, set its line items, cache the deal and its
        links, then set the deal amount if the line items were accepted.

        Returns:
            DealOutcome describing which steps succeeded, or None if the CRM
            returned no deal id.
        """
        repository = self._repository(partition_key)
        deal_id = await self._crm.create_deal(fields)
        if deal_id is None:
            logger.warning("deal.create_returned_no_id", partition=repository.partition)
            return None

        line_items_set = await self._crm.set_deal_line_items(
            deal_id,
            [
                LineItem(product_id=ref.id, quantity=ref.quantity, store_id=ref.store_id)
                for ref in fields.products
            ],
        )

        tz_offset = self._settings.CRM_DEAL_TZ_OFFSET
        deal = DealRecord(
            id=deal_id,
            title=fields.title,
            contact_id=fields.contact_id,
            begin_date=format_crm_datetime(fields.date_from, tz_offset),
            close_date=format_crm_datetime(fields.date_to, tz_offset),
            wedding_date=fields.wedding_date,
            stage_id=self._settings.DEFAULT_DEAL_STAGE,
            prepayment=fields.prepayment,
            postpayment=fields.postpayment,
            opportunity=fields.opportunity,
        )
        linked = await repository.record_deal(deal, [ref.id for ref in fields.products])
        skipped = [ref.id for ref in fields.products if ref.id not in linked]
        if skipped:
            logger.warning(
                "deal.products_not_in_partition",
                partition=repository.partition,
                deal_id=deal_id,
                product_ids=skipped,
            )

        amount_updated = False
        if line_items_set and fields.opportunity is not None:
            amount_updated = await self._crm.update_deal_amount(deal_id, fields.opportunity)

        logger.info(
            "deal.recorded",
            partition=repository.partition,
            deal_id=deal_id,
            line_items_set=line_items_set,
            amount_updated=amount_updated,
        )
        return DealOutcome(
            deal=deal,
            line_items_set=line_items_set,
            amount_updated=amount_updated,
            linked_product_ids=linked,
        )

    # ── Deletes ─────────────────────────────────────────────────────────────

    async def delete_deal(self, deal_id: str, partition_key: str | None = None) -> bool:
        """Delete a deal and its links from one partition, or from all of them.

        Returns:
            True if the deal existed in at least one targeted partition.
        """
        if partition_key is not None:
            return await self._repository(partition_key).delete_deal(deal_id)

        deleted = False
        for store in self._registry:
            if await PartitionRepository.for_store(store).delete_deal(deal_id):
                deleted = True
        return deleted

    async def delete_product(self, product_id: str) -> bool:
        deleted = False
        for store in self._registry:
            if await PartitionRepository.for_store(store).delete_product(product_id):
                deleted = True
        logger.info("product.deleted", product_id=product_id, found=deleted)
        return deleted

    async def delete_contact(self, contact_id: str) -> bool:
        deleted = False
        for store in self._registry:
            if await PartitionRepository.for_store(store).delete_contact(contact_id):
                deleted = True
        logger.info("contact.deleted", contact_id=contact_id, found=deleted)
        return deleted

    # ── Migration ───────────────────────────────────────────────────────────

    async def migrate_product(self, product_id: str) -> bool:
        return await self._migration.migrate_product(product_id)

    async def add_product(self, product_id: str) -> bool:
        return await self._migration.add_product(product_id)

    # ── CRM Pass-throughs ───────────────────────────────────────────────────

    async def list_cities(self) -> list[str]:
        attribute = await self._crm.resolve_partition_attribute()
        return [value.value for value in attribute.values]

    async def list_sections(self) -> list[dict[str, Any]]:
        return await self._crm.list_sections()

    async def list_deal_categories(self) -> list[dict[str, Any]]:
        return await self._crm.list_deal_categories()

    async def list_product_pictures(self, product_id: str) -> list[dict[str, Any]]:
        return await self._crm.list_product_pictures(product_id)

    async def list_store_quantities(self) -> list[dict[str, Any]]:
        return await self._crm.list_store_quantities()

    async def list_remote_contacts(self) -> list[ContactRecord]:
        return await self._crm.list_contacts_since(None)
