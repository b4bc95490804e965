"""Incremental sync engine: fetch CRM deltas, join, persist, read back.

One sync of one partition runs:
1. Read the partition's watermarks (skipped for a full sync).
2. Fetch products, deals (with line items) and contacts concurrently; all
   three must finish before anything else happens.
3. join(): attach to every product the deals whose line items reference it
   by product id or one of its offer ids, each deal embedding its resolved
   contact.
4. Persist the resulting write-set in one transaction.
5. Return the whole partition read back from the store.

A failed fetch aborts the run before any write. The reconciler never
retries; rate-limit retries live in the CRM transport.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel, Field

from src.crm_mirror.catalog.repository import PartitionRepository
from src.crm_mirror.catalog.schemas import (
    ContactRecord,
    DealRecord,
    DealView,
    DealWithLineItems,
    ProductDealPair,
    ProductRecord,
    ProductView,
    SyncMode,
    SyncReport,
    Watermarks,
    WriteSet,
)
from src.crm_mirror.catalog.watermark import WatermarkTracker
from src.crm_mirror.core.concurrency import gather_all
from src.crm_mirror.core.database import PartitionStore, StoreError
from src.crm_mirror.core.monitoring import track_sync
from src.crm_mirror.crm.adapter import CRMError, CRMSource

logger = structlog.get_logger(__name__)


class SyncError(Exception):
    """A sync run failed; nothing from this run was written.

    Attributes:
        partition: Partition being synced.
        stage: ``fetch`` or ``persist``.
    """

    def __init__(self, partition: str, stage: str, cause: Exception) -> None:
        self.partition = partition
        self.stage = stage
        self.cause = cause
        super().__init__(f"Sync of '{partition}' failed during {stage}: {cause}")


class ReconciliationResult(BaseModel):
    view: list[ProductView] = Field(default_factory=list)
    write_set: WriteSet = Field(default_factory=WriteSet)
    unresolved_contacts: int = 0


def join(
    products: Sequence[ProductRecord],
    deals: Sequence[DealWithLineItems],
    contacts: Sequence[ContactRecord],
    *,
    cached_products: Iterable[ProductRecord] = (),
    cached_contacts: Iterable[ContactRecord] = (),
) -> ReconciliationResult:
    """Join fetched deltas into the product view and a normalized write-set.

    A line item matches a product when its product id equals the product's
    id or one of its offer ids. Cached products are also match targets so a
    new deal on an already-cached product is linked; they are not re-written
    and do not appear in the returned view. Contacts resolve against fetched and
    cached contacts; an unresolved contact embeds as None.

    Deals appear under a product in input order, at most once each.
    """
    contact_index: dict[str, ContactRecord] = {c.id: c for c in cached_contacts}
    contact_index.update({c.id: c for c in contacts})

    fetched_ids = {p.id for p in products}
    targets: dict[str, list[str]] = defaultdict(list)
    for product in [*products, *(p for p in cached_products if p.id not in fetched_ids)]:
        targets[product.id].append(product.id)
        for offer_id in product.offer_ids:
            if offer_id != product.id:
                targets[offer_id].append(product.id)

    deals_by_product: dict[str, list[DealRecord]] = defaultdict(list)
    linked_deals: dict[str, DealRecord] = {}
    links: list[ProductDealPair] = []
    seen: set[tuple[str, str]] = set()

    for entry in deals:
        deal = entry.deal
        for item in entry.line_items:
            for product_id in targets.get(item.product_id, ()):
                pair = (product_id, deal.id)
                if pair in seen:
                    continue
                seen.add(pair)
                links.append(ProductDealPair(product_id=product_id, deal_id=deal.id))
                deals_by_product[product_id].append(deal)
                linked_deals.setdefault(deal.id, deal)

    unresolved = 0
    for deal in linked_deals.values():
        if deal.contact_id is None or deal.contact_id not in contact_index:
            unresolved += 1

    view = [
        ProductView(
            id=product.id,
            name=product.name,
            description=product.description,
            quantity=product.quantity,
            section_id=product.section_id,
            deals=[
                DealView.from_record(
                    deal,
                    contact_index.get(deal.contact_id) if deal.contact_id else None,
                )
                for deal in deals_by_product.get(product.id, [])
            ],
        )
        for product in products
    ]

    return ReconciliationResult(
        view=view,
        write_set=WriteSet(
            products=list(products),
            deals=list(linked_deals.values()),
            contacts=list(contacts),
            links=links,
        ),
        unresolved_contacts=unresolved,
    )


class Reconciler:
    """Runs incremental or full syncs of a partition against a CRMSource.

    Args:
        crm: Remote source of products, deals and contacts.
        watermarks: Tracker over the same StoreRegistry as the stores synced.
    """

    def __init__(self, crm: CRMSource, watermarks: WatermarkTracker) -> None:
        self._crm = crm
        self._watermarks = watermarks

    async def sync(
        self, store: PartitionStore, mode: SyncMode = SyncMode.INCREMENTAL
    ) -> SyncReport:
        """Sync one partition and return the merged view.

        Raises:
            SyncError: A fetch or the write failed; the store is unchanged.
        """
        log = logger.bind(partition=store.key, mode=mode.value)
        repository = PartitionRepository.for_store(store)
        started_at = datetime.now(timezone.utc)

        async with track_sync(store.key, mode.value) as tracker:
            marks = (
                await self._watermarks.read_all(store.key)
                if mode == SyncMode.INCREMENTAL
                else Watermarks()
            )

            try:
                products, deals, contacts = await gather_all(
                    self._crm.list_products_since(marks.product, store.key),
                    self._crm.list_deals_with_line_items(marks.deal),
                    self._crm.list_contacts_since(marks.contact),
                )
            except CRMError as exc:
                log.error("sync.fetch_failed", error=str(exc))
                raise SyncError(store.key, "fetch", exc) from exc

            try:
                cached_products = await repository.list_products()
                cached_contacts = await repository.list_contacts()
                result = join(
                    products,
                    deals,
                    contacts,
                    cached_products=cached_products,
                    cached_contacts=cached_contacts,
                )
                await repository.apply_write_set(result.write_set)
                view = await repository.list_products_with_deals()
            except StoreError as exc:
                log.error("sync.persist_failed", error=str(exc))
                raise SyncError(store.key, "persist", exc) from exc

            tracker["rows"] = {
                "product": len(result.write_set.products),
                "deal": len(result.write_set.deals),
                "contact": len(result.write_set.contacts),
                "link": len(result.write_set.links),
            }

        if result.unresolved_contacts:
            log.warning("sync.unresolved_contacts", count=result.unresolved_contacts)
        log.info(
            "sync.completed",
            fetched_products=len(products),
            fetched_deals=len(deals),
            fetched_contacts=len(contacts),
            links=len(result.write_set.links),
        )

        return SyncReport(
            partition=store.key,
            mode=mode,
            watermarks=marks,
            fetched_products=len(products),
            fetched_deals=len(deals),
            fetched_contacts=len(contacts),
            written_links=len(result.write_set.links),
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            products=view,
        )
