"""Product partition migration, driven by CRM product webhooks.

When a product's city attribute changes in the CRM, the product must leave
its old partition and appear in the new one. The only signal used is
whether the target store already holds the product: if it does not, the
product is deleted from every other store and inserted into the target
together with its deal links and the deals and contacts they reference.
The cached quantity travels with it. The target row is then refreshed with
the CRM's current attributes.

Deletes and the insert touch different SQLite files, so the move is ordered
(delete everywhere else first) rather than atomic: a concurrent reader may
briefly see the product in no partition, never in two. If the insert fails,
the exported rows are written back to the stores they came from.
"""

from __future__ import annotations

import structlog

from src.crm_mirror.catalog.repository import PartitionRepository
from src.crm_mirror.catalog.schemas import ProductRecord, WriteSet
from src.crm_mirror.config import normalize_partition_key
from src.crm_mirror.core.database import PartitionStore, StoreError, StoreRegistry
from src.crm_mirror.core.monitoring import record_migration
from src.crm_mirror.crm.adapter import CRMSource

logger = structlog.get_logger(__name__)


def _merge(product: ProductRecord, bundles: list[WriteSet]) -> WriteSet:
    """Combine exported rows into one write-set headed by the CRM's product."""
    quantity = max((p.quantity for b in bundles for p in b.products), default=0)
    merged = WriteSet(products=[product.model_copy(update={"quantity": quantity})])
    seen_deals: set[str] = set()
    seen_contacts: set[str] = set()
    for bundle in bundles:
        merged.deals.extend(d for d in bundle.deals if d.id not in seen_deals)
        seen_deals.update(d.id for d in bundle.deals)
        merged.contacts.extend(c for c in bundle.contacts if c.id not in seen_contacts)
        seen_contacts.update(c.id for c in bundle.contacts)
        merged.links.extend(link for link in bundle.links if link not in merged.links)
    return merged


class MigrationHandler:
    """Moves and refreshes single products across partition stores."""

    def __init__(self, registry: StoreRegistry, crm: CRMSource) -> None:
        self._registry = registry
        self._crm = crm

    async def _resolve_target(
        self, product_id: str
    ) -> tuple[ProductRecord, PartitionStore] | None:
        """Fetch the product and find the store for its city attribute."""
        product = await self._crm.get_product(product_id)
        if product is None:
            logger.warning("migration.product_not_found", product_id=product_id)
            return None

        attribute = await self._crm.resolve_partition_attribute()
        value = (
            attribute.find_by_id(product.partition_value_id)
            if product.partition_value_id
            else None
        )
        if value is None:
            logger.warning(
                "migration.city_missing",
                product_id=product_id,
                value_id=product.partition_value_id,
            )
            return None

        store = self._registry.get(normalize_partition_key(value.value))
        if store is None:
            logger.warning(
                "migration.city_not_partitioned",
                product_id=product_id,
                city=value.value,
            )
            return None
        return product, store

    async def migrate_product(self, product_id: str) -> bool:
        """Place the product in the partition its CRM city names.

        Returns:
            True if the product is now in its target partition, False when
            the product or its city could not be resolved (nothing changed).
        """
        resolved = await self._resolve_target(product_id)
        if resolved is None:
            record_migration("unresolved")
            return False
        product, target = resolved
        target_repo = PartitionRepository.for_store(target)

        if await target_repo.get_product(product_id) is None:
            exported = await self._take_from_others(product_id, target.key)
            carried = _merge(product, [bundle for _, bundle in exported])
            try:
                await target_repo.apply_write_set(carried)
            except StoreError:
                await self._restore(exported)
                raise
            record_migration("moved" if exported else "inserted")
            logger.info(
                "migration.product_moved",
                product_id=product_id,
                target=target.key,
                removed_from=[repo.partition for repo, _ in exported],
                links=len(carried.links),
            )
        else:
            record_migration("updated")

        await target_repo.update_product(product_id, product)
        return True

    async def _take_from_others(
        self, product_id: str, target_key: str
    ) -> list[tuple[PartitionRepository, WriteSet]]:
        """Export and delete the product from every store except the target."""
        exported: list[tuple[PartitionRepository, WriteSet]] = []
        for other in self._registry.others(target_key):
            repo = PartitionRepository.for_store(other)
            bundle = await repo.export_product(product_id)
            if bundle is None:
                continue
            await repo.delete_product(product_id)
            exported.append((repo, bundle))
        return exported

    async def _restore(self, exported: list[tuple[PartitionRepository, WriteSet]]) -> None:
        for repo, bundle in exported:
            try:
                await repo.apply_write_set(bundle)
            except StoreError as exc:
                logger.error(
                    "migration.restore_failed",
                    partition=repo.partition,
                    product_ids=[p.id for p in bundle.products],
                    error=str(exc),
                )

    async def add_product(self, product_id: str) -> bool:
        """Upsert a newly created CRM product into its partition.

        Unlike migrate_product, other partitions are not touched.
        """
        resolved = await self._resolve_target(product_id)
        if resolved is None:
            return False
        product, target = resolved
        await PartitionRepository.for_store(target).upsert_product(product)
        logger.info("migration.product_added", product_id=product_id, target=target.key)
        return True
