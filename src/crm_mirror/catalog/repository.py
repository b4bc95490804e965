"""Partition cache repository -- async reads and upserts for one store.

Provides PartitionRepository with the session_factory callable pattern.
Every write is an upsert keyed by the CRM id, so replaying the same batch
leaves the store unchanged; links rely on the (deal_id, product_id) unique
constraint and ignore duplicates.

SQLAlchemy failures are raised as StoreError carrying the partition key and
the failing operation.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import AsyncGenerator, Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import structlog
from sqlalchemy import Integer, cast, delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_mirror.catalog.models import (
    ContactModel,
    DealModel,
    ProductDealLinkModel,
    ProductModel,
)
from src.crm_mirror.catalog.schemas import (
    ContactRecord,
    DealRecord,
    DealView,
    EntityType,
    ProductDealPair,
    ProductRecord,
    ProductView,
    WriteSet,
)
from src.crm_mirror.core.database import PartitionStore, StoreError

logger = structlog.get_logger(__name__)

_ENTITY_MODELS: dict[EntityType, Any] = {
    EntityType.PRODUCT: ProductModel,
    EntityType.DEAL: DealModel,
    EntityType.CONTACT: ContactModel,
}


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_product(model: ProductModel) -> ProductRecord:
    return ProductRecord(
        id=model.id,
        name=model.name,
        description=model.description,
        quantity=model.quantity or 0,
        section_id=model.section_id,
        offer_ids=list(model.offer_ids or []),
    )


def _model_to_deal(model: DealModel) -> DealRecord:
    return DealRecord(
        id=model.id,
        title=model.title,
        contact_id=model.contact_id,
        begin_date=model.begin_date,
        close_date=model.close_date,
        wedding_date=model.wedding_date,
        stage_id=model.stage_id,
        prepayment=model.prepayment,
        postpayment=model.postpayment,
        opportunity=model.opportunity,
    )


def _model_to_contact(model: ContactModel) -> ContactRecord:
    return ContactRecord(
        id=model.id,
        name=model.name,
        last_name=model.last_name,
        phone=model.phone,
    )


def _product_row(record: ProductRecord) -> dict[str, Any]:
    return record.model_dump(exclude={"partition_value_id"})


def _upsert_statement(model: Any, preserve: Sequence[str] = ()) -> Any:
    """Build INSERT ... ON CONFLICT(id) DO UPDATE for every non-key column.

    Columns named in ``preserve`` keep their stored value on conflict.
    """
    stmt = sqlite_insert(model)
    skip = {"id", *preserve}
    return stmt.on_conflict_do_update(
        index_elements=["id"],
        set_={
            column.name: stmt.excluded[column.name]
            for column in model.__table__.columns
            if column.name not in skip
        },
    )


def _link_statement() -> Any:
    return sqlite_insert(ProductDealLinkModel).on_conflict_do_nothing(
        index_elements=["deal_id", "product_id"]
    )


def assemble_views(
    products: Sequence[ProductRecord],
    links: Sequence[ProductDealPair],
    deals: Sequence[DealRecord],
    contacts: Sequence[ContactRecord],
) -> list[ProductView]:
    """Build the product -> deals -> contact tree from normalized rows.

    Links pointing at a missing deal are skipped; a deal whose contact is not
    cached embeds ``contact=None``.
    """
    deals_by_id = {deal.id: deal for deal in deals}
    contacts_by_id = {contact.id: contact for contact in contacts}

    deal_ids_by_product: dict[str, list[str]] = defaultdict(list)
    for link in links:
        deal_ids_by_product[link.product_id].append(link.deal_id)

    views: list[ProductView] = []
    for product in products:
        deal_views: list[DealView] = []
        for deal_id in deal_ids_by_product.get(product.id, []):
            deal = deals_by_id.get(deal_id)
            if deal is None:
                continue
            contact = contacts_by_id.get(deal.contact_id) if deal.contact_id else None
            deal_views.append(DealView.from_record(deal, contact))
        views.append(
            ProductView(
                id=product.id,
                name=product.name,
                description=product.description,
                quantity=product.quantity,
                section_id=product.section_id,
                deals=deal_views,
            )
        )
    return views


# ── Repository ──────────────────────────────────────────────────────────────


class PartitionRepository:
    """Async reads and idempotent writes against one partition store.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        partition: Partition key, used for errors and log context.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        partition: str,
    ) -> None:
        self._session_factory = session_factory
        self._partition = partition

    @classmethod
    def for_store(cls, store: PartitionStore) -> PartitionRepository:
        return cls(store.session, partition=store.key)

    @property
    def partition(self) -> str:
        return self._partition

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error(
                "partition_store.operation_failed",
                partition=self._partition,
                operation=operation,
                error=str(exc),
            )
            raise StoreError(self._partition, operation, exc) from exc

    # ── Batch Writes ────────────────────────────────────────────────────────

    async def _write_products(
        self, session: AsyncSession, rows: Sequence[ProductRecord]
    ) -> None:
        if rows:
            await session.execute(
                _upsert_statement(ProductModel, preserve=("quantity",)),
                [_product_row(row) for row in rows],
            )

    async def _write_deals(self, session: AsyncSession, rows: Sequence[DealRecord]) -> None:
        if rows:
            await session.execute(
                _upsert_statement(DealModel), [row.model_dump() for row in rows]
            )

    async def _write_contacts(
        self, session: AsyncSession, rows: Sequence[ContactRecord]
    ) -> None:
        if rows:
            await session.execute(
                _upsert_statement(ContactModel), [row.model_dump() for row in rows]
            )

    async def _write_links(
        self, session: AsyncSession, pairs: Sequence[ProductDealPair]
    ) -> None:
        if pairs:
            await session.execute(
                _link_statement(),
                [{"deal_id": p.deal_id, "product_id": p.product_id} for p in pairs],
            )

    async def upsert_products(self, rows: Sequence[ProductRecord]) -> None:
        """Insert or replace products by id; a stored quantity is kept."""
        with self._guard("upsert_products"):
            async for session in self._session_factory():
                await self._write_products(session, rows)
                await session.commit()

    async def upsert_deals(self, rows: Sequence[DealRecord]) -> None:
        with self._guard("upsert_deals"):
            async for session in self._session_factory():
                await self._write_deals(session, rows)
                await session.commit()

    async def upsert_contacts(self, rows: Sequence[ContactRecord]) -> None:
        with self._guard("upsert_contacts"):
            async for session in self._session_factory():
                await self._write_contacts(session, rows)
                await session.commit()

    async def link_products(self, pairs: Sequence[ProductDealPair]) -> None:
        """Insert links, ignoring (deal_id, product_id) pairs already stored."""
        with self._guard("link_products"):
            async for session in self._session_factory():
                await self._write_links(session, pairs)
                await session.commit()

    async def apply_write_set(self, write_set: WriteSet) -> None:
        """Persist a reconciled batch in one transaction.

        Order is products, deals, contacts, links. Any failure rolls back the
        whole batch, so readers see either the previous snapshot or all of it.
        """
        if write_set.is_empty():
            return
        with self._guard("apply_write_set"):
            async for session in self._session_factory():
                try:
                    await self._write_products(session, write_set.products)
                    await self._write_deals(session, write_set.deals)
                    await self._write_contacts(session, write_set.contacts)
                    await self._write_links(session, write_set.links)
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
        logger.debug(
            "partition_store.write_set_applied",
            partition=self._partition,
            products=len(write_set.products),
            deals=len(write_set.deals),
            contacts=len(write_set.contacts),
            links=len(write_set.links),
        )

    # ── Watermarks ──────────────────────────────────────────────────────────

    async def max_id(self, entity_type: EntityType) -> int | None:
        """Highest cached id compared numerically; None for an empty relation."""
        model = _ENTITY_MODELS[entity_type]
        with self._guard("max_id"):
            async for session in self._session_factory():
                result = await session.execute(
                    select(func.max(cast(model.id, Integer)))
                )
                value = result.scalar_one_or_none()
                return int(value) if value is not None else None
        return None

    # ── Reads ───────────────────────────────────────────────────────────────

    async def list_products(self) -> list[ProductRecord]:
        with self._guard("list_products"):
            async for session in self._session_factory():
                result = await session.execute(
                    select(ProductModel).order_by(cast(ProductModel.id, Integer))
                )
                return [_model_to_product(m) for m in result.scalars().all()]
        return []

    async def list_contacts(self) -> list[ContactRecord]:
        with self._guard("list_contacts"):
            async for session in self._session_factory():
                result = await session.execute(
                    select(ContactModel).order_by(cast(ContactModel.id, Integer))
                )
                return [_model_to_contact(m) for m in result.scalars().all()]
        return []

    async def list_products_with_deals(self) -> list[ProductView]:
        """Read the whole partition as the denormalized product view."""
        with self._guard("list_products_with_deals"):
            async for session in self._session_factory():
                products = await session.execute(
                    select(ProductModel).order_by(cast(ProductModel.id, Integer))
                )
                links = await session.execute(
                    select(ProductDealLinkModel).order_by(ProductDealLinkModel.id)
                )
                deals = await session.execute(select(DealModel))
                contacts = await session.execute(select(ContactModel))
                return assemble_views(
                    [_model_to_product(m) for m in products.scalars().all()],
                    [
                        ProductDealPair(product_id=m.product_id, deal_id=m.deal_id)
                        for m in links.scalars().all()
                    ],
                    [_model_to_deal(m) for m in deals.scalars().all()],
                    [_model_to_contact(m) for m in contacts.scalars().all()],
                )
        return []

    async def get_product(self, product_id: str) -> ProductRecord | None:
        with self._guard("get_product"):
            async for session in self._session_factory():
                model = await session.get(ProductModel, product_id)
                if model is None:
                    return None
                return _model_to_product(model)
        return None

    async def export_product(self, product_id: str) -> WriteSet | None:
        """Read a product with its links and the deals and contacts they reach.

        The result can be applied to another store with apply_write_set.

        Returns:
            None if the product is not cached here.
        """
        with self._guard("export_product"):
            async for session in self._session_factory():
                product = await session.get(ProductModel, product_id)
                if product is None:
                    return None
                links = await session.execute(
                    select(ProductDealLinkModel.deal_id)
                    .where(ProductDealLinkModel.product_id == product_id)
                    .order_by(ProductDealLinkModel.id)
                )
                deal_ids = list(links.scalars().all())
                deals: list[DealModel] = []
                contacts: list[ContactModel] = []
                if deal_ids:
                    result = await session.execute(
                        select(DealModel).where(DealModel.id.in_(deal_ids))
                    )
                    deals = list(result.scalars().all())
                    contact_ids = {d.contact_id for d in deals if d.contact_id}
                    if contact_ids:
                        result = await session.execute(
                            select(ContactModel).where(ContactModel.id.in_(contact_ids))
                        )
                        contacts = list(result.scalars().all())
                # links to deals that are no longer cached are not carried over
                present = {d.id for d in deals}
                return WriteSet(
                    products=[_model_to_product(product)],
                    deals=[_model_to_deal(m) for m in deals],
                    contacts=[_model_to_contact(m) for m in contacts],
                    links=[
                        ProductDealPair(product_id=product_id, deal_id=deal_id)
                        for deal_id in deal_ids
                        if deal_id in present
                    ],
                )
        return None

    async def get_deal(self, deal_id: str) -> DealRecord | None:
        with self._guard("get_deal"):
            async for session in self._session_factory():
                model = await session.get(DealModel, deal_id)
                if model is None:
                    return None
                return _model_to_deal(model)
        return None

    # ── Single-Row Writes ───────────────────────────────────────────────────

    async def upsert_product(self, row: ProductRecord) -> None:
        await self.upsert_products([row])

    async def update_product(self, product_id: str, row: ProductRecord) -> bool:
        """Overwrite the CRM-owned attributes of a stored product.

        Returns:
            True if a row was updated, False if the product is not cached.
        """
        with self._guard("update_product"):
            async for session in self._session_factory():
                result = await session.execute(
                    update(ProductModel)
                    .where(ProductModel.id == product_id)
                    .values(
                        name=row.name,
                        description=row.description,
                        section_id=row.section_id,
                        offer_ids=row.offer_ids,
                    )
                )
                await session.commit()
                return result.rowcount > 0
        return False

    async def upsert_contact(self, row: ContactRecord) -> None:
        await self.upsert_contacts([row])

    async def record_deal(self, row: DealRecord, product_ids: Sequence[str]) -> list[str]:
        """Store a deal and link it to the given products in one transaction.

        Only products cached in this partition are linked.

        Returns:
            Ids of the products that were linked.
        """
        with self._guard("record_deal"):
            async for session in self._session_factory():
                wanted = list(dict.fromkeys(product_ids))
                linked: list[str] = []
                if wanted:
                    result = await session.execute(
                        select(ProductModel.id).where(ProductModel.id.in_(wanted))
                    )
                    present = set(result.scalars().all())
                    linked = [pid for pid in wanted if pid in present]
                await self._write_deals(session, [row])
                await self._write_links(
                    session,
                    [ProductDealPair(product_id=pid, deal_id=row.id) for pid in linked],
                )
                await session.commit()
                return linked
        return []

    async def delete_product(self, product_id: str) -> bool:
        """Delete a product and its links. Returns True if the product existed."""
        with self._guard("delete_product"):
            async for session in self._session_factory():
                await session.execute(
                    delete(ProductDealLinkModel).where(
                        ProductDealLinkModel.product_id == product_id
                    )
                )
                result = await session.execute(
                    delete(ProductModel).where(ProductModel.id == product_id)
                )
                await session.commit()
                return result.rowcount > 0
        return False

    async def delete_deal(self, deal_id: str) -> bool:
        """Delete a deal and its links. Returns True if the deal existed."""
        with self._guard("delete_deal"):
            async for session in self._session_factory():
                await session.execute(
                    delete(ProductDealLinkModel).where(
                        ProductDealLinkModel.deal_id == deal_id
                    )
                )
                result = await session.execute(
                    delete(DealModel).where(DealModel.id == deal_id)
                )
                await session.commit()
                return result.rowcount > 0
        return False

    async def delete_contact(self, contact_id: str) -> bool:
        with self._guard("delete_contact"):
            async for session in self._session_factory():
                result = await session.execute(
                    delete(ContactModel).where(ContactModel.id == contact_id)
                )
                await session.commit()
                return result.rowcount > 0
        return False

    async def count_links(self) -> int:
        with self._guard("count_links"):
            async for session in self._session_factory():
                result = await session.execute(
                    select(func.count()).select_from(ProductDealLinkModel)
                )
                return int(result.scalar_one())
        return 0
