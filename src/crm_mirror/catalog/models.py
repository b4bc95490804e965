"""Partition cache persistence models.

Four SQLAlchemy models on PartitionBase, created in every partition's
SQLite file:
- ProductModel: Catalog items (dresses) assigned to the partition's city
- DealModel: CRM deals referencing at least one cached product
- ContactModel: CRM contacts
- ProductDealLinkModel: Many-to-many association, unique per (deal, product)

Identifiers are the CRM's numeric ids stored as text. contact_id on deals is
a weak reference with no foreign key, so a deal may point at a contact that
has not been cached yet.
"""

from __future__ import annotations

from sqlalchemy import JSON, Float, Integer, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from src.crm_mirror.core.database import PartitionBase


class ProductModel(PartitionBase):
    """Catalog item cached for one city.

    quantity is cache-local: it is not part of the CRM product payload and
    stays 0 unless written explicitly. offer_ids is a JSON array of the
    product's trade offer ids.
    """

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    section_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    offer_ids: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list, server_default=text("'[]'")
    )


class DealModel(PartitionBase):
    """CRM deal (a rental/purchase booking)."""

    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    begin_date: Mapped[str | None] = mapped_column(Text, nullable=True)
    close_date: Mapped[str | None] = mapped_column(Text, nullable=True)
    wedding_date: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    prepayment: Mapped[float | None] = mapped_column(Float, nullable=True)
    postpayment: Mapped[float | None] = mapped_column(Float, nullable=True)
    opportunity: Mapped[float | None] = mapped_column(Float, nullable=True)


class ContactModel(PartitionBase):
    """CRM contact (customer)."""

    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)


class ProductDealLinkModel(PartitionBase):
    """Association between a deal and a product in the same partition."""

    __tablename__ = "product_deal_links"
    __table_args__ = (
        UniqueConstraint("deal_id", "product_id", name="uq_link_deal_product"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
