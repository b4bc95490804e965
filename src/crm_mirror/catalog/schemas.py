"""Pydantic schemas for the partition cache and the sync engine.

Defines all structured types flowing between the CRM client, the
reconciler, the repository and the HTTP layer:
- Enums: EntityType, SyncMode
- Records: ProductRecord, DealRecord, ContactRecord, LineItem, DealWithLineItems
- Views: DealView, ProductView (the denormalized product -> deals -> contact tree)
- Sync: ProductDealPair, WriteSet, Watermarks, SyncReport
- Partition attribute: PartitionValue, PartitionAttribute
- Requests: ContactCreate, ProductRef, DealCreate, DealOutcome
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from src.crm_mirror.config import normalize_partition_key


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Cached entity types that carry a watermark."""

    PRODUCT = "product"
    DEAL = "deal"
    CONTACT = "contact"


class SyncMode(str, Enum):
    """Incremental syncs are bounded by watermarks, full syncs are not."""

    INCREMENTAL = "incremental"
    FULL = "full"


# ── Records ─────────────────────────────────────────────────────────────────


class ProductRecord(BaseModel):
    """A catalog item as fetched from the CRM or read from a store.

    offer_ids are the ids of the product's trade offers (SKU variants) in
    the CRM offers catalog; deal line items may reference the product id or
    any of them. partition_value_id is the CRM enum value of the product's
    city attribute and is only populated by single-product lookups.
    """

    id: str
    name: str | None = None
    description: str | None = None
    quantity: int = 0
    section_id: str | None = None
    offer_ids: list[str] = Field(default_factory=list)
    partition_value_id: str | None = Field(default=None, exclude=True)


class ContactRecord(BaseModel):
    id: str
    name: str | None = None
    last_name: str | None = None
    phone: str | None = None


class DealRecord(BaseModel):
    id: str
    title: str | None = None
    contact_id: str | None = None
    begin_date: str | None = None
    close_date: str | None = None
    wedding_date: str | None = None
    stage_id: str | None = None
    prepayment: float | None = None
    postpayment: float | None = None
    opportunity: float | None = None


class LineItem(BaseModel):
    """A deal product row; product_id may be a product id or an offer id."""

    product_id: str
    quantity: float = 1
    store_id: int | None = None


class DealWithLineItems(BaseModel):
    deal: DealRecord
    line_items: list[LineItem] = Field(default_factory=list)


# ── Views ───────────────────────────────────────────────────────────────────


class DealView(BaseModel):
    """A deal embedded under a product, with its contact resolved."""

    id: str
    title: str | None = None
    contact: ContactRecord | None = None
    begin_date: str | None = None
    close_date: str | None = None
    wedding_date: str | None = None
    stage_id: str | None = None
    prepayment: float | None = None
    postpayment: float | None = None
    opportunity: float | None = None

    @classmethod
    def from_record(cls, deal: DealRecord, contact: ContactRecord | None) -> DealView:
        return cls(**deal.model_dump(exclude={"contact_id"}), contact=contact)


class ProductView(BaseModel):
    """A product with every deal referencing it in the same partition."""

    id: str
    name: str | None = None
    description: str | None = None
    quantity: int = 0
    section_id: str | None = None
    deals: list[DealView] = Field(default_factory=list)


# ── Sync ────────────────────────────────────────────────────────────────────


class ProductDealPair(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    deal_id: str


class WriteSet(BaseModel):
    """Normalized rows to persist for one sync, applied in field order."""

    products: list[ProductRecord] = Field(default_factory=list)
    deals: list[DealRecord] = Field(default_factory=list)
    contacts: list[ContactRecord] = Field(default_factory=list)
    links: list[ProductDealPair] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.products or self.deals or self.contacts or self.links)


class Watermarks(BaseModel):
    """Highest cached numeric id per entity type; None means fetch everything."""

    product: int | None = None
    deal: int | None = None
    contact: int | None = None


class SyncReport(BaseModel):
    """Outcome of one sync run for one partition."""

    partition: str
    mode: SyncMode
    watermarks: Watermarks
    fetched_products: int = 0
    fetched_deals: int = 0
    fetched_contacts: int = 0
    written_links: int = 0
    started_at: datetime
    finished_at: datetime
    products: list[ProductView] = Field(default_factory=list)


# ── Partition Attribute ─────────────────────────────────────────────────────


class PartitionValue(BaseModel):
    id: str
    value: str


class PartitionAttribute(BaseModel):
    """The CRM product field that assigns a product to a city.

    key is the CRM field code (e.g. ``PROPERTY_107``); values are the
    enumeration entries, one per city.
    """

    key: str
    values: list[PartitionValue] = Field(default_factory=list)

    def find_by_id(self, value_id: str) -> PartitionValue | None:
        for value in self.values:
            if value.id == value_id:
                return value
        return None

    def find_by_value(self, partition_key: str) -> PartitionValue | None:
        """Find the entry whose text normalizes to ``partition_key``."""
        for value in self.values:
            if normalize_partition_key(value.value) == partition_key:
                return value
        return None


# ── Requests ────────────────────────────────────────────────────────────────


class ContactCreate(BaseModel):
    name: str
    last_name: str | None = None
    phone: str | None = None


class ProductRef(BaseModel):
    """A product to attach to a new deal."""

    id: str
    quantity: float = Field(default=1, gt=0)
    store_id: int | None = None


class DealCreate(BaseModel):
    """Fields for a deal created from the booking UI."""

    title: str
    contact_id: str
    date_from: datetime
    date_to: datetime
    wedding_date: str | None = None
    prepayment: float | None = None
    postpayment: float | None = None
    opportunity: float | None = None
    category_id: int = 0
    products: list[ProductRef] = Field(default_factory=list)


class DealOutcome(BaseModel):
    """Result of recording a deal: CRM id plus which follow-up steps succeeded."""

    deal: DealRecord
    line_items_set: bool = False
    amount_updated: bool = False
    linked_product_ids: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.line_items_set and self.amount_updated
