"""CRM source abstract base class -- the remote operations the mirror depends on.

Every CRM backend implements this ABC. The reconciler only uses the three
watermark-bounded list operations; the service facade uses the mutations
and lookups. Bitrix24Client is the production implementation; tests use an
in-memory double.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.crm_mirror.catalog.schemas import (
    ContactCreate,
    ContactRecord,
    DealCreate,
    DealWithLineItems,
    LineItem,
    PartitionAttribute,
    ProductRecord,
)


class CRMError(Exception):
    """Base class for remote CRM failures."""


class CRMUnavailableError(CRMError):
    """The CRM could not be reached, timed out, or answered with a 5xx."""


class CRMRateLimitError(CRMUnavailableError):
    """The CRM rejected the call with QUERY_LIMIT_EXCEEDED or HTTP 503."""


class CRMResponseError(CRMError):
    """The CRM answered with a REST-level error payload.

    Attributes:
        method: REST method that failed, e.g. ``crm.deal.add``.
        error_code: CRM error code, e.g. ``ERROR_CORE``.
        status_code: HTTP status of the response.
    """

    def __init__(
        self,
        method: str,
        error_code: str,
        description: str = "",
        status_code: int | None = None,
    ) -> None:
        self.method = method
        self.error_code = error_code
        self.description = description
        self.status_code = status_code
        super().__init__(f"{method} failed: {error_code} {description}".strip())


class CRMSource(ABC):
    """Abstract interface for the remote CRM.

    Methods:
        list_products_since: Products of one city with id above the watermark.
        list_deals_with_line_items: Deals with id above the watermark, with rows.
        list_contacts_since: Contacts with id above the watermark.
        create_contact: Create a contact, return its id.
        create_deal: Create a deal, return its id.
        set_deal_line_items: Replace a deal's product rows.
        update_deal_amount: Set a deal's total amount.
        get_product: Fetch one product with its city attribute value.
        resolve_partition_attribute: Discover the product field holding the city.
    """

    # ── Delta Fetches ───────────────────────────────────────────────────────

    @abstractmethod
    async def list_products_since(
        self, watermark: int | None, partition_key: str
    ) -> list[ProductRecord]:
        """Products in ``partition_key`` with id > watermark (all when None)."""
        ...

    @abstractmethod
    async def list_deals_with_line_items(
        self, watermark: int | None
    ) -> list[DealWithLineItems]:
        """Deals with id > watermark (all when None), each with its line items."""
        ...

    @abstractmethod
    async def list_contacts_since(self, watermark: int | None) -> list[ContactRecord]:
        """Contacts with id > watermark (all when None)."""
        ...

    # ── Mutations ───────────────────────────────────────────────────────────

    @abstractmethod
    async def create_contact(self, fields: ContactCreate) -> str | None:
        """Create a contact; return its id, or None if the CRM returned none."""
        ...

    @abstractmethod
    async def create_deal(self, fields: DealCreate) -> str | None:
        """Create a deal; return its id, or None if the CRM returned none."""
        ...

    @abstractmethod
    async def set_deal_line_items(self, deal_id: str, line_items: list[LineItem]) -> bool:
        """Replace the deal's product rows."""
        ...

    @abstractmethod
    async def update_deal_amount(self, deal_id: str, amount: float) -> bool:
        """Set the deal's OPPORTUNITY amount."""
        ...

    # ── Lookups ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def get_product(self, product_id: str) -> ProductRecord | None:
        """Fetch one product; partition_value_id carries its city enum value."""
        ...

    @abstractmethod
    async def resolve_partition_attribute(self) -> PartitionAttribute:
        """Return the city attribute key and its enumerated values."""
        ...

    # ── Read-through Lookups ────────────────────────────────────────────────

    @abstractmethod
    async def list_sections(self) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def list_deal_categories(self) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def list_product_pictures(self, product_id: str) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def list_store_quantities(self) -> list[dict[str, Any]]:
        ...
