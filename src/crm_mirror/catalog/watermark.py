"""Watermark tracker -- highest cached id per partition and entity type.

Watermarks bound incremental fetches: only CRM records with a numerically
greater id are requested. A failed read degrades to ``None`` (fetch
everything for that entity type) instead of failing the sync; the worst
case is a redundant full fetch, which the idempotent upserts absorb.
"""

from __future__ import annotations

import structlog

from src.crm_mirror.catalog.repository import PartitionRepository
from src.crm_mirror.catalog.schemas import EntityType, Watermarks
from src.crm_mirror.core.database import StoreError, StoreRegistry

logger = structlog.get_logger(__name__)


class WatermarkTracker:
    """Reads watermarks from the partition stores in a StoreRegistry."""

    def __init__(self, registry: StoreRegistry) -> None:
        self._registry = registry

    async def max_id(self, partition: str, entity_type: EntityType) -> int | None:
        """Return the highest cached id, or None if empty or unreadable."""
        store = self._registry.get(partition)
        if store is None:
            raise KeyError(partition)

        try:
            return await PartitionRepository.for_store(store).max_id(entity_type)
        except StoreError as exc:
            logger.warning(
                "watermark.read_failed",
                partition=partition,
                entity_type=entity_type.value,
                error=str(exc),
            )
            return None

    async def read_all(self, partition: str) -> Watermarks:
        marks = Watermarks(
            product=await self.max_id(partition, EntityType.PRODUCT),
            deal=await self.max_id(partition, EntityType.DEAL),
            contact=await self.max_id(partition, EntityType.CONTACT),
        )
        logger.debug("watermark.read", partition=partition, **marks.model_dump())
        return marks
