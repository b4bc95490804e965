"""Partition routing: map a city name from a request to its store.

Keys are normalized with config.normalize_partition_key before lookup.
"""

from __future__ import annotations

import structlog

from src.crm_mirror.config import normalize_partition_key
from src.crm_mirror.core.database import PartitionStore, StoreRegistry

logger = structlog.get_logger(__name__)


class InvalidPartitionError(ValueError):
    """Raised when a partition key is not one of the configured cities.

    This is a client error: the caller supplied a key outside the closed
    set, so no store is selected and nothing is retried.
    """

    def __init__(self, raw_key: str | None, known: list[str]) -> None:
        self.raw_key = raw_key
        self.known = known
        super().__init__(f"Unknown partition: {raw_key!r}")


class PartitionRouter:
    """Deterministic mapping from a partition key to a PartitionStore."""

    def __init__(self, registry: StoreRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> StoreRegistry:
        return self._registry

    def resolve(self, raw_key: str | None) -> PartitionStore:
        """Resolve a raw partition key to its store.

        Raises:
            InvalidPartitionError: If the key is empty or not configured.
        """
        if raw_key is None or not raw_key.strip():
            raise InvalidPartitionError(raw_key, self._registry.keys())

        store = self._registry.get(normalize_partition_key(raw_key))
        if store is None:
            logger.warning(
                "partition.unknown_key",
                raw_key=raw_key,
                known=self._registry.keys(),
            )
            raise InvalidPartitionError(raw_key, self._registry.keys())
        return store
