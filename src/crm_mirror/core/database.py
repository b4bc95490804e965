"""Async SQLAlchemy engines with one embedded SQLite store per partition.

Provides:
- PartitionBase: Declarative base for the four cached relations
- PartitionStore: One city's store (engine, session factory, schema init)
  kept in step with the alembic revisions
- StoreRegistry: Explicit set of stores built once at startup and passed
  into every operation instead of process-wide globals
- StoreError: Raised when a store read/write fails
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Iterable, Iterator
from pathlib import Path
from typing import Any

import structlog
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import Connection, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.crm_mirror.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class StoreError(Exception):
    """Raised when a partition store operation fails.

    Attributes:
        partition: Partition key of the failing store.
        operation: Repository operation that failed.
    """

    def __init__(self, partition: str, operation: str, original_error: Exception) -> None:
        self.partition = partition
        self.operation = operation
        self.original_error = original_error
        super().__init__(f"Store '{partition}' failed during {operation}: {original_error}")


# ── Declarative Base ────────────────────────────────────────────────────────


class PartitionBase(DeclarativeBase):
    """Base class for models stored in every partition's SQLite file."""


# ── Partition Store ─────────────────────────────────────────────────────────


class PartitionStore:
    """A single city's embedded relational cache.

    The engine is created lazily so a registry can be built before the
    event loop runs.

    Args:
        key: Normalized partition key (city name).
        url: Async SQLAlchemy URL, e.g. ``sqlite+aiosqlite:///data/astana/database.db``.
        script_location: Alembic script directory; defaults to
            ``ALEMBIC_SCRIPT_LOCATION`` from settings.
    """

    def __init__(self, key: str, url: str, script_location: str | None = None) -> None:
        self.key = key
        self.url = url
        self.script_location = script_location or get_settings().ALEMBIC_SCRIPT_LOCATION
        self._engine: AsyncEngine | None = None

    def __repr__(self) -> str:
        return f"<PartitionStore {self.key}>"

    @property
    def engine(self) -> AsyncEngine:
        """Get or create the engine for this partition."""
        if self._engine is None:
            self._engine = create_async_engine(self.url, echo=False)

            # WAL lets readers see the last committed batch while a sync writes
            @event.listens_for(self._engine.sync_engine, "connect")
            def set_sqlite_pragmas(dbapi_conn: Any, connection_record: Any) -> None:
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA busy_timeout=5000")
                cursor.close()

        return self._engine

    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield an AsyncSession bound to this partition."""
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    def _prepare_schema(self, connection: Connection) -> str | None:
        """Create a fresh file's tables and stamp it at the alembic head.

        A file that already carries an alembic_version row is left to
        ``scripts/migrate.py``. Returns the revision the file is at.
        """
        context = MigrationContext.configure(connection)
        current = context.get_current_revision()
        script = ScriptDirectory(self.script_location)
        head = script.get_current_head()
        if current is not None:
            if current != head:
                logger.warning(
                    "partition_store.schema_behind",
                    partition=self.key,
                    revision=current,
                    head=head,
                )
            return current

        PartitionBase.metadata.create_all(connection)
        if head is not None:
            context.stamp(script, head)
        return head

    async def init(self) -> None:
        """Create the database file's directory and all cached relations."""
        import src.crm_mirror.catalog.models  # noqa: F401 -- register tables

        database = make_url(self.url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)

        async with self.engine.begin() as conn:
            revision = await conn.run_sync(self._prepare_schema)
        logger.info(
            "partition_store.initialized",
            partition=self.key,
            url=self.url,
            revision=revision,
        )

    async def ping(self) -> None:
        """Execute a trivial query; raises if the store is unreachable."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def dispose(self) -> None:
        """Dispose of the engine and close all connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None


# ── Store Registry ──────────────────────────────────────────────────────────


class StoreRegistry:
    """All partition stores known to the process, keyed by partition key.

    Constructed once at startup and handed to the router, watermark tracker,
    reconciler and migration handler.
    """

    def __init__(self, stores: Iterable[PartitionStore]) -> None:
        self._stores: dict[str, PartitionStore] = {}
        for store in stores:
            if store.key in self._stores:
                raise ValueError(f"Duplicate partition key: {store.key}")
            self._stores[store.key] = store

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> StoreRegistry:
        """Build one store per configured partition."""
        settings = settings or get_settings()
        return cls(
            PartitionStore(
                key,
                settings.partition_database_url(key),
                script_location=settings.ALEMBIC_SCRIPT_LOCATION,
            )
            for key in settings.partition_keys()
        )

    def get(self, key: str) -> PartitionStore | None:
        """Return the store for an already-normalized key, or None."""
        return self._stores.get(key)

    def keys(self) -> list[str]:
        return list(self._stores)

    def others(self, key: str) -> list[PartitionStore]:
        """Return every store except the one for ``key``."""
        return [store for k, store in self._stores.items() if k != key]

    def __iter__(self) -> Iterator[PartitionStore]:
        return iter(self._stores.values())

    def __len__(self) -> int:
        return len(self._stores)

    def __contains__(self, key: object) -> bool:
        return key in self._stores

    async def init_all(self) -> None:
        for store in self:
            await store.init()

    async def dispose_all(self) -> None:
        for store in self:
            await store.dispose()
