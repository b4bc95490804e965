"""Alembic environment for per-partition SQLite migrations.

Every partition is its own SQLite file, so a migration run targets one
partition chosen via -x argument:
  alembic -x partition=астана upgrade head

Each file carries its own alembic_version table, so partitions are
tracked independently.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

import src.crm_mirror.catalog.models  # noqa: F401 -- register tables
from src.crm_mirror.config import get_settings, normalize_partition_key
from src.crm_mirror.core.database import PartitionBase

# Alembic Config object
config = context.config

# Interpret the config file for Python logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = PartitionBase.metadata


def _partition_url() -> str:
    """Resolve the synchronous SQLite URL of the partition named by -x."""
    settings = get_settings()
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    raw = cmd_kwargs.get("partition")
    if not raw:
        raise SystemExit("Pass the target partition: alembic -x partition=<city> ...")

    key = normalize_partition_key(raw)
    if key not in settings.partition_keys():
        raise SystemExit(f"Unknown partition {raw!r}; configured: {settings.partition_keys()}")
    return settings.partition_database_url(key).replace("+aiosqlite", "")


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=_partition_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = create_engine(_partition_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
