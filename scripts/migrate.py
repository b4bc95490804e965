#!/usr/bin/env python3
"""Run Alembic migrations against partition stores.

Usage:
    python scripts/migrate.py --partition астана
    python scripts/migrate.py --all
    python scripts/migrate.py --all --downgrade base

Every partition is its own SQLite file with its own alembic_version table,
so each one is upgraded independently via ``-x partition=<city>``.

Reads DATA_DIR and PARTITIONS from environment or .env file.
"""

from __future__ import annotations

import argparse
import os
import sys
from argparse import Namespace
from pathlib import Path

# Ensure project root is on sys.path
ROOT = os.path.join(os.path.dirname(__file__), "..")
sys.path.insert(0, ROOT)

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(ROOT, ".env"))

import structlog  # noqa: E402
from alembic import command  # noqa: E402
from alembic.config import Config  # noqa: E402

from src.crm_mirror.config import get_settings, normalize_partition_key  # noqa: E402

logger = structlog.get_logger(__name__)


def _get_alembic_config(partition: str) -> Config:
    """Alembic Config for alembic.ini with ``-x partition=<key>`` set."""
    config = Config(os.path.join(ROOT, "alembic.ini"))
    config.set_main_option("script_location", os.path.join(ROOT, "alembic"))
    config.cmd_opts = Namespace(x=[f"partition={partition}"])
    return config


def migrate_partition(partition: str, direction: str = "upgrade", revision: str = "head") -> None:
    """Run migration for a single partition.

    Args:
        partition: Normalized partition key (city name).
        direction: "upgrade" or "downgrade"
        revision: Target revision (default: "head")
    """
    settings = get_settings()
    Path(settings.DATA_DIR, partition).mkdir(parents=True, exist_ok=True)
    config = _get_alembic_config(partition)

    if direction == "upgrade":
        command.upgrade(config, revision)
    elif direction == "downgrade":
        command.downgrade(config, revision)
    else:
        raise ValueError(f"Invalid direction: {direction}")
    logger.info("migrate.partition_done", partition=partition, direction=direction, revision=revision)


def main() -> None:
    parser = argparse.ArgumentParser(description="Migrate partition stores")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--partition", help="Partition (city) to migrate")
    group.add_argument("--all", action="store_true", help="Migrate all partitions")
    parser.add_argument(
        "--downgrade",
        metavar="REVISION",
        help="Downgrade to REVISION instead of upgrading to head",
    )
    args = parser.parse_args()

    known = get_settings().partition_keys()
    if args.all:
        partitions = known
    else:
        key = normalize_partition_key(args.partition)
        if key not in known:
            print(f"Error: unknown partition {args.partition!r}; configured: {known}")
            sys.exit(1)
        partitions = [key]

    direction = "downgrade" if args.downgrade else "upgrade"
    revision = args.downgrade or "head"
    for partition in partitions:
        migrate_partition(partition, direction, revision)

    print(f"Migrated {len(partitions)} partition(s): {', '.join(partitions)}")


if __name__ == "__main__":
    main()
