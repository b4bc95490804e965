#!/usr/bin/env python3
"""Per-partition backup script using SQLite ``VACUUM INTO``.

Usage:
    python scripts/backup.py --partition астана --output ./backups/
    python scripts/backup.py --all --output ./backups/

Writes a consistent, compacted copy of each partition's database file while
the service keeps running, plus a JSON manifest describing the run.

Reads DATA_DIR and PARTITIONS from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime, timezone

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402
from sqlalchemy import text  # noqa: E402

from src.crm_mirror.config import get_settings, normalize_partition_key  # noqa: E402
from src.crm_mirror.core.database import PartitionStore, StoreRegistry  # noqa: E402

logger = structlog.get_logger(__name__)


async def backup_partition(store: PartitionStore, output_dir: str, timestamp: str) -> dict | None:
    """Copy one partition's database into ``output_dir``."""
    output_file = os.path.abspath(os.path.join(output_dir, f"{store.key}_{timestamp}.db"))
    if os.path.exists(output_file):
        logger.error("backup.target_exists", partition=store.key, file=output_file)
        return None

    try:
        async with store.engine.connect() as conn:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            await conn.execute(text("VACUUM INTO :target"), {"target": output_file})
    finally:
        await store.dispose()

    if not os.path.exists(output_file):
        return None
    logger.info("backup.partition_completed", partition=store.key, output=output_file)
    return {
        "partition": store.key,
        "file": output_file,
        "size_bytes": os.path.getsize(output_file),
        "timestamp": timestamp,
    }


async def main_async(args: argparse.Namespace) -> None:
    settings = get_settings()
    registry = StoreRegistry.from_settings(settings)

    os.makedirs(args.output, exist_ok=True)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")

    if args.all:
        stores = list(registry)
        logger.info("backup.started", partitions=registry.keys())
    else:
        store = registry.get(normalize_partition_key(args.partition))
        if store is None:
            print(f"Error: unknown partition {args.partition!r}; configured: {registry.keys()}")
            sys.exit(1)
        stores = [store]
        logger.info("backup.started", partitions=[store.key])

    results = []
    for store in stores:
        result = await backup_partition(store, args.output, timestamp)
        if result:
            results.append(result)

    if results:
        manifest_file = os.path.join(args.output, f"manifest_{timestamp}.json")
        manifest = {
            "timestamp": timestamp,
            "data_dir": os.path.abspath(settings.DATA_DIR),
            "partitions_backed_up": len(results),
            "total_size_bytes": sum(r["size_bytes"] for r in results),
            "backups": results,
        }
        with open(manifest_file, "w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2, ensure_ascii=False)
        logger.info("backup.manifest_written", file=manifest_file)

        print(f"\nBackup complete: {len(results)} partition(s)")
        for r in results:
            print(f"  {r['partition']:20s} -> {r['file']} ({r['size_bytes']:,} bytes)")
    else:
        print("No backups created.")
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(description="Backup partition stores")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--partition", help="Partition (city) to backup")
    group.add_argument("--all", action="store_true", help="Backup all partitions")
    parser.add_argument("--output", required=True, help="Output directory for backup files")
    args = parser.parse_args()

    asyncio.run(main_async(args))


if __name__ == "__main__":
    main()
