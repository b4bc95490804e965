"""Unit tests for sync metrics, migration counters and structlog setup."""

from __future__ import annotations

import pytest
import structlog
from prometheus_client import REGISTRY

from src.crm_mirror.api.middleware.logging import configure_structlog
from src.crm_mirror.core.monitoring import record_migration, track_sync


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.mark.asyncio
async def test_track_sync_success():
    labels = {"partition": "obs-success", "mode": "incremental"}
    before = _sample("catalog_sync_runs_total", status="success", **labels)

    async with track_sync("obs-success", "incremental") as tracker:
        tracker["rows"] = {"product": 3, "link": 0}

    assert _sample("catalog_sync_runs_total", status="success", **labels) == before + 1
    assert _sample(
        "catalog_sync_rows_written_total", partition="obs-success", entity="product"
    ) >= 3
    assert _sample(
        "catalog_sync_rows_written_total", partition="obs-success", entity="link"
    ) == 0


@pytest.mark.asyncio
async def test_track_sync_error_reraises():
    labels = {"partition": "obs-error", "mode": "full"}
    before = _sample("catalog_sync_runs_total", status="error", **labels)

    with pytest.raises(RuntimeError):
        async with track_sync("obs-error", "full"):
            raise RuntimeError("boom")

    assert _sample("catalog_sync_runs_total", status="error", **labels) == before + 1


def test_record_migration():
    before = _sample("catalog_product_migrations_total", outcome="moved")
    record_migration("moved")
    assert _sample("catalog_product_migrations_total", outcome="moved") == before + 1


def test_configure_structlog_merges_contextvars():
    configure_structlog()
    with structlog.contextvars.bound_contextvars(partition="астана"):
        assert structlog.contextvars.get_contextvars()["partition"] == "астана"
    assert "partition" not in structlog.contextvars.get_contextvars()
