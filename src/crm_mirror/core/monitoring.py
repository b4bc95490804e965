"""Prometheus metrics, Sentry integration, and sync run tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- track_sync(): Context manager for sync run metrics
- record_migration(): counter used by the product migration handler
- init_sentry(): Initialize Sentry with partition-aware event tagging
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger(__name__)

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code", "partition"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "partition"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_runs_total = Counter(
    "catalog_sync_runs_total",
    "Total partition sync runs",
    ["partition", "mode", "status"],
)

sync_duration_seconds = Histogram(
    "catalog_sync_duration_seconds",
    "Partition sync duration in seconds",
    ["partition", "mode"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0),
)

sync_rows_written_total = Counter(
    "catalog_sync_rows_written_total",
    "Rows upserted by sync runs",
    ["partition", "entity"],
)

product_migrations_total = Counter(
    "catalog_product_migrations_total",
    "Product partition migrations handled",
    ["outcome"],
)

# ── Platform Metrics ─────────────────────────────────────────────────────────

partition_stores = Gauge(
    "catalog_partition_stores",
    "Number of configured partition stores",
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Labels requests with the route template (not the raw path) and the
    ``city`` path parameter when present. Skips /metrics itself.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path
        partition = str(request.path_params.get("city", "none")).casefold()

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            partition=partition,
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
            partition=partition,
        ).observe(duration)

        return response


# ── Sync Metrics Helpers ─────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync(partition: str, mode: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one sync run.

    Usage:
        async with track_sync("астана", "incremental") as tracker:
            report = await reconciler.sync(store)
            tracker["rows"] = {"product": 3, "deal": 2}

    Records duration, run count (success/error) and rows written per entity.
    """
    tracker: dict[str, Any] = {"rows": {}}
    start_time = time.perf_counter()
    status = "success"

    try:
        yield tracker
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        sync_runs_total.labels(partition=partition, mode=mode, status=status).inc()
        sync_duration_seconds.labels(partition=partition, mode=mode).observe(duration)
        for entity, count in tracker["rows"].items():
            if count:
                sync_rows_written_total.labels(partition=partition, entity=entity).inc(count)


def record_migration(outcome: str) -> None:
    product_migrations_total.labels(outcome=outcome).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.starlette import StarletteIntegration
    except ImportError:
        logger.warning("sentry.not_installed")
        return

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Tag events with the partition bound in structlog context."""
        partition = structlog.contextvars.get_contextvars().get("partition")
        if partition:
            event.setdefault("tags", {})["partition"] = partition
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
