"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events that build the partition store registry and the CRM client,
exception handlers for the response envelope, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.crm_mirror.api.errors import register_exception_handlers
from src.crm_mirror.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.crm_mirror.api.v1.router import router as v1_router
from src.crm_mirror.catalog.service import MirrorService
from src.crm_mirror.config import get_settings
from src.crm_mirror.core.database import StoreRegistry
from src.crm_mirror.core.monitoring import (
    MetricsMiddleware,
    get_metrics_response,
    init_sentry,
    partition_stores,
)
from src.crm_mirror.crm.bitrix import Bitrix24Client


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build stores and CRM client on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog(settings)

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    registry = StoreRegistry.from_settings(settings)
    await registry.init_all()
    partition_stores.set(len(registry))

    if not settings.CRM_WEBHOOK_URL:
        log.warning("startup.crm_webhook_missing")
    crm = Bitrix24Client(settings.CRM_WEBHOOK_URL, settings=settings)

    app.state.store_registry = registry
    app.state.crm_client = crm
    app.state.mirror_service = MirrorService(registry, crm, settings=settings)
    log.info("startup.complete", partitions=registry.keys())

    yield

    await crm.aclose()
    await registry.dispose_all()
    log.info("shutdown.complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Mirror API",
        version="0.1.0",
        description="Per-city cache of CRM products, deals and contacts",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    register_exception_handlers(app)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
