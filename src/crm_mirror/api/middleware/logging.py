"""Structlog setup and per-request access logging.

Every request binds ``request_id`` into the structlog context, so sync,
migration and CRM client events emitted while serving it carry the same id.
The id is taken from an incoming X-Request-ID header (CRM webhooks and the
booking UI may set one) or generated, and echoed on the response.

Health checks and /metrics scrapes are logged at debug level only.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.crm_mirror.config import Environment, Settings, get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def configure_structlog(settings: Settings | None = None) -> None:
    """Route structlog through stdlib logging at LOG_LEVEL.

    Production renders one JSON object per line (Cyrillic kept readable);
    other environments use the colored console renderer.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=level)

    renderer = (
        structlog.processors.JSONRenderer(ensure_ascii=False)
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs one ``request_completed`` event per request with timing and city."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        started = time.monotonic()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=_elapsed_ms(started),
            )
            raise

        response.headers[REQUEST_ID_HEADER] = request_id

        if request.url.path in QUIET_PATHS:
            log = logger.debug
        elif response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        else:
            log = logger.info

        # path_params are filled in by the router during call_next
        log(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=_elapsed_ms(started),
            partition=request.path_params.get("city"),
        )
        return response
