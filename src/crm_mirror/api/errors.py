"""Response envelope and exception handlers for the HTTP layer.

Every response carries ``status`` (bool) and ``status_msg``
(``"success"`` | ``"error"``). Domain exceptions map to HTTP statuses:

- InvalidPartitionError -> 400
- CRMError (and a SyncError caused by one) -> 502
- SyncTimeoutError -> 504
- StoreError, other SyncError -> 500 with a generic message
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.crm_mirror.catalog.reconciler import SyncError
from src.crm_mirror.core.database import StoreError
from src.crm_mirror.core.partitions import InvalidPartitionError
from src.crm_mirror.crm.adapter import CRMError

logger = structlog.get_logger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong"


class SyncTimeoutError(Exception):
    """A sync request exceeded SYNC_TIMEOUT_SECONDS."""

    def __init__(self, partition: str, timeout: int) -> None:
        self.partition = partition
        self.timeout = timeout
        super().__init__(f"Sync of '{partition}' exceeded {timeout}s")


def success(**data: Any) -> dict[str, Any]:
    return {"status": True, "status_msg": "success", **data}


def unsuccessful(message: str, **data: Any) -> dict[str, Any]:
    """Outcome where the request was valid but the operation did not happen."""
    return {"status": False, "status_msg": "error", "message": message, **data}


def error_response(status_code: int, message: str, **data: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=unsuccessful(message, **data))


# ── Exception Handlers ──────────────────────────────────────────────────────


async def _invalid_partition(request: Request, exc: InvalidPartitionError) -> JSONResponse:
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        f"Unknown partition: {exc.raw_key}",
        partitions=exc.known,
    )


async def _crm_error(request: Request, exc: CRMError) -> JSONResponse:
    logger.error("api.crm_error", path=request.url.path, error=str(exc))
    return error_response(status.HTTP_502_BAD_GATEWAY, "CRM request failed")


async def _sync_error(request: Request, exc: SyncError) -> JSONResponse:
    logger.error(
        "api.sync_error",
        path=request.url.path,
        partition=exc.partition,
        stage=exc.stage,
        error=str(exc.cause),
    )
    if isinstance(exc.cause, CRMError):
        return error_response(status.HTTP_502_BAD_GATEWAY, "CRM request failed")
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, GENERIC_ERROR_MESSAGE)


async def _store_error(request: Request, exc: StoreError) -> JSONResponse:
    logger.error(
        "api.store_error",
        path=request.url.path,
        partition=exc.partition,
        operation=exc.operation,
    )
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, GENERIC_ERROR_MESSAGE)


async def _sync_timeout(request: Request, exc: SyncTimeoutError) -> JSONResponse:
    logger.error("api.sync_timeout", partition=exc.partition, timeout=exc.timeout)
    return error_response(status.HTTP_504_GATEWAY_TIMEOUT, str(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InvalidPartitionError, _invalid_partition)  # type: ignore[arg-type]
    app.add_exception_handler(CRMError, _crm_error)  # type: ignore[arg-type]
    app.add_exception_handler(SyncError, _sync_error)  # type: ignore[arg-type]
    app.add_exception_handler(StoreError, _store_error)  # type: ignore[arg-type]
    app.add_exception_handler(SyncTimeoutError, _sync_timeout)  # type: ignore[arg-type]
