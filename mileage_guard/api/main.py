"""FastAPI application for mileage ingestion and batch administration.

Run with ``python -m mileage_guard serve`` or any ASGI server pointed at
``mileage_guard.api.main:app``.
"""

from __future__ import annotations

from typing import Dict

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from mileage_guard import __version__
from mileage_guard.api.deps import get_runtime
from mileage_guard.api.v1.endpoints import batches, telemetry
from mileage_guard.api.v1.schemas import HealthResponse
from mileage_guard.errors import (
    BatchNotFoundError,
    ConcurrencyConflictError,
    InvalidPayloadError,
    InvalidTransitionError,
    MileageGuardError,
)
from mileage_guard.schemas import utcnow

logger = structlog.get_logger(__name__)

# Error kind -> HTTP status.  Anything unlisted is a 500.
_STATUS_FOR_ERROR = {
    InvalidPayloadError: status.HTTP_400_BAD_REQUEST,
    BatchNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    ConcurrencyConflictError: status.HTTP_409_CONFLICT,
}

app = FastAPI(
    title="mileage_guard",
    version=__version__,
    description="Odometer ingestion, rollback detection and ledger anchoring",
    docs_url="/docs",
    redoc_url="/redoc",
)


@app.exception_handler(MileageGuardError)
async def mileage_guard_error_handler(
    request: Request, exc: MileageGuardError
) -> JSONResponse:
    status_code = _STATUS_FOR_ERROR.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    body = {"error": exc.kind.value, "message": exc.message}
    if isinstance(exc, InvalidPayloadError):
        body["fields"] = exc.fields
    log = logger.warning if status_code < 500 else logger.error
    log("request_failed", path=request.url.path, error=exc.kind.value, status=status_code)
    return JSONResponse(status_code=status_code, content=body)


@app.on_event("startup")
async def startup_event() -> None:
    runtime = get_runtime()
    logger.info(
        "api_starting",
        version=__version__,
        database=runtime.settings.database_url.split("@")[-1],
        ledger=runtime.settings.ledger_base_url,
        dry_run=runtime.settings.ledger_dry_run,
    )
    await runtime.start()


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("api_stopping")
    await get_runtime().stop()


@app.get("/", tags=["Root"])
async def root() -> Dict[str, str]:
    return {
        "message": "mileage_guard ingestion API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    status_code=status.HTTP_200_OK,
)
async def health_check() -> HealthResponse:
    runtime = get_runtime()
    services = {
        "api": "healthy",
        "store": type(runtime.store).__name__,
        "submission_workers": "running" if runtime.submissions.running else "stopped",
        "sweeper": "running" if runtime.sweeper.running else "stopped",
    }
    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=utcnow(),
        services=services,
    )


app.include_router(telemetry.router, prefix="/v1/device", tags=["Device"])
app.include_router(batches.router, prefix="/v1/admin/batches", tags=["Admin"])
