"""Device ingestion endpoint.

POST /v1/device/status  -- one heartbeat/odometer reading from an OBD device

200 for accepted and flagged readings, 422 (same body) when the reading
is a rollback or an impossible jump, 400 when the payload is malformed.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from mileage_guard.api.deps import get_service
from mileage_guard.api.v1.schemas import ErrorResponse, IngestResponse
from mileage_guard.errors import InvalidPayloadError
from mileage_guard.pipeline import IngestionService

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "/status",
    response_model=IngestResponse,
    status_code=status.HTTP_200_OK,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed payload"},
        422: {"model": IngestResponse, "description": "Reading rejected"},
    },
    summary="Ingest one device reading",
)
async def device_status(
    request: Request,
    service: IngestionService = Depends(get_service),
):
    try:
        raw = await request.json()
    except ValueError as exc:
        raise InvalidPayloadError(["body (not valid JSON)"]) from exc

    ingested = await service.ingest(raw)
    body = IngestResponse.from_result(ingested)

    if ingested.result.rejected:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json", by_alias=True),
        )
    return body
