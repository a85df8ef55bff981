"""Admin batch endpoints.

GET  /v1/admin/batches/statistics                  -- totals, optionally per device
GET  /v1/admin/batches/dashboard                   -- recent / pending / failed / active
POST /v1/admin/batches/process-pending             -- close idle batches, queue submissions
GET  /v1/admin/batches/device/{device_id}/history  -- paginated batch history
POST /v1/admin/batches/device/{device_id}/close    -- force-close the active batch
GET  /v1/admin/batches/device/{device_id}/config   -- effective per-device overrides
PUT  /v1/admin/batches/device/{device_id}/config   -- update per-device overrides
GET  /v1/admin/batches/device/{device_id}/audit    -- per-reading validation audit
GET  /v1/admin/batches/{batch_id}                  -- batch detail incl. submission state
GET  /v1/admin/batches/{batch_id}/validation       -- validation report
POST /v1/admin/batches/{batch_id}/retry            -- manual submission retry
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from mileage_guard.admin import AdminService
from mileage_guard.api.deps import get_admin
from mileage_guard.api.v1.schemas import (
    DeviceConfigUpdate,
    ForceCloseResponse,
    ProcessPendingResponse,
    RetryResponse,
)
from mileage_guard.schemas import BatchStatus, DeviceBatchConfig
from mileage_guard.submission_manager import SubmissionOutcome

logger = structlog.get_logger(__name__)

router = APIRouter()

_RETRY_CONFLICTS = (SubmissionOutcome.SKIPPED_IN_FLIGHT, SubmissionOutcome.NOT_ELIGIBLE)


@router.get("/statistics", summary="Batch statistics")
async def get_statistics(
    device_id: Optional[str] = Query(default=None),
    admin: AdminService = Depends(get_admin),
) -> Dict[str, Any]:
    return admin.statistics(device_id)


@router.get("/dashboard", summary="Operator dashboard")
async def get_dashboard(
    limit: int = Query(default=10, ge=1, le=100),
    admin: AdminService = Depends(get_admin),
) -> Dict[str, Any]:
    return admin.dashboard(limit=limit)


@router.post(
    "/process-pending",
    response_model=ProcessPendingResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Close idle batches and queue pending submissions",
)
async def process_pending(
    admin: AdminService = Depends(get_admin),
) -> ProcessPendingResponse:
    report = await admin.process_pending()
    return ProcessPendingResponse.from_report(report)


@router.get("/device/{device_id}/history", summary="Device batch history")
async def get_device_history(
    device_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    batch_status: Optional[BatchStatus] = Query(default=None, alias="status"),
    admin: AdminService = Depends(get_admin),
) -> Dict[str, Any]:
    return admin.device_history(device_id, page=page, limit=limit, status=batch_status)


@router.post(
    "/device/{device_id}/close",
    response_model=ForceCloseResponse,
    summary="Force-close the device's active batch",
)
async def force_close(
    device_id: str,
    admin: AdminService = Depends(get_admin),
) -> ForceCloseResponse:
    closed = await admin.force_close(device_id)
    if closed is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Device {device_id} has no active batch",
        )
    return ForceCloseResponse(
        device_id=device_id,
        closed=True,
        batch=closed.model_dump(mode="json"),
    )


@router.get(
    "/device/{device_id}/config",
    response_model=DeviceBatchConfig,
    summary="Per-device batch configuration",
)
async def get_device_config(
    device_id: str,
    admin: AdminService = Depends(get_admin),
) -> DeviceBatchConfig:
    return admin.get_device_config(device_id)


@router.put(
    "/device/{device_id}/config",
    response_model=DeviceBatchConfig,
    summary="Update per-device batch configuration",
)
async def update_device_config(
    device_id: str,
    update: DeviceConfigUpdate,
    admin: AdminService = Depends(get_admin),
) -> DeviceBatchConfig:
    return admin.update_device_config(device_id, update.model_dump(exclude_unset=True))


@router.get("/device/{device_id}/audit", summary="Per-reading validation audit")
async def get_device_audit(
    device_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    admin: AdminService = Depends(get_admin),
) -> List[Dict[str, Any]]:
    return admin.reading_audit(device_id, limit=limit)


@router.get("/{batch_id}", summary="Batch detail")
async def get_batch(
    batch_id: str,
    admin: AdminService = Depends(get_admin),
) -> Dict[str, Any]:
    return admin.batch_details(batch_id)


@router.get("/{batch_id}/validation", summary="Batch validation report")
async def get_validation_report(
    batch_id: str,
    admin: AdminService = Depends(get_admin),
) -> Dict[str, Any]:
    return admin.validation_report(batch_id)


@router.post(
    "/{batch_id}/retry",
    response_model=RetryResponse,
    summary="Manually retry a batch submission",
)
async def retry_batch(
    batch_id: str,
    admin: AdminService = Depends(get_admin),
) -> RetryResponse:
    outcome = await admin.retry_submission(batch_id)
    if outcome in _RETRY_CONFLICTS:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Batch {batch_id} cannot be retried now ({outcome.value})",
        )
    return RetryResponse(
        batch_id=batch_id,
        outcome=outcome.value,
        submission=admin.batch_details(batch_id)["submission"],
    )
