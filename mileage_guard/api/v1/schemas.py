"""Request/response models for the v1 HTTP API.

Device-facing fields keep the camelCase names deployed firmware already
parses (``validationStatus``, ``batchId``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from mileage_guard.pipeline import IngestionResult, SweepReport
from mileage_guard.schemas import BlockchainSubmission


# ---------------------------------------------------------------------------
# Device ingestion
# ---------------------------------------------------------------------------


class IngestResponse(BaseModel):
    """Returned for every accepted, flagged or rejected reading."""

    model_config = ConfigDict(populate_by_name=True)

    status: Literal["accepted", "flagged", "rejected"]
    reading_id: str = Field(..., alias="readingId")
    device_id: str = Field(..., alias="deviceId")
    batch_id: Optional[str] = Field(default=None, alias="batchId")
    batch_status: Optional[str] = Field(default=None, alias="batchStatus")
    batch_closed: bool = Field(default=False, alias="batchClosed")
    validation_status: str = Field(..., alias="validationStatus")
    flagged: bool
    reason: str
    previous_mileage: int = Field(..., alias="previousMileage")
    reported_mileage: int = Field(..., alias="reportedMileage")
    delta: int
    out_of_order: bool = Field(default=False, alias="outOfOrder")

    @classmethod
    def from_result(cls, ingested: IngestionResult) -> "IngestResponse":
        batch = ingested.batch
        return cls(
            status=ingested.outcome,
            reading_id=ingested.reading.reading_id,
            device_id=ingested.reading.device_id,
            batch_id=batch.batch_id if batch else None,
            batch_status=batch.status.value if batch else None,
            batch_closed=ingested.closed_batch is not None,
            validation_status=ingested.result.status.value,
            flagged=ingested.result.flagged,
            reason=ingested.result.reason,
            previous_mileage=ingested.result.previous_mileage,
            reported_mileage=ingested.result.reported_mileage,
            delta=ingested.result.delta,
            out_of_order=ingested.out_of_order,
        )


class ErrorResponse(BaseModel):
    error: str
    message: str
    fields: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class DeviceConfigUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    inactivity_window_seconds: Optional[int] = Field(default=None, gt=0)
    max_plausible_speed_kmh: Optional[float] = Field(default=None, gt=0)
    suspicious_rate_multiplier: Optional[float] = Field(default=None, gt=1)
    validity_threshold: Optional[float] = Field(default=None, gt=0, le=100)
    enabled: Optional[bool] = None


class ProcessPendingResponse(BaseModel):
    message: str
    closed_batches: int
    retries_queued: int
    pending_queued: int

    @classmethod
    def from_report(cls, report: SweepReport) -> "ProcessPendingResponse":
        return cls(
            message="Batch processing triggered",
            closed_batches=report.closed_batches,
            retries_queued=report.retries_queued,
            pending_queued=report.pending_queued,
        )


class ForceCloseResponse(BaseModel):
    device_id: str
    closed: bool
    batch: Optional[Dict[str, Any]] = None


class RetryResponse(BaseModel):
    batch_id: str
    outcome: str
    submission: Optional[BlockchainSubmission] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime
    services: Dict[str, str]
