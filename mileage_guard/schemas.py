"""Pydantic v2 models for readings, trip batches and ledger submissions.

Every status field is a closed enum.  Batch status changes go through
:meth:`TripBatch.transition_to`, which checks the transition table below.
"""

from __future__ import annotations

import enum
import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from mileage_guard.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class DataSource(str, enum.Enum):
    OBD = "obd"
    FALLBACK = "fallback"
    MANUAL = "manual"
    UNKNOWN = "unknown"


class ValidationStatus(str, enum.Enum):
    VALID = "VALID"
    SUSPICIOUS = "SUSPICIOUS"
    ROLLBACK_DETECTED = "ROLLBACK_DETECTED"
    IMPOSSIBLE_DISTANCE = "IMPOSSIBLE_DISTANCE"
    PENDING = "PENDING"

    @property
    def rejects(self) -> bool:
        """``True`` for outcomes reported to the caller as a rejection."""
        return self in (
            ValidationStatus.ROLLBACK_DETECTED,
            ValidationStatus.IMPOSSIBLE_DISTANCE,
        )


class BatchStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    VALIDATED = "validated"
    REJECTED = "rejected"
    SUBMITTED = "submitted"
    SUBMISSION_FAILED = "submission_failed"


class CloseReason(str, enum.Enum):
    INACTIVITY = "inactivity"
    TRIP_END = "trip_end"
    ENGINE_OFF = "engine_off"
    FORCE_CLOSE = "force_close"


_BATCH_TRANSITIONS: Dict[BatchStatus, FrozenSet[BatchStatus]] = {
    BatchStatus.ACTIVE: frozenset({BatchStatus.CLOSED}),
    BatchStatus.CLOSED: frozenset({BatchStatus.VALIDATED, BatchStatus.REJECTED}),
    BatchStatus.VALIDATED: frozenset(
        {BatchStatus.SUBMITTED, BatchStatus.SUBMISSION_FAILED}
    ),
    BatchStatus.REJECTED: frozenset(),
    BatchStatus.SUBMITTED: frozenset(),
    BatchStatus.SUBMISSION_FAILED: frozenset(
        {BatchStatus.SUBMITTED, BatchStatus.SUBMISSION_FAILED}
    ),
}


def check_batch_transition(current: BatchStatus, target: BatchStatus) -> None:
    """Raise :class:`InvalidTransitionError` unless *current* → *target* is allowed."""
    if target not in _BATCH_TRANSITIONS[current]:
        raise InvalidTransitionError("TripBatch", current.value, target.value)


# ---------------------------------------------------------------------------
# Readings and validation results
# ---------------------------------------------------------------------------


class DeviceReading(BaseModel):
    """One telemetry sample, validated once at the ingestion boundary."""

    model_config = {"frozen": True}

    reading_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    device_id: str = Field(..., min_length=1)
    vin: Optional[str] = None
    mileage: int = Field(..., ge=0, description="Odometer value in km")
    timestamp: datetime = Field(..., description="Device-reported time (untrusted)")
    received_at: datetime = Field(default_factory=utcnow)
    status: str = Field(..., min_length=1, description="Device heartbeat status")

    speed: Optional[float] = None
    rpm: Optional[float] = None
    engine_temp: Optional[float] = None
    fuel_level: Optional[float] = None
    battery_voltage: Optional[float] = None
    data_quality: Optional[float] = None
    data_source: DataSource = DataSource.UNKNOWN

    trip_end: bool = False
    extras: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp", "received_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class ValidationResult(BaseModel):
    """Outcome of comparing one reading against the trusted history."""

    model_config = {"frozen": True}

    reported_mileage: int
    previous_mileage: int
    delta: int
    flagged: bool
    status: ValidationStatus
    reason: str
    severity: float = Field(default=0.0, ge=0.0, le=1.0)
    elapsed_seconds: Optional[float] = None

    @property
    def rejected(self) -> bool:
        return self.status.rejects


class ReadingAudit(BaseModel):
    """Per-reading audit trail entry."""

    reading_id: str
    device_id: str
    vehicle_key: str
    batch_id: Optional[str] = None
    result: ValidationResult
    recorded_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Trip batches
# ---------------------------------------------------------------------------


class ReadingRef(BaseModel):
    """A batch's reference to one of its readings plus the fields it scores on."""

    reading_id: str
    timestamp: datetime
    mileage: int
    speed: Optional[float] = None
    rpm: Optional[float] = None
    data_quality: Optional[float] = None
    validation_status: ValidationStatus
    severity: float = 0.0
    out_of_order: bool = False

    @property
    def sort_key(self) -> Tuple[datetime, int]:
        return (self.timestamp, self.mileage)

    @classmethod
    def from_reading(
        cls, reading: DeviceReading, result: ValidationResult
    ) -> "ReadingRef":
        return cls(
            reading_id=reading.reading_id,
            timestamp=reading.timestamp,
            mileage=reading.mileage,
            speed=reading.speed,
            rpm=reading.rpm,
            data_quality=reading.data_quality,
            validation_status=result.status,
            severity=result.severity,
        )


class BatchSummary(BaseModel):
    start_mileage: int
    end_mileage: int
    mileage_delta: int = 0
    reading_count: int = 0
    avg_speed: Optional[float] = None
    max_speed: Optional[float] = None
    speed_sample_count: int = 0


class ValidationRule(BaseModel):
    rule: str
    passed: bool
    message: Optional[str] = None


class BatchValidation(BaseModel):
    is_valid: bool = True
    fraud_score: float = Field(default=0.0, ge=0.0, le=100.0)
    anomalies: List[str] = Field(default_factory=list)
    rules: List[ValidationRule] = Field(default_factory=list)


class TripBatch(BaseModel):
    """A bounded, timestamp-ordered sequence of readings forming one trip.

    A batch only exists once it has a reading: ``readings`` may never be
    empty, so closing an empty batch cannot happen.
    """

    batch_id: str
    device_id: str
    vehicle_id: Optional[str] = None
    vin: Optional[str] = None
    status: BatchStatus = BatchStatus.ACTIVE
    start_time: datetime
    end_time: Optional[datetime] = None
    last_received_at: datetime
    readings: List[ReadingRef] = Field(..., min_length=1)
    summary: BatchSummary
    validation: BatchValidation = Field(default_factory=BatchValidation)
    close_reason: Optional[CloseReason] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @classmethod
    def start(
        cls,
        reading: DeviceReading,
        result: ValidationResult,
        *,
        vehicle_id: Optional[str] = None,
    ) -> "TripBatch":
        """Open a new batch seeded from its first reading."""
        stamp = int(reading.received_at.timestamp() * 1000)
        ref = ReadingRef.from_reading(reading, result)
        has_speed = reading.speed is not None
        return cls(
            batch_id=f"{reading.device_id}_{stamp}_{uuid.uuid4().hex[:9]}",
            device_id=reading.device_id,
            vehicle_id=vehicle_id,
            vin=reading.vin,
            start_time=reading.timestamp,
            last_received_at=reading.received_at,
            readings=[ref],
            summary=BatchSummary(
                start_mileage=reading.mileage,
                end_mileage=reading.mileage,
                reading_count=1,
                avg_speed=reading.speed,
                max_speed=reading.speed,
                speed_sample_count=1 if has_speed else 0,
            ),
        )

    @property
    def last_reading(self) -> ReadingRef:
        return self.readings[-1]

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or self.last_reading.timestamp
        return max(0.0, (end - self.start_time).total_seconds())

    def transition_to(self, target: BatchStatus) -> None:
        check_batch_transition(self.status, target)
        self.status = target
        self.updated_at = utcnow()


# ---------------------------------------------------------------------------
# Ledger submissions
# ---------------------------------------------------------------------------


class SubmissionPayload(BaseModel):
    """Compact, deterministic trip summary sent to the ledger.

    Identical batches always serialise to identical bytes, so the digest
    doubles as the ledger idempotency key.
    """

    model_config = {"frozen": True}

    batch_id: str
    device_id: str
    vehicle_id: Optional[str]
    start_mileage: int
    end_mileage: int
    mileage_delta: int
    start_time: datetime
    end_time: datetime
    fraud_score: float

    @classmethod
    def from_batch(cls, batch: TripBatch) -> "SubmissionPayload":
        return cls(
            batch_id=batch.batch_id,
            device_id=batch.device_id,
            vehicle_id=batch.vehicle_id,
            start_mileage=batch.summary.start_mileage,
            end_mileage=batch.summary.end_mileage,
            mileage_delta=batch.summary.mileage_delta,
            start_time=batch.start_time,
            end_time=batch.end_time or batch.last_reading.timestamp,
            fraud_score=batch.validation.fraud_score,
        )

    def canonical_json(self) -> str:
        return json.dumps(
            self.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        )

    def digest(self) -> str:
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()


class BlockchainSubmission(BaseModel):
    """Delivery state of one validated batch to the ledger."""

    batch_id: str
    submitted: bool = False
    submitted_at: Optional[datetime] = None
    transaction_hash: Optional[str] = None
    submission_attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    terminal: bool = False
    needs_review: bool = False
    manual_retries: int = 0
    payload_digest: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @model_validator(mode="after")
    def _submitted_has_hash(self) -> "BlockchainSubmission":
        if self.submitted and not self.transaction_hash:
            raise ValueError("a submitted batch must carry a transaction_hash")
        return self

    def is_due(self, now: datetime) -> bool:
        """``True`` when the automatic retry sweep should pick this up."""
        if self.submitted or self.terminal:
            return False
        if self.next_retry_at is None:
            return self.submission_attempts == 0
        return self.next_retry_at <= now


# ---------------------------------------------------------------------------
# Trusted history and per-device configuration
# ---------------------------------------------------------------------------


class VehicleHistory(BaseModel):
    """Last trusted mileage for a vehicle plus its recent VALID rates."""

    vehicle_key: str
    trusted_mileage: int = Field(..., ge=0)
    trusted_at: datetime
    recent_rates: List[float] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @field_validator("trusted_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class DeviceBatchConfig(BaseModel):
    """Per-device overrides; ``None`` falls back to the global setting."""

    device_id: str
    inactivity_window_seconds: Optional[int] = Field(default=None, gt=0)
    max_plausible_speed_kmh: Optional[float] = Field(default=None, gt=0)
    suspicious_rate_multiplier: Optional[float] = Field(default=None, gt=1)
    validity_threshold: Optional[float] = Field(default=None, gt=0, le=100)
    enabled: bool = Field(
        default=True,
        description="When False, readings are validated and audited but not batched",
    )
    updated_at: datetime = Field(default_factory=utcnow)
