"""Builders shared by the test modules."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from mileage_guard.config import PipelineSettings
from mileage_guard.schemas import (
    BatchStatus,
    BatchSummary,
    DeviceReading,
    ReadingRef,
    TripBatch,
    ValidationResult,
    ValidationStatus,
)

T0 = datetime(2025, 3, 1, 8, 0, 0, tzinfo=timezone.utc)


def make_settings(**overrides) -> PipelineSettings:
    defaults = dict(
        database_url="memory",
        ledger_base_url="http://test-ledger:8899",
        ledger_dry_run=True,
        inactivity_window_seconds=1800,
        submission_base_delay_seconds=1.0,
        submission_max_delay_seconds=60.0,
        submission_max_attempts=3,
        submission_timeout_seconds=5.0,
        submission_workers=2,
        sweep_interval_seconds=0.01,
    )
    defaults.update(overrides)
    return PipelineSettings(**defaults)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def at(seconds: float) -> datetime:
    """``T0`` plus *seconds*."""
    return T0 + timedelta(seconds=seconds)


def payload(
    mileage: Any,
    seconds: float = 0,
    *,
    device_id: str = "ESP32-001",
    vin: Optional[str] = "1HGCM82633A004352",
    status: str = "active",
    **extra: Any,
) -> Dict[str, Any]:
    """Raw device payload with an epoch-millisecond timestamp."""
    body: Dict[str, Any] = {
        "deviceID": device_id,
        "status": status,
        "timestamp": int(at(seconds).timestamp() * 1000),
        "mileage": mileage,
        "dataSource": "OBD",
    }
    if vin is not None:
        body["vin"] = vin
    body.update(extra)
    return body


def reading(
    mileage: int,
    seconds: float = 0,
    *,
    device_id: str = "ESP32-001",
    received_seconds: Optional[float] = None,
    **fields: Any,
) -> DeviceReading:
    return DeviceReading(
        device_id=device_id,
        mileage=mileage,
        timestamp=at(seconds),
        received_at=at(seconds if received_seconds is None else received_seconds),
        status="active",
        **fields,
    )


def result(
    mileage: int,
    status: ValidationStatus = ValidationStatus.VALID,
    *,
    previous: Optional[int] = None,
    severity: float = 0.0,
) -> ValidationResult:
    previous = mileage if previous is None else previous
    return ValidationResult(
        reported_mileage=mileage,
        previous_mileage=previous,
        delta=mileage - previous,
        flagged=status != ValidationStatus.VALID,
        status=status,
        reason="test",
        severity=severity,
    )


def ref(
    mileage: int,
    seconds: float,
    status: ValidationStatus = ValidationStatus.VALID,
    **fields: Any,
) -> ReadingRef:
    return ReadingRef(
        reading_id=f"r-{mileage}-{int(seconds)}",
        timestamp=at(seconds),
        mileage=mileage,
        validation_status=status,
        **fields,
    )


def closed_batch(
    refs: List[ReadingRef],
    *,
    batch_id: str = "ESP32-001_1_abc",
    device_id: str = "ESP32-001",
) -> TripBatch:
    """A closed batch whose summary is derived from *refs* (already sorted)."""
    first, last = refs[0], refs[-1]
    return TripBatch(
        batch_id=batch_id,
        device_id=device_id,
        status=BatchStatus.CLOSED,
        start_time=first.timestamp,
        end_time=last.timestamp,
        last_received_at=last.timestamp,
        readings=refs,
        summary=BatchSummary(
            start_mileage=first.mileage,
            end_mileage=last.mileage,
            mileage_delta=last.mileage - first.mileage,
            reading_count=len(refs),
        ),
    )
