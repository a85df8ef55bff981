"""Tests for mileage_guard.schemas -- transitions, payload digest, submission state."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from mileage_guard.errors import InvalidTransitionError
from mileage_guard.schemas import (
    BatchStatus,
    BlockchainSubmission,
    DeviceBatchConfig,
    DeviceReading,
    SubmissionPayload,
    TripBatch,
    ValidationStatus,
    check_batch_transition,
)
from mileage_guard.tests.factories import T0, at, closed_batch, reading, ref, result


# ---------------------------------------------------------------------------
# Batch transitions
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "current, target",
    [
        (BatchStatus.ACTIVE, BatchStatus.CLOSED),
        (BatchStatus.CLOSED, BatchStatus.VALIDATED),
        (BatchStatus.CLOSED, BatchStatus.REJECTED),
        (BatchStatus.VALIDATED, BatchStatus.SUBMITTED),
        (BatchStatus.VALIDATED, BatchStatus.SUBMISSION_FAILED),
        (BatchStatus.SUBMISSION_FAILED, BatchStatus.SUBMITTED),
        (BatchStatus.SUBMISSION_FAILED, BatchStatus.SUBMISSION_FAILED),
    ],
)
def test_allowed_transitions(current: BatchStatus, target: BatchStatus) -> None:
    check_batch_transition(current, target)


@pytest.mark.parametrize(
    "current, target",
    [
        (BatchStatus.ACTIVE, BatchStatus.VALIDATED),
        (BatchStatus.CLOSED, BatchStatus.ACTIVE),
        (BatchStatus.REJECTED, BatchStatus.VALIDATED),
        (BatchStatus.REJECTED, BatchStatus.SUBMITTED),
        (BatchStatus.SUBMITTED, BatchStatus.SUBMISSION_FAILED),
        (BatchStatus.VALIDATED, BatchStatus.ACTIVE),
    ],
)
def test_forbidden_transitions(current: BatchStatus, target: BatchStatus) -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        check_batch_transition(current, target)
    assert exc_info.value.current == current.value
    assert exc_info.value.target == target.value


def test_transition_to_updates_status() -> None:
    batch = TripBatch.start(reading(100), result(100))
    batch.transition_to(BatchStatus.CLOSED)
    assert batch.status == BatchStatus.CLOSED
    with pytest.raises(InvalidTransitionError):
        batch.transition_to(BatchStatus.SUBMITTED)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


def test_batch_start_seeds_summary() -> None:
    first = reading(45000, speed=55.0)
    batch = TripBatch.start(first, result(45000), vehicle_id="VIN1")
    assert batch.batch_id.startswith("ESP32-001_")
    assert batch.status == BatchStatus.ACTIVE
    assert batch.vehicle_id == "VIN1"
    assert batch.summary.start_mileage == batch.summary.end_mileage == 45000
    assert batch.summary.reading_count == 1
    assert batch.summary.avg_speed == 55.0
    assert batch.summary.speed_sample_count == 1
    assert batch.last_reading.reading_id == first.reading_id


def test_batch_requires_a_reading() -> None:
    batch = TripBatch.start(reading(1), result(1))
    data = batch.model_dump()
    data["readings"] = []
    with pytest.raises(ValidationError):
        TripBatch.model_validate(data)


def test_naive_timestamp_coerced_to_utc() -> None:
    r = DeviceReading(
        device_id="D", mileage=1, timestamp=datetime(2025, 3, 1, 8), status="active"
    )
    assert r.timestamp == T0


def test_reading_is_frozen() -> None:
    r = reading(1)
    with pytest.raises(ValidationError):
        r.mileage = 2  # type: ignore[misc]


def test_rejects_property() -> None:
    assert ValidationStatus.ROLLBACK_DETECTED.rejects
    assert ValidationStatus.IMPOSSIBLE_DISTANCE.rejects
    assert not ValidationStatus.SUSPICIOUS.rejects
    assert not ValidationStatus.PENDING.rejects


def test_device_config_bounds() -> None:
    with pytest.raises(ValidationError):
        DeviceBatchConfig(device_id="D", suspicious_rate_multiplier=0.5)
    with pytest.raises(ValidationError):
        DeviceBatchConfig(device_id="D", validity_threshold=150)
    assert DeviceBatchConfig(device_id="D").enabled is True


# ---------------------------------------------------------------------------
# Submission payload and state
# ---------------------------------------------------------------------------


def test_payload_digest_is_deterministic() -> None:
    batch = closed_batch([ref(100, 0), ref(160, 3600)])
    first = SubmissionPayload.from_batch(batch)
    second = SubmissionPayload.from_batch(batch.model_copy(deep=True))
    assert first.canonical_json() == second.canonical_json()
    assert first.digest() == second.digest()
    assert len(first.digest()) == 64


def test_payload_digest_changes_with_content() -> None:
    a = SubmissionPayload.from_batch(closed_batch([ref(100, 0), ref(160, 3600)]))
    b = SubmissionPayload.from_batch(closed_batch([ref(100, 0), ref(161, 3600)]))
    assert a.digest() != b.digest()


def test_payload_fields() -> None:
    batch = closed_batch([ref(100, 0), ref(160, 3600)])
    body = SubmissionPayload.from_batch(batch)
    assert body.start_mileage == 100
    assert body.end_mileage == 160
    assert body.mileage_delta == 60
    assert body.end_time == at(3600)


def test_submitted_requires_hash() -> None:
    with pytest.raises(ValidationError, match="transaction_hash"):
        BlockchainSubmission(batch_id="B", submitted=True)
    ok = BlockchainSubmission(batch_id="B", submitted=True, transaction_hash="0xabc")
    assert ok.submitted


def test_is_due() -> None:
    fresh = BlockchainSubmission(batch_id="B")
    assert fresh.is_due(T0)

    waiting = BlockchainSubmission(
        batch_id="B", submission_attempts=1, next_retry_at=T0 + timedelta(seconds=30)
    )
    assert not waiting.is_due(T0)
    assert waiting.is_due(T0 + timedelta(seconds=30))

    assert not waiting.model_copy(update={"terminal": True}).is_due(at(3600))
    done = BlockchainSubmission(batch_id="B", submitted=True, transaction_hash="0x1")
    assert not done.is_due(at(3600))
