"""Group a device's readings into trip batches.

Per device the lifecycle is ``no active batch -> active -> closed``.  The
first reading opens a batch; later readings are inserted at their
``(timestamp, mileage)`` position.  A batch closes on an end-of-trip
signal, on inactivity, or when an operator forces it; closing scores it
and moves it to ``validated`` or ``rejected``.  The next reading for that
device opens a new batch.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import structlog

from mileage_guard.config import PipelineSettings, Thresholds
from mileage_guard.errors import ConcurrencyConflictError
from mileage_guard.fraud_scorer import FraudScorer
from mileage_guard.locks import retry_on_conflict
from mileage_guard.schemas import (
    BatchStatus,
    BlockchainSubmission,
    CloseReason,
    DeviceReading,
    ReadingRef,
    SubmissionPayload,
    TripBatch,
    ValidationResult,
    utcnow,
)
from mileage_guard.store.base import BatchStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BatchUpdate:
    """Result of adding one reading to a device's active batch."""

    batch: TripBatch
    created: bool
    out_of_order: bool


class TripBatcher:
    """Owns batch creation, reading insertion and batch closing."""

    def __init__(
        self,
        store: BatchStore,
        settings: PipelineSettings,
        scorer: Optional[FraudScorer] = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._scorer = scorer or FraudScorer()

    def thresholds(self, device_id: str) -> Thresholds:
        return self._settings.thresholds_for(self._store.get_device_config(device_id))

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    def add_reading(
        self,
        reading: DeviceReading,
        result: ValidationResult,
        *,
        vehicle_id: Optional[str] = None,
    ) -> BatchUpdate:
        """Append *reading* to the device's active batch, opening one if needed."""

        def _attempt() -> BatchUpdate:
            active = self._store.get_active_batch(reading.device_id)
            if active is None:
                batch = TripBatch.start(reading, result, vehicle_id=vehicle_id)
                stored = self._store.create_batch(batch)
                logger.info(
                    "batch_opened",
                    batch_id=stored.batch_id,
                    device_id=stored.device_id,
                    start_mileage=stored.summary.start_mileage,
                )
                return BatchUpdate(batch=stored, created=True, out_of_order=False)

            out_of_order = _insert_reading(active, reading, result)
            if vehicle_id and not active.vehicle_id:
                active.vehicle_id = vehicle_id
            if reading.vin and not active.vin:
                active.vin = reading.vin
            active.last_received_at = max(active.last_received_at, reading.received_at)
            stored = self._store.save_batch(active)
            return BatchUpdate(batch=stored, created=False, out_of_order=out_of_order)

        update = retry_on_conflict(_attempt, what="batch_append")
        if update.out_of_order:
            logger.warning(
                "out_of_order_reading",
                batch_id=update.batch.batch_id,
                device_id=reading.device_id,
                reading_id=reading.reading_id,
                timestamp=reading.timestamp.isoformat(),
            )
        return update

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    def close_batch(
        self,
        device_id: str,
        reason: CloseReason,
    ) -> Optional[TripBatch]:
        """Close, score and persist the device's active batch.

        Returns the closed batch, or ``None`` if the device had none.
        Validated batches get a pending :class:`BlockchainSubmission`.
        """
        thresholds = self.thresholds(device_id)

        def _attempt() -> Optional[TripBatch]:
            batch = self._store.get_active_batch(device_id)
            if batch is None:
                return None
            batch.end_time = batch.last_reading.timestamp
            batch.close_reason = reason
            batch.transition_to(BatchStatus.CLOSED)
            batch.validation = self._scorer.score(batch, thresholds)
            batch.transition_to(
                BatchStatus.VALIDATED if batch.validation.is_valid else BatchStatus.REJECTED
            )
            return self._store.save_batch(batch)

        closed = retry_on_conflict(_attempt, what="batch_close")
        if closed is None:
            return None

        logger.info(
            "batch_closed",
            batch_id=closed.batch_id,
            device_id=device_id,
            reason=reason.value,
            status=closed.status.value,
            fraud_score=closed.validation.fraud_score,
            readings=closed.summary.reading_count,
            mileage_delta=closed.summary.mileage_delta,
        )
        if closed.status == BatchStatus.VALIDATED:
            self._open_submission(closed)
        return closed

    def find_stale(self, now: Optional[datetime] = None) -> List[TripBatch]:
        """Active batches with no reading received within their inactivity window."""
        now = now or utcnow()
        return [
            batch
            for batch in self._store.list_batches(status=BatchStatus.ACTIVE)
            if self.is_stale(batch, now)
        ]

    def is_stale(self, batch: TripBatch, now: datetime) -> bool:
        window = self.thresholds(batch.device_id).inactivity_window_seconds
        return (
            batch.status == BatchStatus.ACTIVE
            and batch.last_received_at + timedelta(seconds=window) <= now
        )

    def is_engine_off(self, batch: TripBatch) -> bool:
        """True when the batch ends with enough consecutive rpm 0, speed 0 readings."""
        samples = self.thresholds(batch.device_id).engine_off_samples
        if samples <= 0 or len(batch.readings) < samples:
            return False
        return all(r.rpm == 0 and r.speed == 0 for r in batch.readings[-samples:])

    # -- internal -----------------------------------------------------------

    def _open_submission(self, batch: TripBatch) -> None:
        if batch.summary.reading_count < self._settings.min_readings_for_submission:
            logger.info(
                "submission_skipped_short_batch",
                batch_id=batch.batch_id,
                readings=batch.summary.reading_count,
            )
            return
        if self._store.get_submission(batch.batch_id) is not None:
            return
        try:
            self._store.save_submission(
                BlockchainSubmission(
                    batch_id=batch.batch_id,
                    payload_digest=SubmissionPayload.from_batch(batch).digest(),
                )
            )
        except ConcurrencyConflictError:
            logger.debug("submission_already_opened", batch_id=batch.batch_id)


def _insert_reading(
    batch: TripBatch, reading: DeviceReading, result: ValidationResult
) -> bool:
    """Insert at the sorted position and refresh the summary.

    Returns ``True`` when the reading sorts before the current tail.
    """
    ref = ReadingRef.from_reading(reading, result)
    out_of_order = ref.sort_key < batch.last_reading.sort_key
    if out_of_order:
        ref.out_of_order = True
        keys = [r.sort_key for r in batch.readings]
        batch.readings.insert(bisect.bisect_right(keys, ref.sort_key), ref)
    else:
        batch.readings.append(ref)

    summary = batch.summary
    first, last = batch.readings[0], batch.readings[-1]
    batch.start_time = first.timestamp
    summary.start_mileage = first.mileage
    summary.end_mileage = last.mileage
    summary.mileage_delta = last.mileage - first.mileage
    summary.reading_count += 1
    if reading.speed is not None:
        n = summary.speed_sample_count
        previous_avg = summary.avg_speed or 0.0
        summary.avg_speed = round((previous_avg * n + reading.speed) / (n + 1), 3)
        summary.max_speed = (
            reading.speed
            if summary.max_speed is None
            else max(summary.max_speed, reading.speed)
        )
        summary.speed_sample_count = n + 1
    return out_of_order
