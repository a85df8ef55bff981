"""Ingestion orchestration: payload in, validated and batched reading out.

``IngestionService`` is the single entry point used by the HTTP API, the
sweeper and the CLI.  Per reading it:

1. normalises the payload (nothing is stored if this fails),
2. takes the device lock, then the vehicle lock, and validates the
   reading against the trusted history,
3. stores the reading, appends it to the device's active batch and
   writes the audit entry,
4. closes the batch when the reading signals end of trip, and queues the
   closed batch for submission if it validated.

Lock order is always device -> vehicle.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional

import structlog

from mileage_guard.config import PipelineSettings
from mileage_guard.locks import KeyedLocks
from mileage_guard.mileage_validator import (
    MileageValidator,
    VehicleResolver,
    resolve_by_vin,
    vehicle_key_for,
)
from mileage_guard.normalizer import normalize_payload
from mileage_guard.schemas import (
    BatchStatus,
    CloseReason,
    DeviceReading,
    ReadingAudit,
    TripBatch,
    ValidationResult,
    utcnow,
)
from mileage_guard.store.base import BatchStore
from mileage_guard.submission_manager import SubmissionManager
from mileage_guard.trip_batcher import TripBatcher

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IngestionResult:
    """What happened to one ingested reading."""

    reading: DeviceReading
    result: ValidationResult
    vehicle_key: str
    batch: Optional[TripBatch] = None
    created_batch: bool = False
    out_of_order: bool = False
    closed_batch: Optional[TripBatch] = None

    @property
    def outcome(self) -> str:
        """``accepted``, ``flagged`` or ``rejected``, as reported to the device."""
        if self.result.rejected:
            return "rejected"
        if self.result.flagged:
            return "flagged"
        return "accepted"

    @property
    def batch_id(self) -> Optional[str]:
        return self.batch.batch_id if self.batch is not None else None


@dataclass(frozen=True)
class SweepReport:
    closed_batches: int
    retries_queued: int
    pending_queued: int


class IngestionService:
    """Coordinates normaliser, validator, batcher and submission queue."""

    def __init__(
        self,
        store: BatchStore,
        settings: PipelineSettings,
        *,
        submissions: Optional[SubmissionManager] = None,
        vehicle_resolver: VehicleResolver = resolve_by_vin,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.submissions = submissions
        self.validator = MileageValidator(store)
        self.batcher = TripBatcher(store, settings)
        self._resolve_vehicle = vehicle_resolver
        self._clock = clock
        self._device_locks = KeyedLocks("device")
        self._vehicle_locks = KeyedLocks("vehicle")

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(
        self,
        raw: Mapping[str, Any],
        *,
        received_at: Optional[datetime] = None,
    ) -> IngestionResult:
        """Normalise, validate and batch one raw device payload.

        Raises
        ------
        InvalidPayloadError
            If the payload is malformed.  No state is changed.
        """
        reading = normalize_payload(raw, received_at=received_at or self._clock())
        return await self.ingest_reading(reading)

    async def ingest_reading(self, reading: DeviceReading) -> IngestionResult:
        with structlog.contextvars.bound_contextvars(
            device_id=reading.device_id, reading_id=reading.reading_id
        ):
            async with self._device_locks.hold(reading.device_id):
                ingested = await self._ingest_locked(reading)

            if ingested.closed_batch is not None:
                self._queue_if_validated(ingested.closed_batch)

            log = logger.warning if ingested.result.flagged else logger.info
            log(
                "reading_ingested",
                mileage=reading.mileage,
                status=ingested.result.status.value,
                delta=ingested.result.delta,
                batch_id=ingested.batch_id,
                outcome=ingested.outcome,
            )
            return ingested

    async def _ingest_locked(self, reading: DeviceReading) -> IngestionResult:
        vehicle_id = self._resolve_vehicle(reading)
        vehicle_key = vehicle_key_for(reading, vehicle_id)
        config = self.store.get_device_config(reading.device_id)
        thresholds = self.settings.thresholds_for(config)

        async with self._vehicle_locks.hold(vehicle_key):
            result = self.validator.validate_reading(reading, vehicle_key, thresholds)

        self.store.add_reading(reading)

        batch: Optional[TripBatch] = None
        created = out_of_order = False
        if config is None or config.enabled:
            update = self.batcher.add_reading(reading, result, vehicle_id=vehicle_id)
            batch, created, out_of_order = update.batch, update.created, update.out_of_order

        self.store.add_audit_entry(
            ReadingAudit(
                reading_id=reading.reading_id,
                device_id=reading.device_id,
                vehicle_key=vehicle_key,
                batch_id=batch.batch_id if batch else None,
                result=result,
            )
        )

        closed: Optional[TripBatch] = None
        if batch is not None and reading.trip_end:
            closed = self.batcher.close_batch(reading.device_id, CloseReason.TRIP_END)
        elif batch is not None and self.batcher.is_engine_off(batch):
            closed = self.batcher.close_batch(reading.device_id, CloseReason.ENGINE_OFF)

        return IngestionResult(
            reading=reading,
            result=result,
            vehicle_key=vehicle_key,
            batch=closed or batch,
            created_batch=created,
            out_of_order=out_of_order,
            closed_batch=closed,
        )

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    async def close_device(
        self,
        device_id: str,
        reason: CloseReason = CloseReason.FORCE_CLOSE,
    ) -> Optional[TripBatch]:
        """Close the device's active batch once any in-progress reading finishes."""
        async with self._device_locks.hold(device_id):
            closed = self.batcher.close_batch(device_id, reason)
        if closed is not None:
            self._queue_if_validated(closed)
        return closed

    async def close_stale_batches(self, now: Optional[datetime] = None) -> List[TripBatch]:
        """Close every active batch whose inactivity window has passed."""
        now = now or self._clock()
        closed: List[TripBatch] = []
        for candidate in self.batcher.find_stale(now):
            async with self._device_locks.hold(candidate.device_id):
                # A reading may have arrived while we waited for the lock.
                active = self.store.get_active_batch(candidate.device_id)
                still_stale = (
                    active is not None
                    and active.batch_id == candidate.batch_id
                    and self.batcher.is_stale(active, now)
                )
                batch = (
                    self.batcher.close_batch(candidate.device_id, CloseReason.INACTIVITY)
                    if still_stale
                    else None
                )
            if batch is not None:
                closed.append(batch)
                self._queue_if_validated(batch)
        if closed:
            logger.info("stale_batches_closed", count=len(closed))
        return closed

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """One maintenance pass: inactivity closes, due retries, never-attempted batches."""
        closed = await self.close_stale_batches(now)
        retries = pending = 0
        if self.submissions is not None:
            retries = self.submissions.retry_due(now)
            pending = self.submissions.enqueue_pending()
        return SweepReport(
            closed_batches=len(closed),
            retries_queued=retries,
            pending_queued=pending,
        )

    def _queue_if_validated(self, batch: TripBatch) -> None:
        if self.submissions is None or batch.status != BatchStatus.VALIDATED:
            return
        if self.store.get_submission(batch.batch_id) is not None:
            self.submissions.enqueue(batch.batch_id)
