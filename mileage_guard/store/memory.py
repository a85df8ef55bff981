"""Thread-safe in-process batch store.

Used by the test-suite and when ``DATABASE_URL=memory``.  Every record is
deep-copied on the way in and out, so callers never share state with the
store and a compare-and-set write is the only way to change a record.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, TypeVar

from pydantic import BaseModel

from mileage_guard.errors import BatchNotFoundError, ConcurrencyConflictError
from mileage_guard.schemas import (
    BatchStatus,
    BlockchainSubmission,
    DeviceBatchConfig,
    DeviceReading,
    ReadingAudit,
    TripBatch,
    VehicleHistory,
    utcnow,
)
from mileage_guard.store.base import BatchStore, StatusFilter, status_set

_M = TypeVar("_M", bound=BaseModel)


def _copy(model: _M) -> _M:
    return model.model_copy(deep=True)


class InMemoryBatchStore(BatchStore):
    """Dict-backed store guarded by a single ``threading.Lock``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._readings: Dict[str, DeviceReading] = {}
        self._batches: Dict[str, TripBatch] = {}
        self._active: Dict[str, str] = {}  # device_id → batch_id
        self._submissions: Dict[str, BlockchainSubmission] = {}
        self._history: Dict[str, VehicleHistory] = {}
        self._configs: Dict[str, DeviceBatchConfig] = {}
        self._audit: List[ReadingAudit] = []

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    def add_reading(self, reading: DeviceReading) -> None:
        with self._lock:
            self._readings[reading.reading_id] = reading

    def get_reading(self, reading_id: str) -> Optional[DeviceReading]:
        with self._lock:
            return self._readings.get(reading_id)

    def list_readings(
        self,
        device_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[DeviceReading]:
        with self._lock:
            rows = [
                r
                for r in self._readings.values()
                if r.device_id == device_id
                and (start is None or r.timestamp >= start)
                and (end is None or r.timestamp <= end)
            ]
        return sorted(rows, key=lambda r: (r.timestamp, r.mileage))

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def create_batch(self, batch: TripBatch) -> TripBatch:
        with self._lock:
            if batch.device_id in self._active:
                raise ConcurrencyConflictError(
                    f"Device {batch.device_id} already has an active batch"
                )
            if batch.batch_id in self._batches:
                raise ConcurrencyConflictError(f"Batch {batch.batch_id} already exists")
            stored = batch.model_copy(deep=True, update={"version": 1})
            self._batches[stored.batch_id] = stored
            if stored.status == BatchStatus.ACTIVE:
                self._active[stored.device_id] = stored.batch_id
            return _copy(stored)

    def get_batch(self, batch_id: str) -> Optional[TripBatch]:
        with self._lock:
            batch = self._batches.get(batch_id)
            return _copy(batch) if batch is not None else None

    def get_active_batch(self, device_id: str) -> Optional[TripBatch]:
        with self._lock:
            batch_id = self._active.get(device_id)
            if batch_id is None:
                return None
            return _copy(self._batches[batch_id])

    def save_batch(self, batch: TripBatch) -> TripBatch:
        with self._lock:
            current = self._batches.get(batch.batch_id)
            if current is None:
                raise BatchNotFoundError(batch.batch_id)
            if current.version != batch.version:
                raise ConcurrencyConflictError(
                    f"Batch {batch.batch_id} changed (stored v{current.version}, "
                    f"given v{batch.version})"
                )
            stored = batch.model_copy(
                deep=True, update={"version": batch.version + 1, "updated_at": utcnow()}
            )
            self._batches[stored.batch_id] = stored
            if stored.status == BatchStatus.ACTIVE:
                self._active[stored.device_id] = stored.batch_id
            elif self._active.get(stored.device_id) == stored.batch_id:
                del self._active[stored.device_id]
            return _copy(stored)

    def list_batches(
        self,
        *,
        device_id: Optional[str] = None,
        vehicle_id: Optional[str] = None,
        status: StatusFilter = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[TripBatch]:
        statuses = status_set(status)
        with self._lock:
            rows = [
                b
                for b in self._batches.values()
                if (device_id is None or b.device_id == device_id)
                and (vehicle_id is None or b.vehicle_id == vehicle_id)
                and (statuses is None or b.status in statuses)
                and (start is None or b.start_time >= start)
                and (end is None or b.start_time <= end)
            ]
            rows.sort(key=lambda b: b.created_at, reverse=True)
            stop = None if limit is None else offset + limit
            return [_copy(b) for b in rows[offset:stop]]

    def count_batches(
        self,
        *,
        device_id: Optional[str] = None,
        status: StatusFilter = None,
    ) -> int:
        statuses = status_set(status)
        with self._lock:
            return sum(
                1
                for b in self._batches.values()
                if (device_id is None or b.device_id == device_id)
                and (statuses is None or b.status in statuses)
            )

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def get_submission(self, batch_id: str) -> Optional[BlockchainSubmission]:
        with self._lock:
            sub = self._submissions.get(batch_id)
            return _copy(sub) if sub is not None else None

    def save_submission(self, submission: BlockchainSubmission) -> BlockchainSubmission:
        with self._lock:
            current = self._submissions.get(submission.batch_id)
            stored_version = current.version if current is not None else 0
            if stored_version != submission.version:
                raise ConcurrencyConflictError(
                    f"Submission {submission.batch_id} changed concurrently"
                )
            stored = submission.model_copy(
                deep=True,
                update={"version": submission.version + 1, "updated_at": utcnow()},
            )
            self._submissions[stored.batch_id] = stored
            return _copy(stored)

    def list_due_submissions(self, now: datetime) -> List[BlockchainSubmission]:
        with self._lock:
            rows = [
                s
                for s in self._submissions.values()
                if not s.submitted
                and not s.terminal
                and s.next_retry_at is not None
                and s.next_retry_at <= now
            ]
            rows.sort(key=lambda s: s.next_retry_at)
            return [_copy(s) for s in rows]

    def list_submissions(
        self,
        *,
        submitted: Optional[bool] = None,
        terminal: Optional[bool] = None,
    ) -> List[BlockchainSubmission]:
        with self._lock:
            rows = [
                s
                for s in self._submissions.values()
                if (submitted is None or s.submitted == submitted)
                and (terminal is None or s.terminal == terminal)
            ]
            rows.sort(key=lambda s: s.created_at)
            return [_copy(s) for s in rows]

    # ------------------------------------------------------------------
    # Trusted history
    # ------------------------------------------------------------------

    def get_vehicle_history(self, vehicle_key: str) -> Optional[VehicleHistory]:
        with self._lock:
            history = self._history.get(vehicle_key)
            return _copy(history) if history is not None else None

    def save_vehicle_history(self, history: VehicleHistory) -> VehicleHistory:
        with self._lock:
            current = self._history.get(history.vehicle_key)
            stored_version = current.version if current is not None else 0
            if stored_version != history.version:
                raise ConcurrencyConflictError(
                    f"Trusted mileage for {history.vehicle_key} changed concurrently"
                )
            stored = history.model_copy(
                deep=True,
                update={"version": history.version + 1, "updated_at": utcnow()},
            )
            self._history[stored.vehicle_key] = stored
            return _copy(stored)

    # ------------------------------------------------------------------
    # Device configuration
    # ------------------------------------------------------------------

    def get_device_config(self, device_id: str) -> Optional[DeviceBatchConfig]:
        with self._lock:
            config = self._configs.get(device_id)
            return _copy(config) if config is not None else None

    def save_device_config(self, config: DeviceBatchConfig) -> DeviceBatchConfig:
        stored = config.model_copy(deep=True, update={"updated_at": utcnow()})
        with self._lock:
            self._configs[stored.device_id] = stored
        return _copy(stored)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def add_audit_entry(self, entry: ReadingAudit) -> None:
        with self._lock:
            self._audit.append(_copy(entry))

    def list_audit(
        self,
        *,
        device_id: Optional[str] = None,
        vehicle_key: Optional[str] = None,
        batch_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ReadingAudit]:
        with self._lock:
            rows = [
                a
                for a in self._audit
                if (device_id is None or a.device_id == device_id)
                and (vehicle_key is None or a.vehicle_key == vehicle_key)
                and (batch_id is None or a.batch_id == batch_id)
            ]
        if limit is not None:
            rows = rows[-limit:]
        return [_copy(a) for a in rows]

    # ------------------------------------------------------------------
    # Utility
    # ------------------------------------------------------------------

    def clear(self) -> None:
        with self._lock:
            self._readings.clear()
            self._batches.clear()
            self._active.clear()
            self._submissions.clear()
            self._history.clear()
            self._configs.clear()
            self._audit.clear()
