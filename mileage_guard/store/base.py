"""Abstract base class for batch stores."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional, Union

from mileage_guard.schemas import (
    BatchStatus,
    BlockchainSubmission,
    DeviceBatchConfig,
    DeviceReading,
    ReadingAudit,
    TripBatch,
    VehicleHistory,
)

StatusFilter = Union[BatchStatus, Iterable[BatchStatus], None]


class BatchStore(ABC):
    """Unified interface for readings, batches, submissions and history.

    Concrete implementations: ``InMemoryBatchStore`` (tests, ``memory``
    database URL) and ``SqlBatchStore`` (SQLAlchemy).

    Versioned records (batches, submissions, vehicle history) are written
    with compare-and-set: the caller passes the record it read, and the
    write succeeds only if the stored ``version`` still matches.  A
    successful write returns the stored copy with ``version`` bumped; a
    lost race raises :class:`~mileage_guard.errors.ConcurrencyConflictError`.
    A missing record counts as version 0.
    """

    # -- readings -----------------------------------------------------------

    @abstractmethod
    def add_reading(self, reading: DeviceReading) -> None:
        """Persist a normalised reading."""

    @abstractmethod
    def get_reading(self, reading_id: str) -> Optional[DeviceReading]:
        """Return a reading by id, or ``None``."""

    @abstractmethod
    def list_readings(
        self,
        device_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[DeviceReading]:
        """Readings for *device_id* in ``[start, end]`` ordered by timestamp."""

    # -- batches ------------------------------------------------------------

    @abstractmethod
    def create_batch(self, batch: TripBatch) -> TripBatch:
        """Insert a new active batch.

        Raises ``ConcurrencyConflictError`` if the device already has one.
        """

    @abstractmethod
    def get_batch(self, batch_id: str) -> Optional[TripBatch]:
        """Return a batch by id, or ``None``."""

    @abstractmethod
    def get_active_batch(self, device_id: str) -> Optional[TripBatch]:
        """Return the device's active batch, or ``None``."""

    @abstractmethod
    def save_batch(self, batch: TripBatch) -> TripBatch:
        """Compare-and-set update of an existing batch."""

    @abstractmethod
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
        """Batches matching the filters, newest ``created_at`` first.

        *start*/*end* bound the batch ``start_time``.
        """

    @abstractmethod
    def count_batches(
        self,
        *,
        device_id: Optional[str] = None,
        status: StatusFilter = None,
    ) -> int:
        """Number of batches matching the filters."""

    # -- submissions --------------------------------------------------------

    @abstractmethod
    def get_submission(self, batch_id: str) -> Optional[BlockchainSubmission]:
        """Return the submission record for *batch_id*, or ``None``."""

    @abstractmethod
    def save_submission(self, submission: BlockchainSubmission) -> BlockchainSubmission:
        """Compare-and-set insert or update of a submission record."""

    @abstractmethod
    def list_due_submissions(self, now: datetime) -> List[BlockchainSubmission]:
        """Failed, non-terminal submissions whose retry time has passed."""

    @abstractmethod
    def list_submissions(
        self,
        *,
        submitted: Optional[bool] = None,
        terminal: Optional[bool] = None,
    ) -> List[BlockchainSubmission]:
        """Submission records matching the flags."""

    # -- trusted history ----------------------------------------------------

    @abstractmethod
    def get_vehicle_history(self, vehicle_key: str) -> Optional[VehicleHistory]:
        """Return the trusted mileage record, or ``None``."""

    @abstractmethod
    def save_vehicle_history(self, history: VehicleHistory) -> VehicleHistory:
        """Compare-and-set insert or update of a trusted mileage record."""

    # -- device configuration -----------------------------------------------

    @abstractmethod
    def get_device_config(self, device_id: str) -> Optional[DeviceBatchConfig]:
        """Return per-device overrides, or ``None``."""

    @abstractmethod
    def save_device_config(self, config: DeviceBatchConfig) -> DeviceBatchConfig:
        """Insert or replace per-device overrides."""

    # -- audit --------------------------------------------------------------

    @abstractmethod
    def add_audit_entry(self, entry: ReadingAudit) -> None:
        """Append a per-reading audit entry."""

    @abstractmethod
    def list_audit(
        self,
        *,
        device_id: Optional[str] = None,
        vehicle_key: Optional[str] = None,
        batch_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ReadingAudit]:
        """Audit entries matching the filters, oldest first."""

    # -- lifecycle ----------------------------------------------------------

    def close(self) -> None:
        """Release resources held by the store."""


def status_set(status: StatusFilter) -> Optional[frozenset]:
    """Normalise a status filter to a frozenset, or ``None`` for no filter."""
    if status is None:
        return None
    if isinstance(status, BatchStatus):
        return frozenset({status})
    return frozenset(status)
