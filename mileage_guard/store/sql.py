"""SQLAlchemy-backed durable batch store.

Compare-and-set writes are a single ``UPDATE ... WHERE version = :v``;
zero affected rows means another writer got there first.  The one-active-
batch-per-device rule is enforced by a partial unique index, so a racing
``create_batch`` surfaces as an ``IntegrityError``.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mileage_guard.db.models import (
    BlockchainSubmissionRow,
    DeviceBatchConfigRow,
    DeviceReadingRow,
    ReadingAuditRow,
    TripBatchRow,
    VehicleMileageHistoryRow,
)
from mileage_guard.db.session import build_engine, init_db, make_session_factory
from mileage_guard.errors import BatchNotFoundError, ConcurrencyConflictError
from mileage_guard.schemas import (
    BatchStatus,
    BlockchainSubmission,
    DeviceBatchConfig,
    DeviceReading,
    ReadingAudit,
    TripBatch,
    VehicleHistory,
    ensure_utc,
    utcnow,
)
from mileage_guard.store.base import BatchStore, StatusFilter, status_set

logger = structlog.get_logger(__name__)


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


class SqlBatchStore(BatchStore):
    """Durable store over any SQLAlchemy engine (SQLite or Postgres)."""

    def __init__(self, engine: Engine, *, create_tables: bool = True) -> None:
        self._engine = engine
        self._session_factory = make_session_factory(engine)
        if create_tables:
            init_db(engine)

    @classmethod
    def from_url(cls, database_url: str, **kwargs) -> "SqlBatchStore":
        return cls(build_engine(database_url), **kwargs)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    def add_reading(self, reading: DeviceReading) -> None:
        with self._session() as session:
            session.merge(
                DeviceReadingRow(
                    reading_id=reading.reading_id,
                    device_id=reading.device_id,
                    vin=reading.vin,
                    mileage=reading.mileage,
                    timestamp=_naive(reading.timestamp),
                    received_at=_naive(reading.received_at),
                    payload=reading.model_dump(mode="json"),
                )
            )

    def get_reading(self, reading_id: str) -> Optional[DeviceReading]:
        with self._session() as session:
            row = session.get(DeviceReadingRow, reading_id)
            return DeviceReading.model_validate(row.payload) if row else None

    def list_readings(
        self,
        device_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[DeviceReading]:
        stmt = select(DeviceReadingRow).where(DeviceReadingRow.device_id == device_id)
        if start is not None:
            stmt = stmt.where(DeviceReadingRow.timestamp >= _naive(start))
        if end is not None:
            stmt = stmt.where(DeviceReadingRow.timestamp <= _naive(end))
        stmt = stmt.order_by(DeviceReadingRow.timestamp, DeviceReadingRow.mileage)
        with self._session() as session:
            rows = session.scalars(stmt).all()
            return [DeviceReading.model_validate(r.payload) for r in rows]

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def create_batch(self, batch: TripBatch) -> TripBatch:
        stored = batch.model_copy(deep=True, update={"version": 1})
        try:
            with self._session() as session:
                session.add(
                    TripBatchRow(
                        batch_id=stored.batch_id,
                        device_id=stored.device_id,
                        vehicle_id=stored.vehicle_id,
                        status=stored.status.value,
                        start_time=_naive(stored.start_time),
                        created_at=_naive(stored.created_at),
                        updated_at=_naive(stored.updated_at),
                        version=1,
                        payload=stored.model_dump(mode="json"),
                    )
                )
        except IntegrityError as exc:
            logger.info("batch_create_conflict", device_id=batch.device_id)
            raise ConcurrencyConflictError(
                f"Device {batch.device_id} already has an active batch"
            ) from exc
        return stored

    def get_batch(self, batch_id: str) -> Optional[TripBatch]:
        with self._session() as session:
            row = session.get(TripBatchRow, batch_id)
            return _batch_from_row(row) if row else None

    def get_active_batch(self, device_id: str) -> Optional[TripBatch]:
        stmt = select(TripBatchRow).where(
            TripBatchRow.device_id == device_id,
            TripBatchRow.status == BatchStatus.ACTIVE.value,
        )
        with self._session() as session:
            row = session.scalars(stmt).first()
            return _batch_from_row(row) if row else None

    def save_batch(self, batch: TripBatch) -> TripBatch:
        stored = batch.model_copy(
            deep=True, update={"version": batch.version + 1, "updated_at": utcnow()}
        )
        stmt = (
            update(TripBatchRow)
            .where(
                TripBatchRow.batch_id == batch.batch_id,
                TripBatchRow.version == batch.version,
            )
            .values(
                vehicle_id=stored.vehicle_id,
                status=stored.status.value,
                start_time=_naive(stored.start_time),
                updated_at=_naive(stored.updated_at),
                version=stored.version,
                payload=stored.model_dump(mode="json"),
            )
        )
        with self._session() as session:
            result = session.execute(stmt)
            if result.rowcount == 0:
                if session.get(TripBatchRow, batch.batch_id) is None:
                    raise BatchNotFoundError(batch.batch_id)
                raise ConcurrencyConflictError(
                    f"Batch {batch.batch_id} changed since v{batch.version}"
                )
        return stored

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
        stmt = _filter_batches(select(TripBatchRow), device_id, status)
        if vehicle_id is not None:
            stmt = stmt.where(TripBatchRow.vehicle_id == vehicle_id)
        if start is not None:
            stmt = stmt.where(TripBatchRow.start_time >= _naive(start))
        if end is not None:
            stmt = stmt.where(TripBatchRow.start_time <= _naive(end))
        stmt = stmt.order_by(TripBatchRow.created_at.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session() as session:
            return [_batch_from_row(r) for r in session.scalars(stmt).all()]

    def count_batches(
        self,
        *,
        device_id: Optional[str] = None,
        status: StatusFilter = None,
    ) -> int:
        stmt = _filter_batches(
            select(func.count()).select_from(TripBatchRow), device_id, status
        )
        with self._session() as session:
            return int(session.scalar(stmt) or 0)

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def get_submission(self, batch_id: str) -> Optional[BlockchainSubmission]:
        with self._session() as session:
            row = session.get(BlockchainSubmissionRow, batch_id)
            return BlockchainSubmission.model_validate(row.payload) if row else None

    def save_submission(self, submission: BlockchainSubmission) -> BlockchainSubmission:
        stored = submission.model_copy(
            deep=True,
            update={"version": submission.version + 1, "updated_at": utcnow()},
        )
        values = dict(
            submitted=stored.submitted,
            terminal=stored.terminal,
            next_retry_at=_naive(stored.next_retry_at),
            updated_at=_naive(stored.updated_at),
            version=stored.version,
            payload=stored.model_dump(mode="json"),
        )
        if submission.version == 0:
            try:
                with self._session() as session:
                    session.add(
                        BlockchainSubmissionRow(
                            batch_id=stored.batch_id,
                            created_at=_naive(stored.created_at),
                            **values,
                        )
                    )
            except IntegrityError as exc:
                raise ConcurrencyConflictError(
                    f"Submission {submission.batch_id} already exists"
                ) from exc
            return stored

        stmt = (
            update(BlockchainSubmissionRow)
            .where(
                BlockchainSubmissionRow.batch_id == submission.batch_id,
                BlockchainSubmissionRow.version == submission.version,
            )
            .values(**values)
        )
        with self._session() as session:
            if session.execute(stmt).rowcount == 0:
                raise ConcurrencyConflictError(
                    f"Submission {submission.batch_id} changed concurrently"
                )
        return stored

    def list_due_submissions(self, now: datetime) -> List[BlockchainSubmission]:
        stmt = (
            select(BlockchainSubmissionRow)
            .where(
                BlockchainSubmissionRow.submitted.is_(False),
                BlockchainSubmissionRow.terminal.is_(False),
                BlockchainSubmissionRow.next_retry_at.is_not(None),
                BlockchainSubmissionRow.next_retry_at <= _naive(now),
            )
            .order_by(BlockchainSubmissionRow.next_retry_at)
        )
        with self._session() as session:
            return [
                BlockchainSubmission.model_validate(r.payload)
                for r in session.scalars(stmt).all()
            ]

    def list_submissions(
        self,
        *,
        submitted: Optional[bool] = None,
        terminal: Optional[bool] = None,
    ) -> List[BlockchainSubmission]:
        stmt = select(BlockchainSubmissionRow)
        if submitted is not None:
            stmt = stmt.where(BlockchainSubmissionRow.submitted.is_(submitted))
        if terminal is not None:
            stmt = stmt.where(BlockchainSubmissionRow.terminal.is_(terminal))
        stmt = stmt.order_by(BlockchainSubmissionRow.created_at)
        with self._session() as session:
            return [
                BlockchainSubmission.model_validate(r.payload)
                for r in session.scalars(stmt).all()
            ]

    # ------------------------------------------------------------------
    # Trusted history
    # ------------------------------------------------------------------

    def get_vehicle_history(self, vehicle_key: str) -> Optional[VehicleHistory]:
        with self._session() as session:
            row = session.get(VehicleMileageHistoryRow, vehicle_key)
            return VehicleHistory.model_validate(row.payload) if row else None

    def save_vehicle_history(self, history: VehicleHistory) -> VehicleHistory:
        stored = history.model_copy(
            deep=True,
            update={"version": history.version + 1, "updated_at": utcnow()},
        )
        values = dict(
            trusted_mileage=stored.trusted_mileage,
            trusted_at=_naive(stored.trusted_at),
            updated_at=_naive(stored.updated_at),
            version=stored.version,
            payload=stored.model_dump(mode="json"),
        )
        if history.version == 0:
            try:
                with self._session() as session:
                    session.add(
                        VehicleMileageHistoryRow(vehicle_key=stored.vehicle_key, **values)
                    )
            except IntegrityError as exc:
                raise ConcurrencyConflictError(
                    f"Trusted mileage for {history.vehicle_key} already exists"
                ) from exc
            return stored

        stmt = (
            update(VehicleMileageHistoryRow)
            .where(
                VehicleMileageHistoryRow.vehicle_key == history.vehicle_key,
                VehicleMileageHistoryRow.version == history.version,
            )
            .values(**values)
        )
        with self._session() as session:
            if session.execute(stmt).rowcount == 0:
                raise ConcurrencyConflictError(
                    f"Trusted mileage for {history.vehicle_key} changed concurrently"
                )
        return stored

    # ------------------------------------------------------------------
    # Device configuration
    # ------------------------------------------------------------------

    def get_device_config(self, device_id: str) -> Optional[DeviceBatchConfig]:
        with self._session() as session:
            row = session.get(DeviceBatchConfigRow, device_id)
            return DeviceBatchConfig.model_validate(row.payload) if row else None

    def save_device_config(self, config: DeviceBatchConfig) -> DeviceBatchConfig:
        stored = config.model_copy(deep=True, update={"updated_at": utcnow()})
        with self._session() as session:
            session.merge(
                DeviceBatchConfigRow(
                    device_id=stored.device_id,
                    updated_at=_naive(stored.updated_at),
                    payload=stored.model_dump(mode="json"),
                )
            )
        return stored

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def add_audit_entry(self, entry: ReadingAudit) -> None:
        with self._session() as session:
            session.add(
                ReadingAuditRow(
                    reading_id=entry.reading_id,
                    device_id=entry.device_id,
                    vehicle_key=entry.vehicle_key,
                    batch_id=entry.batch_id,
                    status=entry.result.status.value,
                    recorded_at=_naive(entry.recorded_at),
                    payload=entry.model_dump(mode="json"),
                )
            )

    def list_audit(
        self,
        *,
        device_id: Optional[str] = None,
        vehicle_key: Optional[str] = None,
        batch_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ReadingAudit]:
        stmt = select(ReadingAuditRow)
        if device_id is not None:
            stmt = stmt.where(ReadingAuditRow.device_id == device_id)
        if vehicle_key is not None:
            stmt = stmt.where(ReadingAuditRow.vehicle_key == vehicle_key)
        if batch_id is not None:
            stmt = stmt.where(ReadingAuditRow.batch_id == batch_id)
        stmt = stmt.order_by(ReadingAuditRow.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session() as session:
            rows = session.scalars(stmt).all()
            return [ReadingAudit.model_validate(r.payload) for r in reversed(rows)]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._engine.dispose()


def _batch_from_row(row: TripBatchRow) -> TripBatch:
    return TripBatch.model_validate(row.payload)


def _filter_batches(stmt, device_id: Optional[str], status: StatusFilter):
    if device_id is not None:
        stmt = stmt.where(TripBatchRow.device_id == device_id)
    statuses = status_set(status)
    if statuses is not None:
        stmt = stmt.where(TripBatchRow.status.in_([s.value for s in statuses]))
    return stmt
