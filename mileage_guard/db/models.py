"""Database models for the durable batch store.

Each row keeps the full pydantic record in ``payload`` and copies the
fields used for filtering into indexed columns.  Datetime columns hold
naive UTC.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from mileage_guard.db.base import Base

JSONPayload = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DeviceReadingRow(Base):
    """Normalised device readings."""

    __tablename__ = "device_readings"

    reading_id = Column(String(32), primary_key=True)
    device_id = Column(String(100), nullable=False, index=True)
    vin = Column(String(17), nullable=True, index=True)
    mileage = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    received_at = Column(DateTime, nullable=False)
    payload = Column(JSONPayload, nullable=False)


class TripBatchRow(Base):
    """Trip batches; at most one ``active`` row per device."""

    __tablename__ = "trip_batches"

    batch_id = Column(String(150), primary_key=True)
    device_id = Column(String(100), nullable=False, index=True)
    vehicle_id = Column(String(100), nullable=True, index=True)
    status = Column(String(30), nullable=False, index=True)  # BatchStatus value
    start_time = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=_utcnow, index=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    version = Column(Integer, nullable=False, default=1)
    payload = Column(JSONPayload, nullable=False)

    __table_args__ = (
        Index(
            "uq_trip_batches_one_active_per_device",
            "device_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )


class BlockchainSubmissionRow(Base):
    """Ledger delivery state, one row per validated batch."""

    __tablename__ = "blockchain_submissions"

    batch_id = Column(String(150), primary_key=True)
    submitted = Column(Boolean, nullable=False, default=False, index=True)
    terminal = Column(Boolean, nullable=False, default=False)
    next_retry_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    version = Column(Integer, nullable=False, default=1)
    payload = Column(JSONPayload, nullable=False)


class VehicleMileageHistoryRow(Base):
    """Last trusted mileage per vehicle key."""

    __tablename__ = "vehicle_mileage_history"

    vehicle_key = Column(String(120), primary_key=True)
    trusted_mileage = Column(Integer, nullable=False)
    trusted_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    version = Column(Integer, nullable=False, default=1)
    payload = Column(JSONPayload, nullable=False)


class DeviceBatchConfigRow(Base):
    """Per-device threshold overrides."""

    __tablename__ = "device_batch_configs"

    device_id = Column(String(100), primary_key=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    payload = Column(JSONPayload, nullable=False)


class ReadingAuditRow(Base):
    """Validation outcome for every ingested reading."""

    __tablename__ = "reading_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reading_id = Column(String(32), nullable=False, index=True)
    device_id = Column(String(100), nullable=False, index=True)
    vehicle_key = Column(String(120), nullable=False, index=True)
    batch_id = Column(String(150), nullable=True, index=True)
    status = Column(String(30), nullable=False)  # ValidationStatus value
    recorded_at = Column(DateTime, default=_utcnow)
    payload = Column(JSONPayload, nullable=False)
