"""Operator queries and actions over batches and submissions.

Backs the ``/v1/admin/batches`` routes and the CLI.  Read paths return
plain dicts ready for JSON; write paths go through
:class:`~mileage_guard.pipeline.IngestionService` and the submission
manager so locking and state transitions stay in one place.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from mileage_guard.errors import BatchNotFoundError
from mileage_guard.pipeline import IngestionService, SweepReport
from mileage_guard.schemas import (
    BatchStatus,
    CloseReason,
    DeviceBatchConfig,
    TripBatch,
    ValidationStatus,
)
from mileage_guard.submission_manager import SubmissionOutcome

logger = structlog.get_logger(__name__)

_FINISHED = (
    BatchStatus.VALIDATED,
    BatchStatus.REJECTED,
    BatchStatus.SUBMITTED,
    BatchStatus.SUBMISSION_FAILED,
)


class AdminService:
    def __init__(self, service: IngestionService) -> None:
        self._service = service
        self._store = service.store

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def statistics(self, device_id: Optional[str] = None) -> Dict[str, Any]:
        """Batch totals per status, reading totals and trip averages."""
        batches = self._store.list_batches(device_id=device_id)
        by_status = {status.value: 0 for status in BatchStatus}
        for batch in batches:
            by_status[batch.status.value] += 1

        finished = [b for b in batches if b.status in _FINISHED]
        total_readings = sum(b.summary.reading_count for b in batches)
        total_distance = sum(max(0, b.summary.mileage_delta) for b in finished)

        batch_ids = {b.batch_id for b in batches}
        submissions = [
            s
            for s in self._store.list_submissions()
            if device_id is None or s.batch_id in batch_ids
        ]
        return {
            "device_id": device_id,
            "total_batches": len(batches),
            "by_status": by_status,
            "total_readings": total_readings,
            "total_distance": total_distance,
            "average_batch_size": round(total_readings / len(batches), 2) if batches else 0.0,
            "average_trip_distance": round(total_distance / len(finished), 2)
            if finished
            else 0.0,
            "submissions": {
                "submitted": sum(1 for s in submissions if s.submitted),
                "pending": sum(
                    1 for s in submissions if not s.submitted and not s.terminal
                ),
                "terminal": sum(1 for s in submissions if s.terminal),
                "needs_review": sum(1 for s in submissions if s.needs_review),
            },
        }

    def dashboard(self, limit: int = 10) -> Dict[str, Any]:
        """Recent, pending, failed and active batches plus overall statistics."""
        return {
            "statistics": self.statistics(),
            "recent_batches": [
                _batch_row(b) for b in self._store.list_batches(limit=limit)
            ],
            "pending_submission": [
                _batch_row(b)
                for b in self._store.list_batches(status=BatchStatus.VALIDATED, limit=limit)
            ],
            "failed_submission": [
                _batch_row(b)
                for b in self._store.list_batches(
                    status=BatchStatus.SUBMISSION_FAILED, limit=limit
                )
            ],
            "active_batches": [
                _batch_row(b)
                for b in self._store.list_batches(status=BatchStatus.ACTIVE, limit=limit)
            ],
        }

    def batch_details(self, batch_id: str) -> Dict[str, Any]:
        batch = self._get(batch_id)
        submission = self._store.get_submission(batch_id)
        return {
            "batch": batch.model_dump(mode="json"),
            "submission": submission.model_dump(mode="json") if submission else None,
        }

    def validation_report(self, batch_id: str) -> Dict[str, Any]:
        """Scoring rules, data quality and trip analysis for one batch."""
        batch = self._get(batch_id)
        readings = batch.readings

        qualities = [r.data_quality for r in readings if r.data_quality is not None]
        status_counts = {status.value: 0 for status in ValidationStatus}
        for ref in readings:
            status_counts[ref.validation_status.value] += 1

        hours = batch.duration_seconds / 3600.0
        distance = batch.summary.mileage_delta
        return {
            "batch_id": batch.batch_id,
            "device_id": batch.device_id,
            "status": batch.status.value,
            "close_reason": batch.close_reason.value if batch.close_reason else None,
            "validation": batch.validation.model_dump(mode="json"),
            "reading_statuses": status_counts,
            "data_quality": {
                "samples": len(qualities),
                "average": round(sum(qualities) / len(qualities), 2) if qualities else None,
                "minimum": min(qualities) if qualities else None,
            },
            "trip_analysis": {
                "distance": distance,
                "duration_hours": round(hours, 3),
                "average_speed": round(distance / hours, 2) if hours > 0 else None,
                "reported_avg_speed": batch.summary.avg_speed,
                "reported_max_speed": batch.summary.max_speed,
                "reading_count": batch.summary.reading_count,
                "readings_per_hour": round(len(readings) / hours, 2) if hours > 0 else None,
                "out_of_order_count": sum(1 for r in readings if r.out_of_order),
            },
        }

    def device_history(
        self,
        device_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        status: Optional[BatchStatus] = None,
    ) -> Dict[str, Any]:
        """One page of a device's batches, newest first."""
        page = max(1, page)
        limit = max(1, limit)
        total = self._store.count_batches(device_id=device_id, status=status)
        batches = self._store.list_batches(
            device_id=device_id,
            status=status,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return {
            "device_id": device_id,
            "batches": [_batch_row(b) for b in batches],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    def reading_audit(self, device_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        return [
            entry.model_dump(mode="json")
            for entry in self._store.list_audit(device_id=device_id, limit=limit)
        ]

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def process_pending(self, now: Optional[datetime] = None) -> SweepReport:
        report = await self._service.sweep(now)
        logger.info(
            "process_pending_requested",
            closed_batches=report.closed_batches,
            retries_queued=report.retries_queued,
            pending_queued=report.pending_queued,
        )
        return report

    async def force_close(self, device_id: str) -> Optional[TripBatch]:
        closed = await self._service.close_device(device_id, CloseReason.FORCE_CLOSE)
        logger.info(
            "force_close_requested",
            device_id=device_id,
            batch_id=closed.batch_id if closed else None,
        )
        return closed

    async def retry_submission(self, batch_id: str) -> SubmissionOutcome:
        """Manual retry: resets the attempt counter and sends once now."""
        self._get(batch_id)
        if self._service.submissions is None:
            raise RuntimeError("Submission manager is not configured")
        return await self._service.submissions.submit(batch_id, manual=True)

    def update_device_config(
        self, device_id: str, overrides: Dict[str, Any]
    ) -> DeviceBatchConfig:
        """Merge *overrides* into the device's stored configuration."""
        current = self._store.get_device_config(device_id)
        base = current.model_dump() if current else {"device_id": device_id}
        base.update({k: v for k, v in overrides.items() if k != "device_id"})
        base.pop("updated_at", None)
        config = DeviceBatchConfig.model_validate(base)
        saved = self._store.save_device_config(config)
        logger.info(
            "device_config_updated",
            device_id=device_id,
            overrides=saved.model_dump(mode="json", exclude={"device_id", "updated_at"}),
        )
        return saved

    def get_device_config(self, device_id: str) -> DeviceBatchConfig:
        return self._store.get_device_config(device_id) or DeviceBatchConfig(
            device_id=device_id
        )

    # -- internal -----------------------------------------------------------

    def _get(self, batch_id: str) -> TripBatch:
        batch = self._store.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch


def _batch_row(batch: TripBatch) -> Dict[str, Any]:
    """Compact list view of a batch (no reading list)."""
    return {
        "batch_id": batch.batch_id,
        "device_id": batch.device_id,
        "vehicle_id": batch.vehicle_id,
        "status": batch.status.value,
        "start_time": batch.start_time.isoformat(),
        "end_time": batch.end_time.isoformat() if batch.end_time else None,
        "summary": batch.summary.model_dump(mode="json"),
        "fraud_score": batch.validation.fraud_score,
        "is_valid": batch.validation.is_valid,
        "close_reason": batch.close_reason.value if batch.close_reason else None,
    }
