"""Durable, at-least-once delivery of validated batches to the ledger.

Submission state lives in the store (:class:`BlockchainSubmission`), so a
restart resumes where it left off.  A pool of asyncio workers drains a
de-duplicated queue; each submission runs under a non-blocking per-batch
lock, so a batch already in flight is skipped rather than sent twice.

Retry policy
------------
* Transport failure (network, 5xx, timeout): ``submission_attempts += 1``
  and the next attempt is scheduled with exponential backoff and equal
  jitter.  Once ``submission_max_attempts`` is reached the record becomes
  terminal and only a manual retry sends it again.
* Ledger rejection (4xx): terminal immediately and flagged for review.
* Any other error from the ledger client counts as a transport failure.
"""

from __future__ import annotations

import asyncio
import enum
import random
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Set

import structlog

from mileage_guard.config import PipelineSettings
from mileage_guard.errors import (
    BatchNotFoundError,
    SubmissionRejectedError,
    SubmissionTransportError,
)
from mileage_guard.ledger_client import LedgerClient
from mileage_guard.locks import KeyedLocks, retry_on_conflict
from mileage_guard.schemas import (
    BatchStatus,
    BlockchainSubmission,
    SubmissionPayload,
    TripBatch,
    utcnow,
)
from mileage_guard.store.base import BatchStore

logger = structlog.get_logger(__name__)

_ELIGIBLE_STATUSES = (BatchStatus.VALIDATED, BatchStatus.SUBMISSION_FAILED)


class SubmissionOutcome(str, enum.Enum):
    SUBMITTED = "submitted"
    ALREADY_SUBMITTED = "already_submitted"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    NOT_ELIGIBLE = "not_eligible"
    NOT_DUE = "not_due"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED_TERMINAL = "failed_terminal"
    REJECTED = "rejected"


class SubmissionManager:
    """Sends validated batches to the ledger and tracks delivery state."""

    def __init__(
        self,
        store: BatchStore,
        ledger: LedgerClient,
        settings: PipelineSettings,
        *,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._settings = settings
        self._clock = clock
        self._rng = rng or random.Random()
        self._locks = KeyedLocks("batch")
        self._queue: Optional[asyncio.Queue] = None
        self._queued: Set[str] = set()
        self._workers: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def backoff_seconds(self, attempts: int) -> float:
        """Equal-jitter exponential backoff after *attempts* failures."""
        base = self._settings.submission_base_delay_seconds
        cap = self._settings.submission_max_delay_seconds
        delay = min(cap, base * (2 ** max(0, attempts - 1)))
        return delay / 2 + self._rng.uniform(0, delay / 2)

    # ------------------------------------------------------------------
    # Single submission
    # ------------------------------------------------------------------

    async def submit(self, batch_id: str, *, manual: bool = False) -> SubmissionOutcome:
        """Attempt to anchor *batch_id* once.

        *manual* clears the attempt counter and terminal flag first, and
        ignores the backoff schedule.

        Raises
        ------
        BatchNotFoundError
            If no batch has that id.
        """
        async with self._locks.try_hold(batch_id) as acquired:
            if not acquired:
                logger.info("submission_skipped_in_flight", batch_id=batch_id)
                return SubmissionOutcome.SKIPPED_IN_FLIGHT
            return await self._submit_locked(batch_id, manual)

    async def _submit_locked(self, batch_id: str, manual: bool) -> SubmissionOutcome:
        batch = self._store.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)

        submission = self._store.get_submission(batch_id)
        if batch.status == BatchStatus.SUBMITTED or (submission and submission.submitted):
            return SubmissionOutcome.ALREADY_SUBMITTED
        if batch.status not in _ELIGIBLE_STATUSES or not batch.validation.is_valid:
            return SubmissionOutcome.NOT_ELIGIBLE

        now = self._clock()
        if submission is None:
            if (
                not manual
                and batch.summary.reading_count
                < self._settings.min_readings_for_submission
            ):
                return SubmissionOutcome.NOT_ELIGIBLE
            submission = BlockchainSubmission(batch_id=batch_id)

        if manual:
            submission = submission.model_copy(
                update={
                    "submission_attempts": 0,
                    "terminal": False,
                    "needs_review": False,
                    "next_retry_at": None,
                    "manual_retries": submission.manual_retries + 1,
                }
            )
            logger.info(
                "manual_retry",
                batch_id=batch_id,
                manual_retries=submission.manual_retries,
            )
        elif submission.terminal:
            return SubmissionOutcome.NOT_ELIGIBLE
        elif not submission.is_due(now):
            return SubmissionOutcome.NOT_DUE

        payload = SubmissionPayload.from_batch(batch)
        submission = submission.model_copy(update={"payload_digest": payload.digest()})

        try:
            tx_hash = await asyncio.wait_for(
                self._ledger.anchor(payload),
                timeout=self._settings.submission_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._record_transport_failure(
                batch, submission, "Ledger call timed out"
            )
        except SubmissionTransportError as exc:
            return self._record_transport_failure(batch, submission, exc.message)
        except SubmissionRejectedError as exc:
            return self._record_rejection(batch, submission, exc.message)
        except Exception as exc:
            logger.exception("ledger_call_error", batch_id=batch_id)
            return self._record_transport_failure(
                batch, submission, f"{type(exc).__name__}: {exc}"
            )

        now = self._clock()
        self._store.save_submission(
            submission.model_copy(
                update={
                    "submitted": True,
                    "submitted_at": now,
                    "transaction_hash": tx_hash,
                    "submission_attempts": submission.submission_attempts + 1,
                    "last_error": None,
                    "next_retry_at": None,
                }
            )
        )
        self._move_batch(batch_id, BatchStatus.SUBMITTED)
        logger.info(
            "submission_succeeded",
            batch_id=batch_id,
            transaction_hash=tx_hash,
            attempts=submission.submission_attempts + 1,
        )
        return SubmissionOutcome.SUBMITTED

    def _record_transport_failure(
        self, batch: TripBatch, submission: BlockchainSubmission, error: str
    ) -> SubmissionOutcome:
        attempts = submission.submission_attempts + 1
        terminal = attempts >= self._settings.submission_max_attempts
        next_retry_at = (
            None
            if terminal
            else self._clock() + timedelta(seconds=self.backoff_seconds(attempts))
        )
        self._store.save_submission(
            submission.model_copy(
                update={
                    "submission_attempts": attempts,
                    "last_error": error,
                    "terminal": terminal,
                    "next_retry_at": next_retry_at,
                }
            )
        )
        self._move_batch(batch.batch_id, BatchStatus.SUBMISSION_FAILED)
        logger.warning(
            "submission_failed",
            batch_id=batch.batch_id,
            attempts=attempts,
            max_attempts=self._settings.submission_max_attempts,
            terminal=terminal,
            next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
            error=error,
        )
        if terminal:
            return SubmissionOutcome.FAILED_TERMINAL
        return SubmissionOutcome.RETRY_SCHEDULED

    def _record_rejection(
        self, batch: TripBatch, submission: BlockchainSubmission, error: str
    ) -> SubmissionOutcome:
        self._store.save_submission(
            submission.model_copy(
                update={
                    "submission_attempts": submission.submission_attempts + 1,
                    "last_error": error,
                    "terminal": True,
                    "needs_review": True,
                    "next_retry_at": None,
                }
            )
        )
        self._move_batch(batch.batch_id, BatchStatus.SUBMISSION_FAILED)
        logger.error("submission_rejected", batch_id=batch.batch_id, error=error)
        return SubmissionOutcome.REJECTED

    def _move_batch(self, batch_id: str, target: BatchStatus) -> None:
        def _attempt() -> None:
            batch = self._store.get_batch(batch_id)
            if batch is None:
                raise BatchNotFoundError(batch_id)
            batch.transition_to(target)
            self._store.save_batch(batch)

        retry_on_conflict(_attempt, what="batch_submission_status")

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    def enqueue(self, batch_id: str) -> bool:
        """Queue *batch_id* unless it is already waiting.  Returns ``True`` if queued."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        if batch_id in self._queued:
            return False
        self._queued.add(batch_id)
        self._queue.put_nowait(batch_id)
        return True

    @property
    def queue_size(self) -> int:
        return len(self._queued)

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        await self._ledger.start()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"submission-worker-{i}")
            for i in range(self._settings.submission_workers)
        ]
        logger.info("submission_workers_started", workers=len(self._workers))

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        await self._ledger.close()
        logger.info("submission_workers_stopped", pending=len(self._queued))

    async def drain(self) -> None:
        """Wait until every queued batch has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            batch_id = await self._queue.get()
            self._queued.discard(batch_id)
            try:
                outcome = await self.submit(batch_id)
                logger.debug(
                    "submission_processed",
                    worker=index,
                    batch_id=batch_id,
                    outcome=outcome.value,
                )
            except Exception:
                logger.exception("submission_worker_error", batch_id=batch_id)
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def retry_due(self, now: Optional[datetime] = None) -> int:
        """Queue failed, non-terminal submissions whose backoff has elapsed."""
        now = now or self._clock()
        queued = sum(
            1 for sub in self._store.list_due_submissions(now) if self.enqueue(sub.batch_id)
        )
        if queued:
            logger.info("submission_retries_queued", count=queued)
        return queued

    def enqueue_pending(self) -> int:
        """Queue validated batches that were never attempted (restart recovery)."""
        queued = 0
        minimum = self._settings.min_readings_for_submission
        for batch in self._store.list_batches(status=BatchStatus.VALIDATED):
            if batch.summary.reading_count < minimum:
                continue
            submission = self._store.get_submission(batch.batch_id)
            if submission is not None and (
                submission.submitted
                or submission.terminal
                or submission.submission_attempts > 0
            ):
                continue
            if self.enqueue(batch.batch_id):
                queued += 1
        if queued:
            logger.info("pending_submissions_queued", count=queued)
        return queued

