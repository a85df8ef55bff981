"""Tests for mileage_guard.submission_manager."""

from __future__ import annotations

import asyncio
import random
from datetime import timedelta
from typing import List, Optional

import pytest

from mileage_guard.errors import (
    BatchNotFoundError,
    SubmissionRejectedError,
    SubmissionTransportError,
)
from mileage_guard.ledger_client import DryRunLedgerClient, LedgerClient
from mileage_guard.pipeline import IngestionService
from mileage_guard.schemas import BatchStatus, SubmissionPayload
from mileage_guard.store import InMemoryBatchStore
from mileage_guard.store.base import BatchStore
from mileage_guard.submission_manager import SubmissionManager, SubmissionOutcome
from mileage_guard.tests.factories import FrozenClock, at, make_settings, payload


class _ScriptedLedger(LedgerClient):
    """Fails with the queued errors, then succeeds."""

    def __init__(self, errors: Optional[List[Exception]] = None) -> None:
        self.errors = list(errors or [])
        self.calls: List[SubmissionPayload] = []

    async def anchor(self, payload: SubmissionPayload) -> str:
        self.calls.append(payload)
        if self.errors:
            raise self.errors.pop(0)
        return f"0xtx{len(self.calls)}"


class _BlockingLedger(LedgerClient):
    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def anchor(self, payload: SubmissionPayload) -> str:
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        return "0xslow"


class _SlowLedger(LedgerClient):
    async def anchor(self, payload: SubmissionPayload) -> str:
        await asyncio.sleep(1.0)
        return "0xlate"


async def _validated_batch(store: BatchStore, device_id: str = "ESP32-001") -> str:
    """Ingest a clean two-reading trip and return the validated batch id.

    No VIN, so each device keeps its own trusted history.
    """
    service = IngestionService(store, make_settings())
    await service.ingest(payload(45000, 0, device_id=device_id, vin=None), received_at=at(0))
    ingested = await service.ingest(
        payload(45060, 3600, device_id=device_id, vin=None, tripEnd=True), received_at=at(3600)
    )
    assert ingested.closed_batch.status == BatchStatus.VALIDATED
    return ingested.closed_batch.batch_id


def _transport() -> SubmissionTransportError:
    return SubmissionTransportError("Ledger returned 503", status_code=503)


# ---------------------------------------------------------------------------
# Single submissions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_submit_success(store: BatchStore, clock: FrozenClock) -> None:
    batch_id = await _validated_batch(store)
    ledger = _ScriptedLedger()
    manager = SubmissionManager(store, ledger, make_settings(), clock=clock)

    assert await manager.submit(batch_id) == SubmissionOutcome.SUBMITTED

    submission = store.get_submission(batch_id)
    assert submission.submitted
    assert submission.transaction_hash == "0xtx1"
    assert submission.submission_attempts == 1
    assert submission.submitted_at == clock.now
    assert submission.payload_digest == ledger.calls[0].digest()
    assert store.get_batch(batch_id).status == BatchStatus.SUBMITTED


@pytest.mark.asyncio
async def test_resubmitting_is_idempotent(store: BatchStore, clock: FrozenClock) -> None:
    batch_id = await _validated_batch(store)
    ledger = _ScriptedLedger()
    manager = SubmissionManager(store, ledger, make_settings(), clock=clock)

    await manager.submit(batch_id)
    assert await manager.submit(batch_id) == SubmissionOutcome.ALREADY_SUBMITTED
    assert await manager.submit(batch_id, manual=True) == SubmissionOutcome.ALREADY_SUBMITTED
    assert len(ledger.calls) == 1


@pytest.mark.asyncio
async def test_retry_ceiling_then_manual_retry(store: BatchStore, clock: FrozenClock) -> None:
    batch_id = await _validated_batch(store)
    ledger = _ScriptedLedger([_transport(), _transport(), _transport()])
    settings = make_settings(submission_max_attempts=3)
    manager = SubmissionManager(store, ledger, settings, clock=clock)

    assert await manager.submit(batch_id) == SubmissionOutcome.RETRY_SCHEDULED
    first = store.get_submission(batch_id)
    assert first.submission_attempts == 1
    assert first.last_error == "Ledger returned 503"
    assert first.next_retry_at > clock.now
    assert store.get_batch(batch_id).status == BatchStatus.SUBMISSION_FAILED

    # Backoff not yet elapsed.
    assert await manager.submit(batch_id) == SubmissionOutcome.NOT_DUE
    assert len(ledger.calls) == 1

    clock.advance(3600)
    assert await manager.submit(batch_id) == SubmissionOutcome.RETRY_SCHEDULED
    clock.advance(3600)
    assert await manager.submit(batch_id) == SubmissionOutcome.FAILED_TERMINAL

    terminal = store.get_submission(batch_id)
    assert terminal.terminal
    assert terminal.submission_attempts == 3
    assert terminal.next_retry_at is None
    assert not terminal.needs_review

    clock.advance(3600)
    assert await manager.submit(batch_id) == SubmissionOutcome.NOT_ELIGIBLE
    assert manager.retry_due(clock.now) == 0
    assert len(ledger.calls) == 3

    # Ledger recovered; an operator retries by hand.
    assert await manager.submit(batch_id, manual=True) == SubmissionOutcome.SUBMITTED
    done = store.get_submission(batch_id)
    assert done.submitted
    assert done.manual_retries == 1
    assert done.submission_attempts == 1
    assert not done.terminal
    assert store.get_batch(batch_id).status == BatchStatus.SUBMITTED


@pytest.mark.asyncio
async def test_rejection_is_terminal_and_flagged(store: BatchStore, clock: FrozenClock) -> None:
    batch_id = await _validated_batch(store)
    ledger = _ScriptedLedger([SubmissionRejectedError("schema mismatch", status_code=422)])
    manager = SubmissionManager(store, ledger, make_settings(), clock=clock)

    assert await manager.submit(batch_id) == SubmissionOutcome.REJECTED
    submission = store.get_submission(batch_id)
    assert submission.terminal
    assert submission.needs_review
    assert submission.last_error == "schema mismatch"
    assert store.get_batch(batch_id).status == BatchStatus.SUBMISSION_FAILED

    clock.advance(86400)
    assert manager.retry_due(clock.now) == 0


@pytest.mark.asyncio
async def test_in_flight_submission_is_skipped(clock: FrozenClock) -> None:
    store = InMemoryBatchStore()
    batch_id = await _validated_batch(store)
    ledger = _BlockingLedger()
    manager = SubmissionManager(store, ledger, make_settings(), clock=clock)

    first = asyncio.create_task(manager.submit(batch_id))
    await ledger.entered.wait()
    assert await manager.submit(batch_id) == SubmissionOutcome.SKIPPED_IN_FLIGHT

    ledger.release.set()
    assert await first == SubmissionOutcome.SUBMITTED
    assert ledger.calls == 1


@pytest.mark.asyncio
async def test_ledger_timeout_schedules_retry(clock: FrozenClock) -> None:
    store = InMemoryBatchStore()
    batch_id = await _validated_batch(store)
    manager = SubmissionManager(
        store, _SlowLedger(), make_settings(submission_timeout_seconds=0.05), clock=clock
    )

    assert await manager.submit(batch_id) == SubmissionOutcome.RETRY_SCHEDULED
    assert store.get_submission(batch_id).last_error == "Ledger call timed out"


@pytest.mark.asyncio
async def test_unexpected_ledger_error_counts_as_attempt(clock: FrozenClock) -> None:
    store = InMemoryBatchStore()
    batch_id = await _validated_batch(store)
    manager = SubmissionManager(
        store, _ScriptedLedger([RuntimeError("client not started")]), make_settings(), clock=clock
    )

    assert await manager.submit(batch_id) == SubmissionOutcome.RETRY_SCHEDULED

    submission = store.get_submission(batch_id)
    assert submission.submission_attempts == 1
    assert submission.last_error == "RuntimeError: client not started"
    assert submission.next_retry_at is not None
    assert not submission.terminal
    assert store.get_batch(batch_id).status == BatchStatus.SUBMISSION_FAILED
    # Backed off, so the restart-recovery sweep leaves it alone.
    assert manager.enqueue_pending() == 0
    assert manager.retry_due(clock.now) == 0


@pytest.mark.asyncio
async def test_rejected_batch_is_not_eligible(clock: FrozenClock) -> None:
    store = InMemoryBatchStore()
    service = IngestionService(store, make_settings())
    await service.ingest(payload(45200, 0), received_at=at(0))
    ingested = await service.ingest(payload(82, 60, tripEnd=True), received_at=at(60))
    batch_id = ingested.closed_batch.batch_id

    ledger = _ScriptedLedger()
    manager = SubmissionManager(store, ledger, make_settings(), clock=clock)
    assert await manager.submit(batch_id) == SubmissionOutcome.NOT_ELIGIBLE
    assert await manager.submit(batch_id, manual=True) == SubmissionOutcome.NOT_ELIGIBLE
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_unknown_batch(clock: FrozenClock) -> None:
    manager = SubmissionManager(InMemoryBatchStore(), _ScriptedLedger(), make_settings(), clock=clock)
    with pytest.raises(BatchNotFoundError):
        await manager.submit("missing")


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


def test_backoff_bounds() -> None:
    settings = make_settings(submission_base_delay_seconds=5.0, submission_max_delay_seconds=3600.0)
    manager = SubmissionManager(
        InMemoryBatchStore(), DryRunLedgerClient(), settings, rng=random.Random(7)
    )
    for _ in range(50):
        assert 2.5 <= manager.backoff_seconds(1) <= 5.0
        assert 10.0 <= manager.backoff_seconds(3) <= 20.0
        assert 1800.0 <= manager.backoff_seconds(30) <= 3600.0


# ---------------------------------------------------------------------------
# Worker pool and sweeps
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_workers_drain_queue() -> None:
    store = InMemoryBatchStore()
    batch_ids = [await _validated_batch(store, device_id=f"ESP32-{i}") for i in range(3)]
    manager = SubmissionManager(store, DryRunLedgerClient(), make_settings(submission_workers=2))

    await manager.start()
    try:
        assert manager.running
        for batch_id in batch_ids:
            assert manager.enqueue(batch_id)
        assert not manager.enqueue(batch_ids[0])
        await manager.drain()
    finally:
        await manager.stop()

    assert not manager.running
    assert manager.queue_size == 0
    for batch_id in batch_ids:
        assert store.get_batch(batch_id).status == BatchStatus.SUBMITTED


@pytest.mark.asyncio
async def test_retry_due_queues_elapsed_backoff(clock: FrozenClock) -> None:
    store = InMemoryBatchStore()
    batch_id = await _validated_batch(store)
    manager = SubmissionManager(store, _ScriptedLedger([_transport()]), make_settings(), clock=clock)

    await manager.submit(batch_id)
    assert manager.retry_due(clock.now) == 0
    assert manager.retry_due(clock.now + timedelta(hours=1)) == 1
    # Already queued; not queued twice.
    assert manager.retry_due(clock.now + timedelta(hours=1)) == 0
    assert manager.queue_size == 1


@pytest.mark.asyncio
async def test_enqueue_pending_recovers_untried_batches(clock: FrozenClock) -> None:
    store = InMemoryBatchStore()
    untried = await _validated_batch(store, device_id="ESP32-A")
    failed = await _validated_batch(store, device_id="ESP32-B")
    manager = SubmissionManager(store, _ScriptedLedger([_transport()]), make_settings(), clock=clock)
    await manager.submit(failed)

    assert manager.enqueue_pending() == 1
    assert manager.queue_size == 1
    assert store.get_batch(untried).status == BatchStatus.VALIDATED
