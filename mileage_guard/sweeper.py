"""Background sweep loop: close idle batches and re-queue due submissions."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

import structlog

from mileage_guard.pipeline import IngestionService, SweepReport

logger = structlog.get_logger(__name__)


class Sweeper:
    """Runs :meth:`IngestionService.sweep` every ``sweep_interval_seconds``."""

    def __init__(self, service: IngestionService, interval_seconds: float) -> None:
        self._service = service
        self._interval = interval_seconds
        self._shutdown = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        report = await self._service.sweep(now)
        if report.closed_batches or report.retries_queued or report.pending_queued:
            logger.info(
                "sweep_completed",
                closed_batches=report.closed_batches,
                retries_queued=report.retries_queued,
                pending_queued=report.pending_queued,
            )
        return report

    @property
    def running(self) -> bool:
        return self._task is not None

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Start the sweep loop as a background task."""
        if self._task is not None:
            return
        self._shutdown.clear()
        self._task = asyncio.create_task(self._loop(), name="sweeper")
        logger.info("sweeper_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        """Signal the loop to exit and wait for the current pass to finish."""
        if self._task is None:
            return
        self._shutdown.set()
        await self._task
        self._task = None
        logger.info("sweeper_stopped")

    async def _loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("sweep_failed")
            await _interruptible_sleep(self._interval, self._shutdown)


async def _interruptible_sleep(seconds: float, event: asyncio.Event) -> None:
    """Sleep for *seconds* but wake early if *event* is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
