"""Wiring of store, ledger client, pipeline and background workers.

Shared by the API process and the CLI so both run the same object graph.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from mileage_guard.admin import AdminService
from mileage_guard.config import PipelineSettings
from mileage_guard.ledger_client import LedgerClient, create_ledger_client
from mileage_guard.mileage_validator import VehicleResolver, resolve_by_vin
from mileage_guard.pipeline import IngestionService
from mileage_guard.store import BatchStore, create_store
from mileage_guard.submission_manager import SubmissionManager
from mileage_guard.sweeper import Sweeper

logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    settings: PipelineSettings
    store: BatchStore
    submissions: SubmissionManager
    service: IngestionService
    admin: AdminService
    sweeper: Sweeper

    async def start(self, *, background: bool = True) -> None:
        """Start submission workers and, with *background*, the sweep loop."""
        await self.submissions.start()
        # Restart recovery: anything validated but never sent goes first.
        self.submissions.enqueue_pending()
        if background:
            await self.sweeper.start()
        logger.info(
            "runtime_started",
            store=type(self.store).__name__,
            sweeper=background,
        )

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.submissions.stop()
        self.store.close()
        logger.info("runtime_stopped")


def build_runtime(
    settings: Optional[PipelineSettings] = None,
    *,
    store: Optional[BatchStore] = None,
    ledger: Optional[LedgerClient] = None,
    vehicle_resolver: VehicleResolver = resolve_by_vin,
) -> Runtime:
    settings = settings or PipelineSettings()
    store = store or create_store(settings.database_url)
    ledger = ledger or create_ledger_client(settings)
    submissions = SubmissionManager(store, ledger, settings)
    service = IngestionService(
        store,
        settings,
        submissions=submissions,
        vehicle_resolver=vehicle_resolver,
    )
    return Runtime(
        settings=settings,
        store=store,
        submissions=submissions,
        service=service,
        admin=AdminService(service),
        sweeper=Sweeper(service, settings.sweep_interval_seconds),
    )
