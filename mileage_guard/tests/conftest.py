"""Shared pytest fixtures for mileage_guard tests."""

from __future__ import annotations

from typing import Generator

import pytest

from mileage_guard.config import PipelineSettings
from mileage_guard.store import BatchStore, InMemoryBatchStore
from mileage_guard.tests.factories import FrozenClock, make_settings


@pytest.fixture(autouse=True)
def _reset_scenario_cache() -> Generator[None, None, None]:
    """Clear the simulation scenario cache between tests.

    Prevents mutable global state from leaking across tests if any
    test were to mutate the loaded scenario data.
    """
    from mileage_guard import simulation

    simulation._scenarios_cache = None
    yield
    simulation._scenarios_cache = None


@pytest.fixture()
def settings() -> PipelineSettings:
    return make_settings()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture(params=["memory", "sqlite"])
def store(request) -> Generator[BatchStore, None, None]:
    """Each store implementation in turn."""
    if request.param == "memory":
        backend: BatchStore = InMemoryBatchStore()
    else:
        from mileage_guard.store.sql import SqlBatchStore

        backend = SqlBatchStore.from_url("sqlite://")
    yield backend
    backend.close()
