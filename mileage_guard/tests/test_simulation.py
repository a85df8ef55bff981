"""Tests for mileage_guard.simulation -- DeviceSimulator and runners."""

from __future__ import annotations

import httpx
import pytest
import respx

from mileage_guard.normalizer import normalize_payload
from mileage_guard.pipeline import IngestionService
from mileage_guard.schemas import BatchStatus
from mileage_guard.simulation import (
    DeviceSimulator,
    available_scenarios,
    run_http,
    run_local,
)
from mileage_guard.store import InMemoryBatchStore
from mileage_guard.tests.factories import T0, make_settings


def _service() -> IngestionService:
    return IngestionService(InMemoryBatchStore(), make_settings())


def test_available_scenarios() -> None:
    assert available_scenarios() == [
        "impossible_jump",
        "low_quality",
        "normal_trip",
        "out_of_order",
        "rollback",
    ]


def test_unknown_scenario_raises() -> None:
    with pytest.raises(ValueError, match="Unknown simulation scenario"):
        DeviceSimulator("nonexistent")


def test_payloads_are_valid_device_payloads() -> None:
    sim = DeviceSimulator("normal_trip", start_time=T0, seed=1)
    payloads = sim.payloads()
    assert len(payloads) == 20
    for raw in payloads:
        normalize_payload(raw)
    assert payloads[0]["deviceID"] == "SIM-NORMAL_TRIP"
    assert payloads[-1]["tripEnd"] is True
    assert payloads[-1]["status"] == "trip_end"
    assert sim.description


def test_seed_makes_runs_reproducible() -> None:
    a = DeviceSimulator("normal_trip", start_time=T0, seed=42).payloads()
    b = DeviceSimulator("normal_trip", start_time=T0, seed=42).payloads()
    assert a == b


def test_rollback_event_sets_mileage() -> None:
    payloads = DeviceSimulator("rollback", start_time=T0, seed=3).payloads()
    assert payloads[4]["mileage"] > 45000
    assert payloads[5]["mileage"] == 82


def test_swap_event_reorders_delivery() -> None:
    payloads = DeviceSimulator("out_of_order", start_time=T0).payloads()
    stamps = [p["timestamp"] for p in payloads]
    assert stamps[3] > stamps[4]
    assert sorted(stamps) != stamps


@pytest.mark.asyncio
async def test_normal_trip_validates() -> None:
    service = _service()
    results = await run_local(DeviceSimulator("normal_trip", seed=7), service)
    assert all(r["validationStatus"] == "VALID" for r in results)
    assert results[-1]["batchStatus"] == BatchStatus.VALIDATED.value


@pytest.mark.asyncio
async def test_rollback_trip_is_rejected() -> None:
    service = _service()
    results = await run_local(DeviceSimulator("rollback", seed=7), service)
    assert results[5]["validationStatus"] == "ROLLBACK_DETECTED"
    assert results[5]["outcome"] == "rejected"
    assert results[-1]["batchStatus"] == BatchStatus.REJECTED.value


@pytest.mark.asyncio
async def test_impossible_jump_is_rejected() -> None:
    service = _service()
    results = await run_local(DeviceSimulator("impossible_jump", seed=7), service)
    assert results[3]["validationStatus"] == "IMPOSSIBLE_DISTANCE"
    assert results[-1]["batchStatus"] == BatchStatus.REJECTED.value


@pytest.mark.asyncio
async def test_low_quality_trip_still_validates() -> None:
    service = _service()
    results = await run_local(DeviceSimulator("low_quality", seed=7), service)
    assert results[-1]["batchStatus"] == BatchStatus.VALIDATED.value
    batch = service.store.get_batch(results[-1]["batchId"])
    assert "LowDataQuality" in batch.validation.anomalies


@pytest.mark.asyncio
async def test_out_of_order_trip_stays_open() -> None:
    service = _service()
    results = await run_local(DeviceSimulator("out_of_order"), service)
    assert all(r["validationStatus"] == "VALID" for r in results)
    batch = service.store.get_active_batch("SIM-OUT_OF_ORDER")
    assert batch is not None
    assert sum(1 for r in batch.readings if r.out_of_order) == 1
    stamps = [r.timestamp for r in batch.readings]
    assert stamps == sorted(stamps)


@pytest.mark.asyncio
@respx.mock
async def test_run_http_posts_every_payload() -> None:
    route = respx.post("http://test-api:8000/v1/device/status").mock(
        return_value=httpx.Response(
            200,
            json={"status": "accepted", "validationStatus": "VALID", "batchId": "B1"},
        )
    )
    sim = DeviceSimulator("out_of_order", device_id="SIM-HTTP")
    results = await run_http(sim, "http://test-api:8000/")
    assert route.call_count == 6
    assert all(r["http_status"] == 200 for r in results)
    assert results[0]["batchId"] == "B1"


@pytest.mark.asyncio
@respx.mock
async def test_run_http_records_connection_errors() -> None:
    respx.post("http://test-api:8000/v1/device/status").mock(
        side_effect=httpx.ConnectError("Connection refused")
    )
    results = await run_http(DeviceSimulator("out_of_order"), "http://test-api:8000")
    assert len(results) == 6
    assert all("error" in r for r in results)
