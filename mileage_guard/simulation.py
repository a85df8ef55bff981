"""Fixture-based device simulator (no hardware required).

Loads scenarios from ``fixtures/simulation_scenarios.json`` and turns each
into the sequence of JSON payloads an ESP32 OBD device would POST to
``/v1/device/status``.  Gaussian noise on the signals keeps consecutive
readings realistic; a seed makes a run reproducible.

Scenario events:

* ``set_mileage``        -- odometer jumps to an absolute value (rollback).
* ``add_mileage``        -- ``km`` added between two readings (impossible jump).
* ``swap_with_previous`` -- the reading is delivered before its predecessor.
"""

from __future__ import annotations

import json
import random
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import structlog

from mileage_guard.errors import InvalidPayloadError
from mileage_guard.pipeline import IngestionService
from mileage_guard.schemas import utcnow

logger = structlog.get_logger(__name__)

_FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"
_ENDPOINT_PATH = "/v1/device/status"


class DeviceSimulator:
    """Generates device payloads for one named scenario."""

    def __init__(
        self,
        scenario: str = "normal_trip",
        *,
        device_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        seed: Optional[int] = None,
    ) -> None:
        scenarios = _load_scenarios()
        if scenario not in scenarios:
            available = ", ".join(sorted(scenarios))
            raise ValueError(
                f"Unknown simulation scenario '{scenario}'. Available: {available}"
            )
        self.scenario_name = scenario
        self._scenario: Dict[str, Any] = scenarios[scenario]
        self.device_id = device_id or f"SIM-{scenario.upper()}"
        self._start_time = start_time
        self._rng = random.Random(seed)

    @property
    def description(self) -> str:
        return self._scenario.get("description", "")

    def payloads(self) -> List[Dict[str, Any]]:
        """Build the full payload sequence, in delivery order."""
        scenario = self._scenario
        count = int(scenario["readings"])
        interval = float(scenario["interval_seconds"])
        signals: Dict[str, Dict[str, float]] = scenario.get("signals", {})
        events = {int(e["at"]): e for e in scenario.get("events", [])}
        start = self._start_time or utcnow() - timedelta(seconds=interval * count)

        odometer = float(scenario["start_mileage"])
        payloads: List[Dict[str, Any]] = []
        for index in range(count):
            values = {
                name: self._apply_noise(shape["base"], shape.get("noise", 0.0))
                for name, shape in signals.items()
            }
            if index > 0:
                odometer += values.get("speed", 0.0) * interval / 3600.0

            event = events.get(index)
            if event is not None and event["type"] == "set_mileage":
                odometer = float(event["mileage"])
            elif event is not None and event["type"] == "add_mileage":
                odometer += float(event["km"])

            last = index == count - 1
            timestamp = start + timedelta(seconds=interval * index)
            payload: Dict[str, Any] = {
                "deviceID": self.device_id,
                "vin": scenario.get("vin"),
                "status": "trip_end" if last and scenario.get("trip_end") else "active",
                "timestamp": int(timestamp.timestamp() * 1000),
                "mileage": int(odometer),
                "dataSource": "OBD",
                **values,
            }
            if last and scenario.get("trip_end"):
                payload["tripEnd"] = True
            payloads.append(payload)

            if event is not None and event["type"] == "swap_with_previous" and index > 0:
                payloads[-1], payloads[-2] = payloads[-2], payloads[-1]

        return payloads

    def _apply_noise(self, base: float, noise: float) -> float:
        """Gaussian noise (std-dev = *noise*), clamped to >= 0."""
        if noise <= 0:
            return base
        return round(max(0.0, base + self._rng.gauss(0, noise)), 2)


async def run_local(
    simulator: DeviceSimulator, service: IngestionService
) -> List[Dict[str, Any]]:
    """Feed the scenario straight into an in-process ingestion service."""
    results: List[Dict[str, Any]] = []
    for payload in simulator.payloads():
        try:
            ingested = await service.ingest(payload)
        except InvalidPayloadError as exc:
            results.append({"mileage": payload.get("mileage"), "error": exc.message})
            continue
        results.append(
            {
                "mileage": ingested.reading.mileage,
                "outcome": ingested.outcome,
                "validationStatus": ingested.result.status.value,
                "batchId": ingested.batch_id,
                "batchStatus": ingested.batch.status.value if ingested.batch else None,
            }
        )
    logger.info(
        "simulation_completed",
        scenario=simulator.scenario_name,
        device_id=simulator.device_id,
        readings=len(results),
    )
    return results


async def run_http(
    simulator: DeviceSimulator,
    base_url: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> List[Dict[str, Any]]:
    """POST the scenario to a running API."""
    url = f"{base_url.rstrip('/')}{_ENDPOINT_PATH}"
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10.0)
    results: List[Dict[str, Any]] = []
    try:
        for payload in simulator.payloads():
            try:
                response = await client.post(url, json=payload)
            except httpx.RequestError as exc:
                logger.warning("simulation_post_failed", url=url, error=str(exc))
                results.append({"mileage": payload["mileage"], "error": str(exc)})
                continue
            body = response.json() if response.content else {}
            results.append(
                {
                    "mileage": payload["mileage"],
                    "http_status": response.status_code,
                    "outcome": body.get("status"),
                    "validationStatus": body.get("validationStatus"),
                    "batchId": body.get("batchId"),
                    "batchStatus": body.get("batchStatus"),
                }
            )
    finally:
        if owns_client:
            await client.aclose()
    logger.info(
        "simulation_completed",
        scenario=simulator.scenario_name,
        device_id=simulator.device_id,
        readings=len(results),
        url=url,
    )
    return results


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_scenarios_cache: Optional[Dict[str, Any]] = None


def _load_scenarios() -> Dict[str, Any]:
    global _scenarios_cache
    if _scenarios_cache is None:
        path = _FIXTURES_DIR / "simulation_scenarios.json"
        with open(path, encoding="utf-8") as fh:
            _scenarios_cache = json.load(fh)
    return _scenarios_cache


def available_scenarios() -> List[str]:
    return sorted(_load_scenarios())
