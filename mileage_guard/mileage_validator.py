"""Per-reading mileage validation against a vehicle's trusted history.

This is the fast path: it runs on every reading, under the per-vehicle
lock, and is the only writer of :class:`VehicleHistory`.  The batch-level
verdict is the :mod:`~mileage_guard.fraud_scorer`'s job.

Classification, in order:

1. No trusted history  -> ``VALID``, delta 0; the reading seeds the history.
2. ``delta < 0``       -> ``ROLLBACK_DETECTED``.
3. ``delta == 0``      -> ``VALID``.
4. No usable interval since the trusted reading -> ``PENDING``.
5. Faster than ``max_plausible_speed_kmh`` on average -> ``IMPOSSIBLE_DISTANCE``.
6. Rate well above the vehicle's trailing average -> ``SUSPICIOUS``.
7. Otherwise ``VALID``.

Only a ``VALID`` forward move (or the first reading) advances the trusted
mileage.  A stationary reading leaves ``trusted_at`` where the current
value was first seen, so the next increment is timed from there.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Tuple

import structlog

from mileage_guard.config import Thresholds
from mileage_guard.locks import retry_on_conflict
from mileage_guard.schemas import (
    DeviceReading,
    ValidationResult,
    ValidationStatus,
    VehicleHistory,
)
from mileage_guard.store.base import BatchStore

logger = structlog.get_logger(__name__)

VehicleResolver = Callable[[DeviceReading], Optional[str]]


def resolve_by_vin(reading: DeviceReading) -> Optional[str]:
    """Default vehicle resolver: the reading's VIN, when it carries one."""
    return reading.vin


def vehicle_key_for(reading: DeviceReading, vehicle_id: Optional[str]) -> str:
    """Key of the trusted history a reading is checked against.

    Readings from a device with no linked vehicle are tracked per device.
    """
    return vehicle_id if vehicle_id else f"device:{reading.device_id}"


def _severity(ratio: float) -> float:
    """Map how far past a limit a value is (``ratio >= 1``) onto 0.5..1.0."""
    return round(min(1.0, 0.5 + 0.5 * (ratio - 1.0)), 4)


def classify(
    reading: DeviceReading,
    history: Optional[VehicleHistory],
    thresholds: Thresholds,
) -> Tuple[ValidationResult, Optional[float]]:
    """Pure classification step.

    Returns the result and, for a VALID forward move, the implied km/h rate
    to record in the trailing window.
    """
    reported = reading.mileage

    if history is None:
        return (
            ValidationResult(
                reported_mileage=reported,
                previous_mileage=reported,
                delta=0,
                flagged=False,
                status=ValidationStatus.VALID,
                reason="First reading for vehicle; establishes trusted mileage",
            ),
            None,
        )

    previous = history.trusted_mileage
    delta = reported - previous
    elapsed = (reading.timestamp - history.trusted_at).total_seconds()

    def result(status: ValidationStatus, reason: str, severity: float = 0.0):
        return ValidationResult(
            reported_mileage=reported,
            previous_mileage=previous,
            delta=delta,
            flagged=status
            in (
                ValidationStatus.ROLLBACK_DETECTED,
                ValidationStatus.IMPOSSIBLE_DISTANCE,
                ValidationStatus.SUSPICIOUS,
            ),
            status=status,
            reason=reason,
            severity=severity,
            elapsed_seconds=elapsed,
        )

    if delta < 0:
        return (
            result(
                ValidationStatus.ROLLBACK_DETECTED,
                f"Mileage rollback detected: {reported} km < trusted {previous} km "
                f"(delta {delta} km)",
                severity=1.0,
            ),
            None,
        )

    if delta == 0:
        return result(ValidationStatus.VALID, "No mileage change"), None

    if elapsed <= 0:
        return (
            result(
                ValidationStatus.PENDING,
                f"Mileage increased by {delta} km with no elapsed time since the "
                "trusted reading; awaiting a later reading",
            ),
            None,
        )

    hours = elapsed / 3600.0
    bound = thresholds.max_plausible_speed_kmh * hours
    if delta > bound:
        return (
            result(
                ValidationStatus.IMPOSSIBLE_DISTANCE,
                f"Impossible distance: {delta} km in {hours:.2f} h exceeds "
                f"{bound:.1f} km at {thresholds.max_plausible_speed_kmh:g} km/h",
                severity=_severity(delta / bound),
            ),
            None,
        )

    rate = delta / hours
    samples = history.recent_rates
    if len(samples) >= thresholds.suspicious_min_history:
        average = sum(samples) / len(samples)
        limit = thresholds.suspicious_rate_multiplier * average
        if average > 0 and rate > limit:
            return (
                result(
                    ValidationStatus.SUSPICIOUS,
                    f"Unusual mileage rate: {rate:.1f} km/h is more than "
                    f"{thresholds.suspicious_rate_multiplier:g}x the recent "
                    f"average of {average:.1f} km/h",
                    severity=_severity(rate / limit),
                ),
                None,
            )

    return result(ValidationStatus.VALID, f"Plausible increase of {delta} km"), rate


class MileageValidator:
    """Classifies readings and maintains each vehicle's trusted mileage."""

    def __init__(self, store: BatchStore) -> None:
        self._store = store

    def validate_reading(
        self,
        reading: DeviceReading,
        vehicle_key: str,
        thresholds: Thresholds,
    ) -> ValidationResult:
        """Classify *reading* and, if it is a VALID move, advance the trusted history.

        The caller holds the per-vehicle lock; the compare-and-set write
        still guards against another process sharing the store.
        """

        def _attempt() -> ValidationResult:
            history = self._store.get_vehicle_history(vehicle_key)
            outcome, rate = classify(reading, history, thresholds)
            if outcome.status == ValidationStatus.VALID and (
                history is None or outcome.delta > 0
            ):
                self._advance(vehicle_key, history, reading, rate, thresholds)
            return outcome

        outcome = retry_on_conflict(_attempt, what="vehicle_history")

        log = logger.warning if outcome.flagged else logger.debug
        log(
            "reading_validated",
            vehicle_key=vehicle_key,
            device_id=reading.device_id,
            status=outcome.status.value,
            delta=outcome.delta,
            severity=outcome.severity,
        )
        return outcome

    def trusted_mileage(self, vehicle_key: str) -> Optional[int]:
        history = self._store.get_vehicle_history(vehicle_key)
        return history.trusted_mileage if history else None

    # -- internal -----------------------------------------------------------

    def _advance(
        self,
        vehicle_key: str,
        history: Optional[VehicleHistory],
        reading: DeviceReading,
        rate: Optional[float],
        thresholds: Thresholds,
    ) -> None:
        if history is None:
            self._store.save_vehicle_history(
                VehicleHistory(
                    vehicle_key=vehicle_key,
                    trusted_mileage=reading.mileage,
                    trusted_at=reading.timestamp,
                )
            )
            return

        rates = list(history.recent_rates)
        if rate is not None:
            rates.append(round(rate, 3))
            rates = rates[-thresholds.trailing_window :]
        trusted_at: datetime = max(history.trusted_at, reading.timestamp)
        self._store.save_vehicle_history(
            history.model_copy(
                update={
                    "trusted_mileage": reading.mileage,
                    "trusted_at": trusted_at,
                    "recent_rates": rates,
                }
            )
        )
