"""Batch-level fraud scoring, run once when a batch closes.

Any rollback inside the batch decides the outcome outright (score 100,
invalid).  Otherwise each rule contributes a partial score:

=============================  ==========================
Rule                           Contribution
=============================  ==========================
impossible distance reading    60 x severity, each
suspicious reading             30 x severity, each
out-of-order reading           5 each
batch distance vs. duration    40
low average data quality       20
=============================  ==========================

The sum is damped by the share of VALID readings, clamped to 0..100 and
compared with ``validity_threshold``.
"""

from __future__ import annotations

from typing import List

import structlog

from mileage_guard.config import Thresholds
from mileage_guard.schemas import (
    BatchValidation,
    TripBatch,
    ValidationRule,
    ValidationStatus,
)

logger = structlog.get_logger(__name__)

IMPOSSIBLE_WEIGHT = 60.0
SUSPICIOUS_WEIGHT = 30.0
OUT_OF_ORDER_WEIGHT = 5.0
UNREALISTIC_TRIP_WEIGHT = 40.0
LOW_QUALITY_WEIGHT = 20.0
ROLLBACK_SCORE = 100.0


class FraudScorer:
    """Computes :class:`BatchValidation` for a closed batch."""

    def score(self, batch: TripBatch, thresholds: Thresholds) -> BatchValidation:
        readings = batch.readings
        rules: List[ValidationRule] = []
        anomalies: List[str] = []

        # -- rollback: decisive ---------------------------------------------
        rolled_back = [
            r for r in readings if r.validation_status == ValidationStatus.ROLLBACK_DETECTED
        ]
        intra_rollback = batch.summary.end_mileage < batch.summary.start_mileage
        rollback = bool(rolled_back) or intra_rollback
        rules.append(
            ValidationRule(
                rule="mileage_rollback",
                passed=not rollback,
                message=(
                    f"{len(rolled_back)} reading(s) below trusted mileage"
                    if rolled_back
                    else "End mileage below start mileage"
                    if intra_rollback
                    else None
                ),
            )
        )
        if rollback:
            anomalies.append("MileageRollback")

        # -- per-reading flags ----------------------------------------------
        score = 0.0
        impossible = [
            r.severity
            for r in readings
            if r.validation_status == ValidationStatus.IMPOSSIBLE_DISTANCE
        ]
        rules.append(
            ValidationRule(
                rule="impossible_distance",
                passed=not impossible,
                message=f"{len(impossible)} reading(s) exceed plausible speed"
                if impossible
                else None,
            )
        )
        if impossible:
            anomalies.append("ImpossibleDistance")
            score += sum(IMPOSSIBLE_WEIGHT * severity for severity in impossible)

        suspicious = [
            r.severity for r in readings if r.validation_status == ValidationStatus.SUSPICIOUS
        ]
        rules.append(
            ValidationRule(
                rule="suspicious_rate",
                passed=not suspicious,
                message=f"{len(suspicious)} reading(s) with unusual mileage rate"
                if suspicious
                else None,
            )
        )
        if suspicious:
            anomalies.append("SuspiciousRate")
            score += sum(SUSPICIOUS_WEIGHT * severity for severity in suspicious)

        out_of_order = sum(1 for r in readings if r.out_of_order)
        rules.append(
            ValidationRule(
                rule="reading_order",
                passed=out_of_order == 0,
                message=f"{out_of_order} reading(s) arrived out of order"
                if out_of_order
                else None,
            )
        )
        if out_of_order:
            anomalies.append("OutOfOrderReading")
            score += OUT_OF_ORDER_WEIGHT * out_of_order

        # -- batch-level checks ---------------------------------------------
        hours = batch.duration_seconds / 3600.0
        max_distance = hours * thresholds.max_plausible_speed_kmh
        distance = batch.summary.mileage_delta
        unrealistic = distance > 0 and distance > max_distance
        rules.append(
            ValidationRule(
                rule="trip_distance",
                passed=not unrealistic,
                message=(
                    f"{distance} km in {hours:.2f} h exceeds "
                    f"{max_distance:.1f} km possible"
                )
                if unrealistic
                else None,
            )
        )
        if unrealistic:
            anomalies.append("UnrealisticTripDistance")
            score += UNREALISTIC_TRIP_WEIGHT

        qualities = [r.data_quality for r in readings if r.data_quality is not None]
        avg_quality = sum(qualities) / len(qualities) if qualities else None
        low_quality = (
            avg_quality is not None and avg_quality < thresholds.low_quality_threshold
        )
        rules.append(
            ValidationRule(
                rule="data_quality",
                passed=not low_quality,
                message=f"Average data quality {avg_quality:.1f} below "
                f"{thresholds.low_quality_threshold:g}"
                if low_quality
                else None,
            )
        )
        if low_quality:
            anomalies.append("LowDataQuality")
            score += LOW_QUALITY_WEIGHT

        # -- verdict --------------------------------------------------------
        if rollback:
            final = ROLLBACK_SCORE
        else:
            valid = sum(1 for r in readings if r.validation_status == ValidationStatus.VALID)
            valid_fraction = valid / len(readings)
            final = score * (1.0 - thresholds.valid_fraction_decay * valid_fraction)
            final = round(max(0.0, min(100.0, final)), 2)

        is_valid = not rollback and final < thresholds.validity_threshold
        logger.info(
            "batch_scored",
            batch_id=batch.batch_id,
            fraud_score=final,
            is_valid=is_valid,
            anomalies=anomalies,
        )
        return BatchValidation(
            is_valid=is_valid,
            fraud_score=final,
            anomalies=anomalies,
            rules=rules,
        )
