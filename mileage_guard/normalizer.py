"""Canonicalise raw device payloads into :class:`DeviceReading`.

This is the only place a payload is validated.  Downstream components
receive a tagged ``DeviceReading`` and never re-check its fields.

Accepted identifier / mileage aliases follow what deployed ESP32 firmware
sends: ``deviceID`` (or ``deviceId`` / ``device_id``) and ``mileage`` (or
the legacy ``currentMileage`` / ``newMileage``).
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from mileage_guard.errors import InvalidPayloadError
from mileage_guard.schemas import DataSource, DeviceReading, ensure_utc, utcnow

_DEVICE_ID_KEYS = ("deviceId", "deviceID", "device_id")
_MILEAGE_KEYS = ("mileage", "currentMileage", "newMileage")

# payload key -> DeviceReading field
_OPTIONAL_SIGNALS: Dict[str, str] = {
    "speed": "speed",
    "rpm": "rpm",
    "engineTemp": "engine_temp",
    "fuelLevel": "fuel_level",
    "batteryVoltage": "battery_voltage",
    "dataQuality": "data_quality",
    "signalQuality": "data_quality",
}

_CONSUMED_KEYS = frozenset(
    _DEVICE_ID_KEYS
    + _MILEAGE_KEYS
    + tuple(_OPTIONAL_SIGNALS)
    + ("status", "timestamp", "vin", "dataSource", "tripEnd", "validationStatus")
)

_TRIP_END_STATUSES = frozenset({"trip_end", "ignition_off"})

# Epoch values above this are milliseconds (year ~5138 in seconds).
_EPOCH_MS_THRESHOLD = 1e11


def normalize_payload(
    raw: Mapping[str, Any],
    *,
    received_at: Optional[datetime] = None,
) -> DeviceReading:
    """Validate *raw* and return a :class:`DeviceReading`.

    Raises
    ------
    InvalidPayloadError
        Naming every missing or malformed field, so a device can fix all of
        them in one round trip.
    """
    if not isinstance(raw, Mapping):
        raise InvalidPayloadError(["payload (expected a JSON object)"])

    errors: List[str] = []

    device_id = _first_present(raw, _DEVICE_ID_KEYS)
    if not isinstance(device_id, str) or not device_id.strip():
        errors.append("deviceID (empty or missing)")

    status = raw.get("status")
    if not isinstance(status, str) or not status.strip():
        errors.append("status (empty or missing)")

    timestamp, ts_error = _parse_timestamp(raw.get("timestamp"))
    if ts_error:
        errors.append(ts_error)

    mileage, mileage_error = _parse_mileage(_first_present(raw, _MILEAGE_KEYS))
    if mileage_error:
        errors.append(mileage_error)

    signals: Dict[str, float] = {}
    for key, field_name in _OPTIONAL_SIGNALS.items():
        if raw.get(key) is None or field_name in signals:
            continue
        value = _as_float(raw[key])
        if value is None:
            errors.append(f"{key} (not a number)")
        else:
            signals[field_name] = value

    vin = raw.get("vin")
    if vin is not None and not isinstance(vin, str):
        errors.append("vin (not a string)")

    if errors:
        raise InvalidPayloadError(errors)

    status_text = status.strip()
    return DeviceReading(
        device_id=device_id.strip(),
        vin=vin.strip().upper() if vin and vin.strip() else None,
        mileage=mileage,
        timestamp=timestamp,
        received_at=received_at or utcnow(),
        status=status_text,
        data_source=_parse_data_source(raw.get("dataSource")),
        trip_end=_is_trip_end(raw, status_text),
        extras={k: v for k, v in raw.items() if k not in _CONSUMED_KEYS},
        **signals,
    )


# ---------------------------------------------------------------------------
# Field coercion helpers
# ---------------------------------------------------------------------------


def _first_present(raw: Mapping[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _as_float(value: Any) -> Optional[float]:
    """Coerce numbers and numeric strings; reject bools and non-finite values."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _parse_mileage(value: Any) -> Tuple[Optional[int], Optional[str]]:
    if value is None:
        return None, "mileage (missing)"
    number = _as_float(value)
    if number is None:
        return None, "mileage (not a number)"
    if number < 0:
        return None, "mileage (negative)"
    if not number.is_integer():
        return None, "mileage (not an integer)"
    return int(number), None


def _parse_timestamp(value: Any) -> Tuple[Optional[datetime], Optional[str]]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None, "timestamp (missing)"
    if isinstance(value, datetime):
        return ensure_utc(value), None
    if isinstance(value, str):
        text = value.strip()
        number = _as_float(text)
        if number is None:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None, "timestamp (unparseable)"
            return ensure_utc(parsed), None
    else:
        number = _as_float(value)
        if number is None:
            return None, "timestamp (not a number or ISO-8601 string)"
    if number < 0:
        return None, "timestamp (negative)"
    seconds = number / 1000.0 if number > _EPOCH_MS_THRESHOLD else number
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc), None
    except (OverflowError, OSError, ValueError):
        return None, "timestamp (out of range)"


def _parse_data_source(value: Any) -> DataSource:
    if not isinstance(value, str):
        return DataSource.UNKNOWN
    text = value.strip().lower()
    try:
        return DataSource(text)
    except ValueError:
        pass
    if "obd" in text:
        return DataSource.OBD
    return DataSource.UNKNOWN


def _is_trip_end(raw: Mapping[str, Any], status: str) -> bool:
    if raw.get("tripEnd") is True:
        return True
    if status.lower() in _TRIP_END_STATUSES:
        return True
    return raw.get("validationStatus") == "trip_end"
