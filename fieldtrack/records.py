from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Union

from .errors import PersistenceCorrupt, SensorUnavailable

SAVED_LOCALLY_KEY = "savedLocally"

_INT_TEXT_RE = re.compile(r"^[+-]?\d+$")
# Some platforms render negative dBm values with the typographic minus sign.
_MINUS_SIGNS = ("−", "‒", "–", "﹣", "－")


@dataclass(frozen=True)
class RawReadings:
    latitude: float
    longitude: float
    battery_level: int
    signal_text: str = ""
    altitude: float | None = None
    speed: float | None = None


@dataclass(frozen=True)
class TelemetryRecord:
    latitude: float
    longitude: float
    battery_level: int
    timestamp: datetime
    altitude: float | None = None
    speed: float | None = None
    signal_level: int | None = None
    saved_locally: datetime | None = None

    def with_saved_locally(self, at: datetime) -> "TelemetryRecord":
        return replace(self, saved_locally=at)

    def to_payload(self) -> Dict[str, Any]:
        """Remote-store shape. Never carries savedLocally."""

        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "altitude": self.altitude,
            "speed": self.speed,
            "battery": self.battery_level,
            "signal": self.signal_level,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class DegradedRecord:
    """Placeholder written when sensor acquisition failed mid-cycle."""

    timestamp: datetime
    error: str
    saved_locally: datetime | None = None

    def with_saved_locally(self, at: datetime) -> "DegradedRecord":
        return replace(self, saved_locally=at)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "latitude": 0.0,
            "longitude": 0.0,
            "altitude": None,
            "speed": None,
            "battery": 0,
            "signal": None,
            "timestamp": self.timestamp.isoformat(),
            "error": self.error,
        }


Record = Union[TelemetryRecord, DegradedRecord]


@dataclass(frozen=True)
class InvalidEntry:
    raw: str
    reason: str


def parse_signal_text(text: str | None) -> int | None:
    """Parse a textual signal strength. Anything but a bare integer is None."""

    if text is None:
        return None
    candidate = str(text).strip()
    for sign in _MINUS_SIGNS:
        candidate = candidate.replace(sign, "-")
    if not _INT_TEXT_RE.match(candidate):
        return None
    return int(candidate)


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(out) or math.isinf(out):
        return None
    return out


def _clamp_battery(value: Any) -> int:
    try:
        level = int(round(float(value)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, level))


def normalize_record(readings: RawReadings, *, timestamp: datetime) -> TelemetryRecord:
    """Build the canonical record from raw sensor readings.

    Pure: the capture time is an input, and a malformed signal text only
    produces an absent signal level. Raises SensorUnavailable when a
    coordinate is missing or not finite.
    """

    latitude = _optional_float(readings.latitude)
    longitude = _optional_float(readings.longitude)
    if latitude is None or longitude is None:
        raise SensorUnavailable(
            f"position is not a finite coordinate pair: ({readings.latitude!r}, {readings.longitude!r})"
        )

    return TelemetryRecord(
        latitude=latitude,
        longitude=longitude,
        altitude=_optional_float(readings.altitude),
        speed=_optional_float(readings.speed),
        battery_level=_clamp_battery(readings.battery_level),
        signal_level=parse_signal_text(readings.signal_text),
        timestamp=timestamp,
    )


def serialize_record(record: Record) -> str:
    payload = record.to_payload()
    if record.saved_locally is not None:
        payload[SAVED_LOCALLY_KEY] = record.saved_locally.isoformat()
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def parse_dt(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _required_float(payload: Mapping[str, Any], key: str) -> float:
    value = _optional_float(payload.get(key))
    if value is None:
        raise PersistenceCorrupt(f"missing or non-numeric {key!r}")
    return value


def record_from_payload(payload: Mapping[str, Any]) -> Record:
    ts_raw = payload.get("timestamp")
    if not isinstance(ts_raw, str) or not ts_raw.strip():
        raise PersistenceCorrupt("missing timestamp")
    try:
        timestamp = parse_dt(ts_raw)
        saved_raw = payload.get(SAVED_LOCALLY_KEY)
        saved_locally = parse_dt(saved_raw) if isinstance(saved_raw, str) and saved_raw.strip() else None
    except ValueError as exc:
        raise PersistenceCorrupt(f"bad timestamp: {exc}") from exc

    error = payload.get("error")
    if error is not None:
        return DegradedRecord(timestamp=timestamp, error=str(error), saved_locally=saved_locally)

    signal = payload.get("signal")
    if signal is not None and (isinstance(signal, bool) or not isinstance(signal, int)):
        signal = parse_signal_text(str(signal))

    return TelemetryRecord(
        latitude=_required_float(payload, "latitude"),
        longitude=_required_float(payload, "longitude"),
        altitude=_optional_float(payload.get("altitude")),
        speed=_optional_float(payload.get("speed")),
        battery_level=_clamp_battery(payload.get("battery")),
        signal_level=signal,
        timestamp=timestamp,
        saved_locally=saved_locally,
    )


def parse_entry(raw: str) -> Record | InvalidEntry:
    """Decode one stored entry; corrupt data becomes an InvalidEntry."""

    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        return InvalidEntry(raw=str(raw), reason=f"invalid json: {exc}")
    if not isinstance(payload, dict):
        return InvalidEntry(raw=raw, reason="entry is not an object")
    try:
        return record_from_payload(payload)
    except PersistenceCorrupt as exc:
        return InvalidEntry(raw=raw, reason=str(exc))
