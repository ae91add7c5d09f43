from __future__ import annotations

import hashlib
import math
import os
import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

import yaml

from .errors import ConfigError, SensorUnavailable

_VALID_BACKENDS = {"mock", "fixed"}

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float
    altitude: float | None = None
    speed: float | None = None


class SensorSource(Protocol):
    """Position + battery acquisition. Failures raise SensorUnavailable."""

    def get_position(self, timeout_s: float) -> Position: ...

    def get_battery_level(self) -> int: ...


def read_sysfs_battery_level(power_supply_dir: Path = Path("/sys/class/power_supply")) -> int:
    """Return the first battery's capacity percentage."""

    try:
        candidates = sorted(power_supply_dir.glob("BAT*"))
    except OSError as exc:
        raise SensorUnavailable(f"cannot list {power_supply_dir}: {exc}") from exc
    for battery_dir in candidates:
        try:
            return int((battery_dir / "capacity").read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            continue
    raise SensorUnavailable(f"no readable battery under {power_supply_dir}")


class MockSensorSource:
    """Deterministic simulated device walking around a start point.

    Heading, speed and battery drain are seeded from device_id so repeated
    runs produce the same trail.
    """

    def __init__(
        self,
        *,
        device_id: str,
        start_latitude: float = 40.4168,
        start_longitude: float = -3.7038,
        time_fn: Callable[[], float] | None = None,
    ) -> None:
        self.device_id = device_id
        self.start_latitude = float(start_latitude)
        self.start_longitude = float(start_longitude)
        self._time_fn = time_fn or time.time
        seed_bytes = hashlib.sha256(device_id.encode("utf-8")).digest()[:8]
        self._rng = random.Random(int.from_bytes(seed_bytes, "big", signed=False))
        self._started_at = self._time_fn()
        self._heading_rad = self._rng.uniform(0.0, 2.0 * math.pi)
        self._speed_mps = self._rng.uniform(0.5, 2.0)

    def get_position(self, timeout_s: float) -> Position:
        _ = timeout_s
        elapsed = max(0.0, self._time_fn() - self._started_at)
        # Slowly turning walk.
        heading = self._heading_rad + 0.1 * math.sin(elapsed / 600.0)
        distance = self._speed_mps * elapsed
        dlat = (distance * math.cos(heading)) / EARTH_RADIUS_M
        dlon = (distance * math.sin(heading)) / (EARTH_RADIUS_M * math.cos(math.radians(self.start_latitude)))
        return Position(
            latitude=round(self.start_latitude + math.degrees(dlat), 6),
            longitude=round(self.start_longitude + math.degrees(dlon), 6),
            altitude=round(650.0 + 5.0 * math.sin(elapsed / 120.0) + self._rng.uniform(-0.5, 0.5), 1),
            speed=round(max(0.0, self._speed_mps + self._rng.uniform(-0.2, 0.2)), 2),
        )

    def get_battery_level(self) -> int:
        elapsed = max(0.0, self._time_fn() - self._started_at)
        # One percent every ten minutes, recharging after it runs flat.
        return 100 - int(elapsed / 600.0) % 101


@dataclass
class FixedSensorSource:
    """Stationary device at configured coordinates with a sysfs battery."""

    latitude: float
    longitude: float
    altitude: float | None = None
    battery_reader: Callable[[], int] = field(default=read_sysfs_battery_level)

    def get_position(self, timeout_s: float) -> Position:
        _ = timeout_s
        return Position(latitude=self.latitude, longitude=self.longitude, altitude=self.altitude, speed=0.0)

    def get_battery_level(self) -> int:
        return int(self.battery_reader())


@dataclass(frozen=True)
class SensorConfig:
    backend: str
    settings: Mapping[str, Any] = field(default_factory=dict)


def load_sensor_config(path: str | None) -> SensorConfig:
    """Load the sensor YAML; without a path the mock backend is used."""

    if not path:
        return SensorConfig(backend=os.getenv("FIELDTRACK_SENSOR_BACKEND", "mock").strip().lower() or "mock")

    config_path = Path(path).expanduser()
    if not config_path.exists():
        raise ConfigError(f"sensor config does not exist: {config_path}")
    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse sensor config at {config_path}: {exc}") from exc
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"sensor config at {config_path} must be a YAML object")

    backend = str(loaded.get("backend", "mock")).strip().lower()
    settings = loaded.get("settings") or {}
    if not isinstance(settings, dict):
        raise ConfigError("sensor config 'settings' must be a mapping")
    return SensorConfig(backend=backend, settings=dict(settings))


def _float_setting(settings: Mapping[str, Any], key: str, *, default: float | None = None) -> float | None:
    raw = settings.get(key, default)
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"sensor setting {key!r} must be a number") from exc


def build_sensor_source(*, device_id: str, config: SensorConfig) -> SensorSource:
    if config.backend not in _VALID_BACKENDS:
        raise ConfigError(f"unknown sensor backend {config.backend!r}; expected one of {sorted(_VALID_BACKENDS)}")

    settings = config.settings
    if config.backend == "fixed":
        latitude = _float_setting(settings, "latitude")
        longitude = _float_setting(settings, "longitude")
        if latitude is None or longitude is None:
            raise ConfigError("fixed sensor backend requires latitude and longitude")
        return FixedSensorSource(
            latitude=latitude,
            longitude=longitude,
            altitude=_float_setting(settings, "altitude"),
        )

    return MockSensorSource(
        device_id=device_id,
        start_latitude=_float_setting(settings, "start_latitude", default=40.4168) or 0.0,
        start_longitude=_float_setting(settings, "start_longitude", default=-3.7038) or 0.0,
    )
