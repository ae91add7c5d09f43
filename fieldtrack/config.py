from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

from .errors import ConfigError

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}
_STORE_BACKENDS = {"sqlite", "file"}
_LOG_FORMATS = {"text", "json"}

StoreBackend = Literal["sqlite", "file"]


@dataclass(frozen=True)
class Settings:
    device_id: str

    # Remote store
    remote_url: str | None
    remote_key: str | None
    remote_table: str

    # Local backlog
    store_backend: StoreBackend
    store_path: str
    deadletter_path: str | None
    sqlite_journal_mode: str
    sqlite_synchronous: str

    # Cycle timing
    interval_s: float
    position_timeout_s: float
    insert_timeout_s: float
    signal_fallback_timeout_s: float

    # Host adapters
    wifi_interface: str | None
    reachability_url: str | None
    sensor_config_path: str | None

    # Logging
    log_level: str
    log_format: str

    @property
    def remote_configured(self) -> bool:
        return bool(self.remote_url and self.remote_key)


def _get_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _get_optional_str(name: str) -> str | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    return value or None


def _get_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    norm = raw.strip().lower()
    if norm in _TRUE_VALUES:
        return True
    if norm in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be one of: {sorted(_TRUE_VALUES | _FALSE_VALUES)}")


def _get_positive_float(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return float(default)
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ConfigError(f"{name} must be > 0")
    return parsed


def _get_choice(name: str, *, default: str, allowed: set[str]) -> str:
    value = _get_str(name, default).lower()
    if value not in allowed:
        raise ConfigError(f"{name} must be one of: {sorted(allowed)}")
    return value


def load_settings_from_env() -> Settings:
    store_backend = _get_choice("FIELDTRACK_STORE_BACKEND", default="sqlite", allowed=_STORE_BACKENDS)
    default_store_path = "./fieldtrack_backlog.sqlite" if store_backend == "sqlite" else "./fieldtrack_backlog.json"

    remote_url = _get_optional_str("FIELDTRACK_REMOTE_URL")
    remote_key = _get_optional_str("FIELDTRACK_REMOTE_KEY")
    if bool(remote_url) != bool(remote_key):
        raise ConfigError("FIELDTRACK_REMOTE_URL and FIELDTRACK_REMOTE_KEY must be set together")

    remote_table = _get_str("FIELDTRACK_REMOTE_TABLE", "locations")

    reachability_url = _get_optional_str("FIELDTRACK_REACHABILITY_URL")
    if reachability_url is None and _get_bool("FIELDTRACK_CHECK_REACHABILITY", default=False):
        reachability_url = "https://www.gstatic.com/generate_204"

    device_id = _get_str("FIELDTRACK_DEVICE_ID", "device-001")
    deadletter_path: str | None = _get_str("FIELDTRACK_DEADLETTER_PATH", f"./fieldtrack_deadletter_{device_id}.jsonl")
    if deadletter_path.lower() in ("off", "none"):
        deadletter_path = None

    return Settings(
        device_id=device_id,
        remote_url=remote_url,
        remote_key=remote_key,
        remote_table=remote_table,
        store_backend=store_backend,  # type: ignore[arg-type]
        store_path=_get_str("FIELDTRACK_STORE_PATH", default_store_path),
        deadletter_path=deadletter_path,
        sqlite_journal_mode=_get_str("FIELDTRACK_SQLITE_JOURNAL_MODE", "WAL"),
        sqlite_synchronous=_get_str("FIELDTRACK_SQLITE_SYNCHRONOUS", "FULL"),
        interval_s=_get_positive_float("FIELDTRACK_INTERVAL_S", default=60.0),
        position_timeout_s=_get_positive_float("FIELDTRACK_POSITION_TIMEOUT_S", default=10.0),
        insert_timeout_s=_get_positive_float("FIELDTRACK_INSERT_TIMEOUT_S", default=15.0),
        signal_fallback_timeout_s=_get_positive_float("FIELDTRACK_SIGNAL_FALLBACK_TIMEOUT_S", default=2.0),
        wifi_interface=_get_optional_str("FIELDTRACK_WIFI_INTERFACE"),
        reachability_url=reachability_url,
        sensor_config_path=_get_optional_str("FIELDTRACK_SENSOR_CONFIG_PATH"),
        log_level=_get_str("FIELDTRACK_LOG_LEVEL", "INFO").upper(),
        log_format=_get_choice("FIELDTRACK_LOG_FORMAT", default="text", allowed=_LOG_FORMATS),
    )
