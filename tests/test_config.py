from __future__ import annotations

from pathlib import Path

import pytest

from fieldtrack.config import load_settings_from_env
from fieldtrack.errors import ConfigError, SensorUnavailable
from fieldtrack.sensors import (
    FixedSensorSource,
    MockSensorSource,
    SensorConfig,
    build_sensor_source,
    load_sensor_config,
    read_sysfs_battery_level,
)

_ENV_VARS = [
    "FIELDTRACK_DEVICE_ID",
    "FIELDTRACK_REMOTE_URL",
    "FIELDTRACK_REMOTE_KEY",
    "FIELDTRACK_REMOTE_TABLE",
    "FIELDTRACK_STORE_BACKEND",
    "FIELDTRACK_STORE_PATH",
    "FIELDTRACK_DEADLETTER_PATH",
    "FIELDTRACK_INTERVAL_S",
    "FIELDTRACK_REACHABILITY_URL",
    "FIELDTRACK_CHECK_REACHABILITY",
    "FIELDTRACK_LOG_FORMAT",
    "FIELDTRACK_SENSOR_BACKEND",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_env() -> None:
    settings = load_settings_from_env()

    assert settings.device_id == "device-001"
    assert settings.store_backend == "sqlite"
    assert settings.store_path.endswith(".sqlite")
    assert settings.sqlite_synchronous == "FULL"
    assert settings.interval_s == 60.0
    assert settings.position_timeout_s == 10.0
    assert settings.insert_timeout_s == 15.0
    assert settings.reachability_url is None
    assert not settings.remote_configured


def test_file_backend_defaults_to_json_path(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIELDTRACK_STORE_BACKEND", "FILE")
    settings = load_settings_from_env()
    assert settings.store_backend == "file"
    assert settings.store_path.endswith(".json")


def test_deadletter_defaults_per_device_and_can_be_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIELDTRACK_DEVICE_ID", "truck-7")
    assert load_settings_from_env().deadletter_path == "./fieldtrack_deadletter_truck-7.jsonl"

    monkeypatch.setenv("FIELDTRACK_DEADLETTER_PATH", "off")
    assert load_settings_from_env().deadletter_path is None


def test_remote_url_and_key_must_be_set_together(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIELDTRACK_REMOTE_URL", "https://project.example.co")
    with pytest.raises(ConfigError):
        load_settings_from_env()

    monkeypatch.setenv("FIELDTRACK_REMOTE_KEY", "anon-key")
    assert load_settings_from_env().remote_configured


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("FIELDTRACK_INTERVAL_S", "soon"),
        ("FIELDTRACK_INTERVAL_S", "0"),
        ("FIELDTRACK_STORE_BACKEND", "redis"),
        ("FIELDTRACK_LOG_FORMAT", "xml"),
        ("FIELDTRACK_CHECK_REACHABILITY", "maybe"),
    ],
)
def test_invalid_values_raise_config_error(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigError):
        load_settings_from_env()


def test_check_reachability_uses_default_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIELDTRACK_CHECK_REACHABILITY", "true")
    assert load_settings_from_env().reachability_url == "https://www.gstatic.com/generate_204"

    monkeypatch.setenv("FIELDTRACK_REACHABILITY_URL", "http://gateway.local/ping")
    assert load_settings_from_env().reachability_url == "http://gateway.local/ping"


def test_sensor_config_defaults_to_mock_backend() -> None:
    config = load_sensor_config(None)
    assert config.backend == "mock"
    assert isinstance(build_sensor_source(device_id="dev-1", config=config), MockSensorSource)


def test_sensor_config_loads_fixed_backend_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "sensors.yaml"
    path.write_text(
        "\n".join(
            [
                "backend: fixed",
                "settings:",
                "  latitude: 43.26",
                "  longitude: -2.93",
                "  altitude: 19",
            ]
        ),
        encoding="utf-8",
    )

    source = build_sensor_source(device_id="dev-1", config=load_sensor_config(str(path)))

    assert isinstance(source, FixedSensorSource)
    position = source.get_position(1.0)
    assert (position.latitude, position.longitude, position.altitude) == (43.26, -2.93, 19.0)


def test_sensor_config_rejects_bad_documents(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_sensor_config(str(tmp_path / "missing.yaml"))

    listing = tmp_path / "list.yaml"
    listing.write_text("- mock\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_sensor_config(str(listing))

    with pytest.raises(ConfigError):
        build_sensor_source(device_id="dev-1", config=SensorConfig(backend="gps-hat"))

    with pytest.raises(ConfigError):
        build_sensor_source(device_id="dev-1", config=SensorConfig(backend="fixed", settings={"latitude": 1}))


def test_mock_sensor_is_deterministic_per_device() -> None:
    clock = {"t": 1_000.0}
    a = MockSensorSource(device_id="dev-1", time_fn=lambda: clock["t"])
    b = MockSensorSource(device_id="dev-1", time_fn=lambda: clock["t"])
    clock["t"] += 600.0

    pa = a.get_position(1.0)
    pb = b.get_position(1.0)
    assert (pa.latitude, pa.longitude) == (pb.latitude, pb.longitude)
    assert (pa.latitude, pa.longitude) != (40.4168, -3.7038)
    assert a.get_battery_level() == 99


def test_sysfs_battery_reader(tmp_path: Path) -> None:
    with pytest.raises(SensorUnavailable):
        read_sysfs_battery_level(tmp_path)

    (tmp_path / "BAT0").mkdir()
    (tmp_path / "BAT0" / "capacity").write_text("76\n", encoding="utf-8")
    assert read_sysfs_battery_level(tmp_path) == 76
