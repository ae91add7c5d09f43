from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping


def _utc_iso(ts: float | None = None) -> str:
    dt = datetime.fromtimestamp(ts or time.time(), tz=timezone.utc)
    return dt.isoformat()


# -----------------------------
# Pipeline events
# -----------------------------


@dataclass(frozen=True)
class CycleEvent:
    """One state transition of the delivery pipeline.

    name is one of: collected, degraded, resolved, sent, buffered, dropped,
    drained, cleared.
    """

    name: str
    cycle_id: str | None = None
    fields: Mapping[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=_utc_iso)


EventSink = Callable[[CycleEvent], None]


class LoggingEventSink:
    """Write events to the fieldtrack.events logger as structured records."""

    def __init__(self, logger: logging.Logger | None = None, *, level: int = logging.INFO) -> None:
        self.logger = logger or logging.getLogger("fieldtrack.events")
        self.level = level

    def __call__(self, event: CycleEvent) -> None:
        fields: Dict[str, Any] = dict(event.fields)
        if event.cycle_id:
            fields["cycle_id"] = event.cycle_id
        self.logger.log(
            self.level,
            event.name,
            extra={"fields": fields, "event_at": event.at},
        )


# -----------------------------
# Logging
# -----------------------------


@dataclass
class JsonLogConfig:
    service_name: str = "fieldtrack"
    device_id: str | None = None


class JsonFormatter(logging.Formatter):
    """One JSON object per line; structured extras go under "fields"."""

    def __init__(self, config: JsonLogConfig) -> None:
        super().__init__()
        self.config = config

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _utc_iso(record.created),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.config.service_name,
        }
        if self.config.device_id:
            payload["device_id"] = self.config.device_id

        event_at = getattr(record, "event_at", None)
        if isinstance(event_at, str):
            payload["event_at"] = event_at

        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload["fields"] = fields

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


class _FieldsTextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict) and fields:
            rendered = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
            return f"{base} {rendered}"
        return base


def configure_logging(*, level: int | str, log_format: str, device_id: str | None = None) -> None:
    """Configure process logging.

    - log_format="json": structured JSON lines
    - log_format="text": human-readable, with event fields appended as k=v
    """

    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers to avoid duplicate logs when called multiple times.
    root.handlers.clear()

    handler = logging.StreamHandler()
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(JsonLogConfig(device_id=device_id)))
    else:
        handler.setFormatter(_FieldsTextFormatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))

    root.addHandler(handler)
