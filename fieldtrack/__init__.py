from .backlog import Backlog, BacklogEntry, DrainReport, SendResult
from .connectivity import Connectivity, ConnectivityProbe, Medium, SystemConnectivityProbe
from .delivery import CycleOutcome, CycleState, DeliveryEngine, FlushReport
from .records import (
    DegradedRecord,
    InvalidEntry,
    RawReadings,
    TelemetryRecord,
    normalize_record,
    parse_entry,
    serialize_record,
)
from .signal_strength import SignalKind, SignalReading, SignalResolver

__all__ = [
    "Backlog",
    "BacklogEntry",
    "Connectivity",
    "ConnectivityProbe",
    "CycleOutcome",
    "CycleState",
    "DegradedRecord",
    "DeliveryEngine",
    "DrainReport",
    "FlushReport",
    "InvalidEntry",
    "Medium",
    "RawReadings",
    "SendResult",
    "SignalKind",
    "SignalReading",
    "SignalResolver",
    "SystemConnectivityProbe",
    "TelemetryRecord",
    "normalize_record",
    "parse_entry",
    "serialize_record",
]
