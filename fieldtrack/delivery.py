from __future__ import annotations

import enum
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from .backlog import Backlog, DrainReport, SendResult
from .connectivity import ConnectivityProbe, check_or_offline
from .errors import PersistenceFailure, RemoteRejected, RemoteTimeout, SensorUnavailable
from .observability import CycleEvent, EventSink, LoggingEventSink
from .records import DegradedRecord, RawReadings, Record, TelemetryRecord, normalize_record
from .remote import RemoteStore
from .sensors import SensorSource
from .signal_strength import SignalReading
from .timeouts import CallTimedOut, call_with_timeout

logger = logging.getLogger("fieldtrack.delivery")

NowFn = Callable[[], datetime]

DEFAULT_POSITION_TIMEOUT_S = 10.0
DEFAULT_INSERT_TIMEOUT_S = 15.0


class CycleState(str, enum.Enum):
    COLLECTING = "collecting"
    RESOLVING = "resolving"
    SENDING = "sending"
    DELIVERED = "delivered"
    BUFFERED = "buffered"
    # Not sent and not stored: the backlog write itself failed.
    DROPPED = "dropped"


TERMINAL_STATES = frozenset({CycleState.DELIVERED, CycleState.BUFFERED, CycleState.DROPPED})


class SignalResolving(Protocol):
    def resolve(self) -> SignalReading: ...


@dataclass(frozen=True)
class CycleOutcome:
    cycle_id: str
    state: CycleState
    path: tuple[CycleState, ...]
    record: Optional[Record] = None
    signal: Optional[SignalReading] = None
    remote_attempted: bool = False
    degraded: bool = False
    error: Optional[str] = None
    drain: Optional[DrainReport] = None

    @property
    def delivered(self) -> bool:
        return self.state is CycleState.DELIVERED

    @property
    def buffered(self) -> bool:
        return self.state is CycleState.BUFFERED


@dataclass(frozen=True)
class FlushReport:
    attempted: int = 0
    delivered: int = 0
    retained: int = 0
    invalid: int = 0
    skipped_reason: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_drain(cls, report: DrainReport) -> "FlushReport":
        return cls(
            attempted=report.attempted,
            delivered=report.delivered,
            retained=report.retained,
            invalid=report.invalid,
        )


@dataclass
class _Cycle:
    cycle_id: str
    path: List[CycleState] = field(default_factory=list)

    def enter(self, state: CycleState) -> None:
        self.path.append(state)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_permanent_rejection(status_code: int | None) -> bool:
    # Client errors other than timeout and throttling will repeat on every retry.
    if status_code is None:
        return False
    return 400 <= status_code < 500 and status_code not in (408, 429)


class DeliveryEngine:
    """Collect one telemetry sample per cycle and deliver it durably.

    Collaborators are injected; the engine owns none of them. Cycles are
    expected to run one at a time. Public operations never raise for pipeline
    failures: every cycle ends in a terminal CycleState.
    """

    def __init__(
        self,
        *,
        sensors: SensorSource,
        signal_resolver: SignalResolving,
        probe: ConnectivityProbe,
        remote: RemoteStore,
        backlog: Backlog,
        position_timeout_s: float = DEFAULT_POSITION_TIMEOUT_S,
        insert_timeout_s: float = DEFAULT_INSERT_TIMEOUT_S,
        events: EventSink | None = None,
        now_fn: NowFn | None = None,
    ) -> None:
        self.sensors = sensors
        self.signal_resolver = signal_resolver
        self.probe = probe
        self.remote = remote
        self.backlog = backlog
        self.position_timeout_s = float(position_timeout_s)
        self.insert_timeout_s = float(insert_timeout_s)
        self._events = events or LoggingEventSink()
        self._now_fn = now_fn or _utcnow

        # Cycles and flushes may run on different threads.
        self._counters_lock = threading.Lock()
        self.cycles_total = 0
        self.delivered_total = 0
        self.buffered_total = 0
        self.dropped_total = 0
        self.drained_total = 0

    # -----------------------------
    # Collection cycle
    # -----------------------------

    def run_collection_cycle(self, signal_override: int | str | None = None) -> CycleOutcome:
        """Run one collect -> resolve -> send-or-buffer cycle.

        signal_override is a precomputed signal level from a context that can
        read it; when given, the signal resolver is not consulted.
        """

        cycle = _Cycle(cycle_id=uuid.uuid4().hex)
        self._bump("cycles_total")

        cycle.enter(CycleState.COLLECTING)
        try:
            position = call_with_timeout(
                lambda: self.sensors.get_position(self.position_timeout_s),
                timeout_s=self.position_timeout_s,
                name="position",
            )
            battery_level = self.sensors.get_battery_level()
        except Exception as exc:
            return self._buffer_degraded(cycle, exc)
        timestamp = self._now_fn()
        self._emit(
            "collected",
            cycle,
            latitude=position.latitude,
            longitude=position.longitude,
            battery=battery_level,
        )

        cycle.enter(CycleState.RESOLVING)
        if signal_override is not None:
            reading = SignalReading.unknown()
            signal_text = str(signal_override)
        else:
            reading = self._resolve_signal()
            signal_text = reading.as_text()

        try:
            record = normalize_record(
                RawReadings(
                    latitude=position.latitude,
                    longitude=position.longitude,
                    altitude=position.altitude,
                    speed=position.speed,
                    battery_level=battery_level,
                    signal_text=signal_text,
                ),
                timestamp=timestamp,
            )
        except SensorUnavailable as exc:
            return self._buffer_degraded(cycle, exc)

        self._emit(
            "resolved",
            cycle,
            signal_kind=reading.kind.value,
            signal_source="override" if signal_override is not None else reading.source,
            signal=record.signal_level,
        )

        cycle.enter(CycleState.SENDING)
        return self._send_or_buffer(cycle, record, reading)

    def _resolve_signal(self) -> SignalReading:
        try:
            return self.signal_resolver.resolve()
        except Exception as exc:
            logger.warning("signal resolution failed; recording no signal: %r", exc)
            return SignalReading.no_signal()

    def _send_or_buffer(self, cycle: _Cycle, record: TelemetryRecord, reading: SignalReading) -> CycleOutcome:
        connectivity = check_or_offline(self.probe)
        if not connectivity.connected:
            return self._buffer(cycle, record, signal=reading, reason="offline")

        try:
            self._insert(record)
        except Exception as exc:
            return self._buffer(
                cycle,
                record,
                signal=reading,
                reason=f"{type(exc).__name__}: {exc}",
                remote_attempted=True,
            )

        self._bump("delivered_total")
        cycle.enter(CycleState.DELIVERED)
        self._emit("sent", cycle, media=sorted(m.value for m in connectivity.media))

        drain = self._opportunistic_drain(cycle)
        return CycleOutcome(
            cycle_id=cycle.cycle_id,
            state=CycleState.DELIVERED,
            path=tuple(cycle.path),
            record=record,
            signal=reading,
            remote_attempted=True,
            drain=drain,
        )

    def _insert(self, record: Record) -> None:
        payload = record.to_payload()
        call_with_timeout(
            lambda: self.remote.insert(payload, timeout_s=self.insert_timeout_s),
            timeout_s=self.insert_timeout_s,
            name="remote-insert",
        )

    def _buffer(
        self,
        cycle: _Cycle,
        record: Record,
        *,
        signal: SignalReading | None,
        reason: str,
        remote_attempted: bool = False,
        degraded: bool = False,
    ) -> CycleOutcome:
        try:
            entry = self.backlog.append(record)
        except PersistenceFailure as exc:
            self._bump("dropped_total")
            cycle.enter(CycleState.DROPPED)
            logger.error("record could not be buffered and is lost: %s (after: %s)", exc, reason)
            self._emit("dropped", cycle, reason=reason, error=str(exc))
            return CycleOutcome(
                cycle_id=cycle.cycle_id,
                state=CycleState.DROPPED,
                path=tuple(cycle.path),
                record=record,
                signal=signal,
                remote_attempted=remote_attempted,
                degraded=degraded,
                error=f"PersistenceFailure: {exc}",
            )

        self._bump("buffered_total")
        cycle.enter(CycleState.BUFFERED)
        self._emit("buffered", cycle, reason=reason, queue=entry.position + 1, degraded=degraded)
        return CycleOutcome(
            cycle_id=cycle.cycle_id,
            state=CycleState.BUFFERED,
            path=tuple(cycle.path),
            record=entry.record,
            signal=signal,
            remote_attempted=remote_attempted,
            degraded=degraded,
            error=None if reason == "offline" else reason,
        )

    def _buffer_degraded(self, cycle: _Cycle, exc: BaseException) -> CycleOutcome:
        if isinstance(exc, CallTimedOut):
            reason = f"SensorUnavailable: position fix timed out after {self.position_timeout_s:.1f}s"
        else:
            reason = f"{type(exc).__name__}: {exc}"
        logger.warning("sensor acquisition failed; storing degraded record: %s", reason)
        self._emit("degraded", cycle, error=reason)
        record = DegradedRecord(timestamp=self._now_fn(), error=reason)
        return self._buffer(cycle, record, signal=None, reason=reason, degraded=True)

    # -----------------------------
    # Backlog reconciliation
    # -----------------------------

    def _drain_sink(self) -> Callable[[Record], SendResult]:
        # Once the remote times out, the rest of this drain would time out too.
        timed_out = False

        def _sink(record: Record) -> SendResult:
            nonlocal timed_out
            if timed_out:
                return SendResult.failure("skipped after remote timeout")
            try:
                self._insert(record)
            except (RemoteTimeout, CallTimedOut) as exc:
                timed_out = True
                return SendResult.failure(f"{type(exc).__name__}: {exc}")
            except RemoteRejected as exc:
                reason = f"{type(exc).__name__}: {exc}"
                if isinstance(record, DegradedRecord) and _is_permanent_rejection(exc.status_code):
                    return SendResult.rejected(reason)
                return SendResult.failure(reason)
            except Exception as exc:
                return SendResult.failure(f"{type(exc).__name__}: {exc}")
            return SendResult.success()

        return _sink

    def _opportunistic_drain(self, cycle: _Cycle) -> DrainReport | None:
        try:
            report = self.backlog.drain(self._drain_sink(), blocking=False)
        except PersistenceFailure as exc:
            logger.warning("opportunistic drain could not commit; entries stay pending: %s", exc)
            return None
        if report is None:
            logger.debug("backlog drain already in progress; skipping opportunistic drain")
            return None
        self._record_drain(report, cycle=cycle, trigger="after_send")
        return report

    def flush_backlog(self) -> FlushReport:
        """Try to deliver every pending entry now.

        Waits for an in-flight drain to finish instead of running alongside it.
        """

        connectivity = check_or_offline(self.probe)
        if not connectivity.connected:
            retained = self.backlog_size()
            logger.info("flush skipped: offline (pending=%s)", retained)
            return FlushReport(retained=retained, skipped_reason="offline")

        try:
            report = self.backlog.drain(self._drain_sink(), blocking=True)
        except PersistenceFailure as exc:
            logger.error("flush could not commit removals; entries stay pending: %s", exc)
            return FlushReport(retained=self.backlog_size(), error=str(exc))
        if report is None:
            return FlushReport(retained=self.backlog_size(), skipped_reason="busy")
        self._record_drain(report, cycle=None, trigger="flush")
        return FlushReport.from_drain(report)

    def _record_drain(self, report: DrainReport, *, cycle: _Cycle | None, trigger: str) -> None:
        self._bump("drained_total", report.delivered)
        if report.attempted == 0 and report.invalid == 0:
            return
        self._emit(
            "drained",
            cycle,
            trigger=trigger,
            attempted=report.attempted,
            delivered=report.delivered,
            retained=report.retained,
            invalid=report.invalid,
            deadlettered=report.deadlettered,
        )

    # -----------------------------
    # Introspection
    # -----------------------------

    def backlog_size(self) -> int:
        try:
            return self.backlog.count()
        except PersistenceFailure as exc:
            logger.error("backlog size unavailable: %s", exc)
            return 0

    def clear_backlog(self) -> int:
        try:
            removed = self.backlog.clear()
        except PersistenceFailure as exc:
            logger.error("backlog clear failed: %s", exc)
            return 0
        self._emit("cleared", None, removed=removed)
        return removed

    def stats(self) -> Dict[str, int]:
        with self._counters_lock:
            out: Dict[str, int] = {
                "cycles_total": self.cycles_total,
                "delivered_total": self.delivered_total,
                "buffered_total": self.buffered_total,
                "dropped_total": self.dropped_total,
                "drained_total": self.drained_total,
            }
        try:
            out.update(self.backlog.metrics())
        except PersistenceFailure as exc:
            logger.error("backlog metrics unavailable: %s", exc)
        return out

    def _bump(self, counter: str, n: int = 1) -> None:
        with self._counters_lock:
            setattr(self, counter, getattr(self, counter) + n)

    def _emit(self, name: str, cycle: _Cycle | None, **fields: Any) -> None:
        event = CycleEvent(
            name=name,
            cycle_id=cycle.cycle_id if cycle is not None else None,
            fields=fields,
        )
        try:
            self._events(event)
        except Exception as exc:
            logger.warning("event sink failed for %s: %r", name, exc)
