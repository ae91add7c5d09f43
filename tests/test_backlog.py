from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Sequence

import pytest

from fieldtrack.backlog import Backlog, SendResult
from fieldtrack.errors import PersistenceFailure, StoreError
from fieldtrack.records import InvalidEntry, Record, TelemetryRecord
from fieldtrack.store import SqliteListStore

SAVED_AT = datetime(2026, 3, 1, 13, 0, 0, tzinfo=timezone.utc)


def _record(idx: int) -> TelemetryRecord:
    return TelemetryRecord(
        latitude=40.0 + idx / 100.0,
        longitude=-3.0 - idx / 100.0,
        altitude=600.0 + idx,
        speed=None,
        battery_level=90 - idx,
        signal_level=-60 - idx,
        timestamp=datetime(2026, 3, 1, 12, idx % 60, 0, tzinfo=timezone.utc),
    )


def _backlog(tmp_path: Path, **kwargs) -> Backlog:
    store = SqliteListStore(str(tmp_path / "backlog.sqlite"))
    return Backlog(store, now_fn=lambda: SAVED_AT, **kwargs)


class _FlakyStore:
    """Wraps a store and fails the next N writes, like a crash before commit."""

    def __init__(self, inner: SqliteListStore) -> None:
        self.inner = inner
        self.fail_writes = 0

    def get_list(self, key: str) -> List[str]:
        return self.inner.get_list(key)

    def set_list(self, key: str, values: Sequence[str]) -> None:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise StoreError("simulated crash before write")
        self.inner.set_list(key, values)


def _latitudes(records: Sequence[Record]) -> List[float]:
    return [r.latitude for r in records if isinstance(r, TelemetryRecord)]


def test_append_then_list_preserves_order_and_fields(tmp_path: Path) -> None:
    backlog = _backlog(tmp_path)
    originals = [_record(i) for i in range(5)]

    for record in originals:
        backlog.append(record)

    entries = backlog.list()
    assert [e.position for e in entries] == [0, 1, 2, 3, 4]
    assert [e.record for e in entries] == [r.with_saved_locally(SAVED_AT) for r in originals]
    assert backlog.count() == 5


def test_append_returns_entry_with_saved_locally(tmp_path: Path) -> None:
    backlog = _backlog(tmp_path)

    entry = backlog.append(_record(0))

    assert entry.position == 0
    assert entry.record.saved_locally == SAVED_AT
    assert json.loads(entry.raw)["savedLocally"] == SAVED_AT.isoformat()


def test_append_surfaces_persistence_failure(tmp_path: Path) -> None:
    store = _FlakyStore(SqliteListStore(str(tmp_path / "backlog.sqlite")))
    backlog = Backlog(store, now_fn=lambda: SAVED_AT)
    store.fail_writes = 1

    with pytest.raises(PersistenceFailure):
        backlog.append(_record(0))
    assert backlog.count() == 0


def test_partial_drain_retains_failed_subset_in_order(tmp_path: Path) -> None:
    backlog = _backlog(tmp_path)
    for i in range(6):
        backlog.append(_record(i))
    failing = {_record(1).latitude, _record(3).latitude, _record(4).latitude}
    seen: List[float] = []

    def sink(record: Record) -> SendResult:
        seen.append(record.latitude)
        if record.latitude in failing:
            return SendResult.failure("rejected")
        return SendResult.success()

    report = backlog.drain(sink)

    assert report is not None
    assert report.attempted == 6
    assert report.delivered == 3
    assert report.retained == 3
    assert seen == [_record(i).latitude for i in range(6)]
    assert _latitudes([e.record for e in backlog.list()]) == [
        _record(1).latitude,
        _record(3).latitude,
        _record(4).latitude,
    ]

    second = backlog.drain(lambda record: SendResult.success())
    assert second is not None
    assert second.delivered == 3
    assert backlog.count() == 0


def test_sink_exception_counts_as_failure_and_does_not_abort(tmp_path: Path) -> None:
    backlog = _backlog(tmp_path)
    for i in range(3):
        backlog.append(_record(i))

    def sink(record: Record) -> SendResult:
        if record.latitude == _record(0).latitude:
            raise RuntimeError("boom")
        return SendResult.success()

    report = backlog.drain(sink)

    assert report is not None
    assert report.delivered == 2
    assert _latitudes([e.record for e in backlog.list()]) == [_record(0).latitude]


def test_crash_before_removal_redelivers_instead_of_losing(tmp_path: Path) -> None:
    store = _FlakyStore(SqliteListStore(str(tmp_path / "backlog.sqlite")))
    backlog = Backlog(store, now_fn=lambda: SAVED_AT)
    for i in range(3):
        backlog.append(_record(i))

    delivered: List[float] = []

    def sink(record: Record) -> SendResult:
        delivered.append(record.latitude)
        return SendResult.success()

    store.fail_writes = 1
    with pytest.raises(PersistenceFailure):
        backlog.drain(sink)

    # Everything is still pending; nothing was silently dropped.
    assert backlog.count() == 3

    report = backlog.drain(sink)
    assert report is not None
    assert report.delivered == 3
    assert backlog.count() == 0
    # At-least-once: each record reached the sink twice.
    assert sorted(delivered) == sorted([_record(i).latitude for i in range(3)] * 2)


def test_append_during_drain_is_kept_after_retained_entries(tmp_path: Path) -> None:
    backlog = _backlog(tmp_path)
    backlog.append(_record(0))
    backlog.append(_record(1))

    def sink(record: Record) -> SendResult:
        if record.latitude == _record(0).latitude:
            backlog.append(_record(9))
            return SendResult.success()
        return SendResult.failure("later")

    report = backlog.drain(sink)

    assert report is not None
    assert report.delivered == 1
    assert _latitudes([e.record for e in backlog.list()]) == [_record(1).latitude, _record(9).latitude]


def test_clear_during_drain_does_not_resurrect_entries(tmp_path: Path) -> None:
    backlog = _backlog(tmp_path)
    backlog.append(_record(0))
    backlog.append(_record(1))

    def sink(record: Record) -> SendResult:
        if record.latitude == _record(0).latitude:
            backlog.clear()
            backlog.append(_record(5))
        return SendResult.success()

    backlog.drain(sink)

    assert _latitudes([e.record for e in backlog.list()]) == [_record(5).latitude]


def test_non_blocking_drain_skips_while_another_drain_runs(tmp_path: Path) -> None:
    backlog = _backlog(tmp_path)
    backlog.append(_record(0))
    entered = threading.Event()
    release = threading.Event()
    results: dict[str, object] = {}

    def slow_sink(record: Record) -> SendResult:
        entered.set()
        release.wait(timeout=5)
        return SendResult.success()

    worker = threading.Thread(target=lambda: results.setdefault("first", backlog.drain(slow_sink)))
    worker.start()
    assert entered.wait(timeout=5)

    assert backlog.drain(lambda record: SendResult.success(), blocking=False) is None

    release.set()
    worker.join(timeout=5)
    assert results["first"] is not None
    assert backlog.count() == 0


def test_corrupt_entries_surface_as_invalid_and_do_not_block(tmp_path: Path) -> None:
    store = SqliteListStore(str(tmp_path / "backlog.sqlite"))
    backlog = Backlog(store, now_fn=lambda: SAVED_AT)
    backlog.append(_record(0))
    store.set_list(backlog.key, [*store.get_list(backlog.key), "{garbage"])
    backlog.append(_record(2))

    entries = backlog.list()
    assert backlog.count() == 3
    assert isinstance(entries[1].record, InvalidEntry)
    assert not entries[1].is_valid

    offered: List[float] = []

    def sink(record: Record) -> SendResult:
        offered.append(record.latitude)
        return SendResult.success()

    report = backlog.drain(sink)

    assert report is not None
    assert offered == [_record(0).latitude, _record(2).latitude]
    assert report.invalid == 1
    assert report.retained == 1
    assert [e.raw for e in backlog.list()] == ["{garbage"]
    assert backlog.metrics()["backlog_invalid"] == 1


def test_corrupt_entries_move_to_deadletter_when_configured(tmp_path: Path) -> None:
    deadletter = tmp_path / "deadletter.jsonl"
    store = SqliteListStore(str(tmp_path / "backlog.sqlite"))
    backlog = Backlog(store, deadletter_path=str(deadletter), now_fn=lambda: SAVED_AT)
    store.set_list(backlog.key, ["{garbage"])
    backlog.append(_record(1))

    report = backlog.drain(lambda record: SendResult.failure("offline"))

    assert report is not None
    assert report.deadlettered == 1
    assert report.retained == 1
    assert backlog.count() == 1
    lines = deadletter.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["raw"] == "{garbage"
    assert backlog.metrics()["backlog_deadlettered_total"] == 1


def test_clear_empties_and_reports_count(tmp_path: Path) -> None:
    backlog = _backlog(tmp_path)
    for i in range(4):
        backlog.append(_record(i))

    assert backlog.clear() == 4
    assert backlog.count() == 0
    assert backlog.list() == []


def test_backlog_survives_reopen(tmp_path: Path) -> None:
    path = str(tmp_path / "backlog.sqlite")
    Backlog(SqliteListStore(path), now_fn=lambda: SAVED_AT).append(_record(7))

    reopened = Backlog(SqliteListStore(path))
    assert _latitudes([e.record for e in reopened.list()]) == [_record(7).latitude]


def test_prune_drops_old_then_oldest_beyond_limit(tmp_path: Path) -> None:
    clock = {"now": SAVED_AT}
    backlog = Backlog(SqliteListStore(str(tmp_path / "backlog.sqlite")), now_fn=lambda: clock["now"])

    backlog.append(_record(0))
    clock["now"] = SAVED_AT + timedelta(hours=2)
    for i in range(1, 4):
        backlog.append(_record(i))
    clock["now"] = SAVED_AT + timedelta(hours=3)

    deleted = backlog.prune(max_entries=2, max_age_s=2.5 * 3600)

    assert deleted == 2
    assert _latitudes([e.record for e in backlog.list()]) == [_record(2).latitude, _record(3).latitude]


def test_unserializable_record_is_refused_not_stored(tmp_path: Path) -> None:
    backlog = _backlog(tmp_path)
    broken = TelemetryRecord(
        latitude=float("nan"),
        longitude=-3.7,
        battery_level=50,
        timestamp=SAVED_AT,
    )

    with pytest.raises(PersistenceFailure):
        backlog.append(broken)
    assert backlog.count() == 0


def test_permanently_rejected_entries_move_to_deadletter(tmp_path: Path) -> None:
    deadletter = tmp_path / "deadletter.jsonl"
    backlog = _backlog(tmp_path, deadletter_path=str(deadletter))
    backlog.append(_record(0))
    backlog.append(_record(1))

    def sink(record: Record) -> SendResult:
        if record.latitude == _record(0).latitude:
            return SendResult.rejected("400 no such column")
        return SendResult.failure("503 later")

    report = backlog.drain(sink)

    assert report is not None
    assert report.deadlettered == 1
    assert report.retained == 1
    assert _latitudes([e.record for e in backlog.list()]) == [_record(1).latitude]
    line = json.loads(deadletter.read_text(encoding="utf-8").splitlines()[0])
    assert line["reason"] == "400 no such column"


def test_permanently_rejected_entries_stay_without_deadletter(tmp_path: Path) -> None:
    backlog = _backlog(tmp_path)
    backlog.append(_record(0))

    report = backlog.drain(lambda record: SendResult.rejected("400 no such column"))

    assert report is not None
    assert report.deadlettered == 0
    assert backlog.count() == 1
