from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .errors import PersistenceFailure, StoreError
from .records import InvalidEntry, Record, parse_entry, serialize_record
from .store import ListStore

logger = logging.getLogger("fieldtrack.backlog")

BACKLOG_KEY = "pending_data"

NowFn = Callable[[], datetime]


@dataclass(frozen=True)
class SendResult:
    ok: bool
    error: str | None = None
    # The remote will never accept this entry; move it to the dead-letter file.
    permanent: bool = False

    @classmethod
    def success(cls) -> "SendResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> "SendResult":
        return cls(ok=False, error=error)

    @classmethod
    def rejected(cls, error: str) -> "SendResult":
        return cls(ok=False, error=error, permanent=True)


Sink = Callable[[Record], SendResult]


@dataclass(frozen=True)
class BacklogEntry:
    position: int
    raw: str
    record: Record | InvalidEntry

    @property
    def is_valid(self) -> bool:
        return not isinstance(self.record, InvalidEntry)


@dataclass
class DrainReport:
    attempted: int = 0
    delivered: int = 0
    retained: int = 0
    invalid: int = 0
    deadlettered: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Backlog:
    """Durable FIFO of serialized records awaiting delivery.

    Every mutation goes through one re-entrant lock and ends with a single
    ListStore.set_list call, so the persisted list is always either the old or
    the new value. Drains are additionally serialized against each other.
    """

    def __init__(
        self,
        store: ListStore,
        *,
        key: str = BACKLOG_KEY,
        deadletter_path: str | None = None,
        now_fn: NowFn | None = None,
    ) -> None:
        self.store = store
        self.key = key
        self.deadletter_path = Path(deadletter_path) if deadletter_path else None
        self._now_fn = now_fn or _utcnow
        self._lock = threading.RLock()
        self._drain_lock = threading.Lock()
        self.deadlettered_total = 0

    def _read(self) -> List[str]:
        try:
            return self.store.get_list(self.key)
        except StoreError as exc:
            raise PersistenceFailure(f"backlog read failed: {exc}") from exc

    def _write(self, values: Sequence[str]) -> None:
        try:
            self.store.set_list(self.key, list(values))
        except StoreError as exc:
            raise PersistenceFailure(f"backlog write failed: {exc}") from exc

    def append(self, record: Record) -> BacklogEntry:
        stamped = record if record.saved_locally is not None else record.with_saved_locally(self._now_fn())
        try:
            raw = serialize_record(stamped)
        except ValueError as exc:
            raise PersistenceFailure(f"record cannot be serialized: {exc}") from exc
        with self._lock:
            current = self._read()
            self._write([*current, raw])
            position = len(current)
        logger.debug("appended backlog entry position=%s", position)
        return BacklogEntry(position=position, raw=raw, record=stamped)

    def count(self) -> int:
        with self._lock:
            return len(self._read())

    def clear(self) -> int:
        with self._lock:
            removed = len(self._read())
            self._write([])
        if removed:
            logger.info("cleared %s backlog entries", removed)
        return removed

    def drain(self, sink: Sink, *, blocking: bool = True) -> Optional[DrainReport]:
        """Offer every entry to sink in insertion order.

        Entries the sink accepts are removed; the rest keep their relative
        order. Entries rejected as permanent go to the dead-letter file when
        one is configured, otherwise they stay like any other failure. With
        blocking=False, returns None when another drain is running.
        Raises PersistenceFailure if the final removal cannot be written, in
        which case every entry is still pending and will be offered again.
        """

        if not self._drain_lock.acquire(blocking=blocking):
            return None
        try:
            with self._lock:
                snapshot = self._read()

            report = DrainReport()
            removed: set[int] = set()
            try:
                for idx, raw in enumerate(snapshot):
                    parsed = parse_entry(raw)
                    if isinstance(parsed, InvalidEntry):
                        report.invalid += 1
                        if self._deadletter(raw, reason=parsed.reason):
                            removed.add(idx)
                            report.deadlettered += 1
                        continue

                    report.attempted += 1
                    try:
                        result = sink(parsed)
                    except Exception as exc:
                        logger.warning("backlog sink raised for position=%s: %r", idx, exc)
                        result = SendResult.failure(repr(exc))
                    if result.ok:
                        removed.add(idx)
                        report.delivered += 1
                    elif result.permanent and self._deadletter(raw, reason=result.error or "rejected by remote"):
                        removed.add(idx)
                        report.deadlettered += 1
            finally:
                if removed:
                    self._commit_removals(snapshot, removed)

            report.retained = len(snapshot) - len(removed)
            return report
        finally:
            self._drain_lock.release()

    def _commit_removals(self, snapshot: Sequence[str], removed: set[int]) -> None:
        with self._lock:
            current = self._read()
            n = len(snapshot)
            if list(current[:n]) == list(snapshot):
                kept = [raw for idx, raw in enumerate(snapshot) if idx not in removed]
                kept.extend(current[n:])
            else:
                # Cleared or pruned mid-drain: drop each removed value once.
                pending = Counter(snapshot[idx] for idx in removed)
                kept = []
                for raw in current:
                    if pending[raw] > 0:
                        pending[raw] -= 1
                        continue
                    kept.append(raw)
            self._write(kept)

    def _deadletter(self, raw: str, *, reason: str) -> bool:
        if self.deadletter_path is None:
            return False
        line = {
            "ts": self._now_fn().isoformat(),
            "reason": reason,
            "raw": raw,
        }
        try:
            self.deadletter_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.deadletter_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(line, sort_keys=True) + "\n")
        except OSError as exc:
            logger.warning("dead-letter write failed (%s); keeping entry: %r", self.deadletter_path, exc)
            return False
        self.deadlettered_total += 1
        logger.warning("moved backlog entry to %s: %s", self.deadletter_path, reason)
        return True

    def prune(self, *, max_entries: int | None = None, max_age_s: float | None = None) -> int:
        """Drop entries older than max_age_s, then the oldest beyond max_entries.

        Age is measured from savedLocally. Entries without a readable save time
        are only subject to the size limit.
        """

        now_ts = self._now_fn().timestamp()
        with self._lock:
            current = self._read()
            kept: List[str] = []
            for raw in current:
                if max_age_s is not None:
                    parsed = parse_entry(raw)
                    saved = None if isinstance(parsed, InvalidEntry) else parsed.saved_locally
                    if saved is not None and now_ts - saved.timestamp() > float(max_age_s):
                        continue
                kept.append(raw)
            if max_entries is not None and len(kept) > max(0, int(max_entries)):
                kept = kept[len(kept) - max(0, int(max_entries)) :]

            deleted = len(current) - len(kept)
            if deleted:
                self._write(kept)
        return deleted

    def metrics(self) -> Dict[str, int]:
        entries = self.list()
        return {
            "backlog_depth": len(entries),
            "backlog_invalid": sum(1 for e in entries if not e.is_valid),
            "backlog_deadlettered_total": int(self.deadlettered_total),
        }

    def list(self) -> List[BacklogEntry]:
        with self._lock:
            raws = self._read()
        return [BacklogEntry(position=idx, raw=raw, record=parse_entry(raw)) for idx, raw in enumerate(raws)]
