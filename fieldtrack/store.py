from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Protocol, Sequence, TypeVar

from .errors import StoreError

logger = logging.getLogger("fieldtrack.store")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_list (
  list_key TEXT NOT NULL,
  position INTEGER NOT NULL,
  value TEXT NOT NULL,
  PRIMARY KEY (list_key, position)
);
"""

_T = TypeVar("_T")

_CORRUPTION_MARKERS = ("malformed", "not a database", "database corrupt")

_ALLOWED_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}
_ALLOWED_SYNCHRONOUS = {"OFF", "NORMAL", "FULL", "EXTRA"}


class ListStore(Protocol):
    """Persistent key -> ordered list of strings.

    set_list must fully replace the prior value or leave it unchanged.
    """

    def get_list(self, key: str) -> List[str]: ...

    def set_list(self, key: str, values: Sequence[str]) -> None: ...


def _pragma_value(pragma: str, requested: str, allowed: set[str], fallback: str) -> str:
    value = (requested or "").strip().upper()
    if value not in allowed:
        logger.warning("unsupported PRAGMA %s=%r for the list store; using %s", pragma, requested, fallback)
        return fallback
    return value


class SqliteListStore:
    """Lists stored row-per-item in one sqlite table, keyed by list name."""

    def __init__(
        self,
        path: str,
        *,
        journal_mode: str = "WAL",
        synchronous: str = "FULL",
        recover_corruption: bool = True,
    ) -> None:
        self.path = Path(path)
        self.journal_mode = _pragma_value("journal_mode", journal_mode, _ALLOWED_JOURNAL_MODES, "WAL")
        self.synchronous = _pragma_value("synchronous", synchronous, _ALLOWED_SYNCHRONOUS, "FULL")
        self.recover_corruption = bool(recover_corruption)
        self._init_db(allow_recovery=True)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path))
        try:
            conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
            conn.execute(f"PRAGMA synchronous={self.synchronous}")
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def _init_db(self, *, allow_recovery: bool) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._create_schema()
        except sqlite3.DatabaseError as exc:
            if allow_recovery and self._is_corruption_error(exc) and self._recover_from_corruption():
                self._create_schema()
                return
            raise StoreError(f"cannot open list store at {self.path}: {exc}") from exc

    def _create_schema(self) -> None:
        conn = self._conn()
        try:
            with conn:
                conn.execute(SCHEMA_SQL)
        finally:
            conn.close()

    @staticmethod
    def _is_corruption_error(exc: BaseException) -> bool:
        text = str(exc).strip().lower()
        return any(marker in text for marker in _CORRUPTION_MARKERS)

    def _recover_from_corruption(self) -> bool:
        """Rename the database and its WAL/SHM side files, then start empty.

        Pending entries in a corrupt file are unreadable anyway; the renamed
        files stay next to the store for manual inspection.
        """

        if not self.recover_corruption:
            return False

        suffix = ".corrupt-" + datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        for side in ("", "-wal", "-shm"):
            source = self.path.with_name(self.path.name + side)
            if not source.exists():
                continue
            try:
                source.replace(source.with_name(source.name + suffix))
            except OSError as exc:
                logger.error("cannot move corrupt list store file %s aside: %r", source, exc)
                return False

        logger.warning("list store %s was corrupt; renamed with suffix %s", self.path, suffix)
        try:
            self._create_schema()
        except sqlite3.Error as exc:
            logger.error("cannot recreate list store %s: %r", self.path, exc)
            return False
        return True

    def _run_db(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        def _attempt() -> _T:
            conn = self._conn()
            try:
                with conn:
                    return fn(conn)
            finally:
                conn.close()

        try:
            return _attempt()
        except sqlite3.DatabaseError as exc:
            if self._is_corruption_error(exc) and self._recover_from_corruption():
                try:
                    return _attempt()
                except sqlite3.Error as retry_exc:
                    raise StoreError(f"sqlite operation failed after recovery: {retry_exc!r}") from retry_exc
            raise StoreError(f"sqlite database error: {exc!r}") from exc
        except sqlite3.Error as exc:
            raise StoreError(f"sqlite error: {exc!r}") from exc

    def get_list(self, key: str) -> List[str]:
        def _op(conn: sqlite3.Connection) -> List[str]:
            rows = conn.execute(
                "SELECT value FROM kv_list WHERE list_key = ? ORDER BY position ASC",
                (key,),
            ).fetchall()
            return [str(value) for (value,) in rows]

        return self._run_db(_op)

    def set_list(self, key: str, values: Sequence[str]) -> None:
        rows = [(key, idx, str(value)) for idx, value in enumerate(values)]

        def _op(conn: sqlite3.Connection) -> None:
            # Single transaction: the old list survives unless the new one commits.
            conn.execute("DELETE FROM kv_list WHERE list_key = ?", (key,))
            if rows:
                conn.executemany(
                    "INSERT INTO kv_list(list_key, position, value) VALUES(?,?,?)",
                    rows,
                )

        self._run_db(_op)


class JsonFileListStore:
    """All lists in one JSON document, rewritten with fsync + atomic replace."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, list[str]]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StoreError(f"cannot read {self.path}: {exc}") from exc
        try:
            data = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError as exc:
            raise StoreError(f"list store {self.path} is not valid json: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreError(f"list store {self.path} must hold a json object")
        return {
            str(k): [str(v) for v in vals]
            for k, vals in data.items()
            if isinstance(vals, list)
        }

    def get_list(self, key: str) -> List[str]:
        with self._lock:
            return list(self._load().get(key, []))

    def set_list(self, key: str, values: Sequence[str]) -> None:
        with self._lock:
            data = self._load()
            data[key] = [str(v) for v in values]
            self._write_atomic(json.dumps(data, ensure_ascii=False, separators=(",", ":")))

    def _write_atomic(self, text: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        except OSError as exc:
            raise StoreError(f"cannot write {self.path}: {exc}") from exc
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except OSError as exc:
            raise StoreError(f"cannot write {self.path}: {exc}") from exc
        finally:
            if os.path.exists(tmp_name):
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
