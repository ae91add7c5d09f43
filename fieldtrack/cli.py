from __future__ import annotations

import argparse
import json
import logging
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Sequence

from dotenv import load_dotenv

from .backlog import Backlog
from .config import Settings, load_settings_from_env
from .connectivity import SystemConnectivityProbe
from .delivery import CycleOutcome, DeliveryEngine
from .errors import ConfigError, StoreError
from .observability import configure_logging
from .records import InvalidEntry, serialize_record
from .remote import RemoteStore, RestRemoteStore, UnconfiguredRemoteStore
from .sensors import build_sensor_source, load_sensor_config
from .signal_strength import IwLinkSignalSource, ProcWirelessSignalSource, SignalResolver
from .store import JsonFileListStore, ListStore, SqliteListStore

logger = logging.getLogger("fieldtrack.cli")


def build_store(settings: Settings) -> ListStore:
    if settings.store_backend == "file":
        return JsonFileListStore(settings.store_path)
    return SqliteListStore(
        settings.store_path,
        journal_mode=settings.sqlite_journal_mode,
        synchronous=settings.sqlite_synchronous,
    )


def build_remote(settings: Settings) -> RemoteStore:
    if not settings.remote_configured:
        return UnconfiguredRemoteStore()
    return RestRemoteStore(
        base_url=settings.remote_url or "",
        api_key=settings.remote_key or "",
        table=settings.remote_table,
    )


def build_engine(settings: Settings) -> DeliveryEngine:
    sensors = build_sensor_source(
        device_id=settings.device_id,
        config=load_sensor_config(settings.sensor_config_path),
    )
    probe = SystemConnectivityProbe(reachability_url=settings.reachability_url)
    resolver = SignalResolver(
        probe,
        ProcWirelessSignalSource(interface_name=settings.wifi_interface),
        IwLinkSignalSource(interface_name=settings.wifi_interface or "wlan0"),
        fallback_timeout_s=settings.signal_fallback_timeout_s,
    )
    backlog = Backlog(build_store(settings), deadletter_path=settings.deadletter_path)
    return DeliveryEngine(
        sensors=sensors,
        signal_resolver=resolver,
        probe=probe,
        remote=build_remote(settings),
        backlog=backlog,
        position_timeout_s=settings.position_timeout_s,
        insert_timeout_s=settings.insert_timeout_s,
    )


def _outcome_summary(outcome: CycleOutcome) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "cycle_id": outcome.cycle_id,
        "state": outcome.state.value,
        "path": [s.value for s in outcome.path],
        "degraded": outcome.degraded,
    }
    if outcome.error:
        out["error"] = outcome.error
    if outcome.drain is not None:
        out["drain"] = asdict(outcome.drain)
    return out


def _pending_rows(backlog: Backlog) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for entry in backlog.list():
        if isinstance(entry.record, InvalidEntry):
            rows.append({"position": entry.position, "error": "Invalid data", "reason": entry.record.reason})
            continue
        row: Dict[str, Any] = {"position": entry.position}
        row.update(json.loads(serialize_record(entry.record)))
        rows.append(row)
    return rows


def _run_loop(engine: DeliveryEngine, *, interval_s: float) -> None:
    while True:
        started = time.monotonic()
        outcome = engine.run_collection_cycle()
        logger.info(
            "cycle finished state=%s pending=%s",
            outcome.state.value,
            engine.backlog_size(),
            extra={"fields": _outcome_summary(outcome)},
        )
        elapsed = time.monotonic() - started
        time.sleep(max(1.0, float(interval_s) - elapsed))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fieldtrack", description="Collect and deliver device telemetry")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run a collection cycle every FIELDTRACK_INTERVAL_S seconds")

    once = sub.add_parser("once", help="Run a single collection cycle")
    once.add_argument(
        "--signal",
        default=None,
        help="Precomputed signal level (dBm); skips local signal resolution",
    )

    sub.add_parser("flush", help="Deliver pending backlog entries now")
    sub.add_parser("status", help="Show pipeline counters and backlog depth")

    pending = sub.add_parser("pending", help="List pending backlog entries")
    pending.add_argument("--json", action="store_true", help="Print entries as a JSON array")

    sub.add_parser("clear", help="Delete every pending backlog entry")

    prune = sub.add_parser("prune", help="Apply a retention limit to the backlog")
    prune.add_argument("--max-entries", type=int, default=None, help="Keep at most this many newest entries")
    prune.add_argument("--max-age-s", type=float, default=None, help="Drop entries saved longer ago than this")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    # Load repo-level .env (if present), then a user-level override.
    load_dotenv()
    load_dotenv(Path("~/.config/fieldtrack/.env").expanduser())

    args = _build_parser().parse_args(argv)

    try:
        settings = load_settings_from_env()
    except ConfigError as exc:
        raise SystemExit(f"[fieldtrack] invalid config: {exc}") from exc

    configure_logging(level=settings.log_level, log_format=settings.log_format, device_id=settings.device_id)

    try:
        engine = build_engine(settings)
    except (ConfigError, StoreError) as exc:
        raise SystemExit(f"[fieldtrack] setup failed: {exc}") from exc

    logger.info(
        "device_id=%s store=%s:%s remote=%s",
        settings.device_id,
        settings.store_backend,
        settings.store_path,
        settings.remote_table if settings.remote_configured else "unconfigured",
    )

    if args.command == "run":
        _run_loop(engine, interval_s=settings.interval_s)
        return 0

    if args.command == "once":
        outcome = engine.run_collection_cycle(signal_override=args.signal)
        print(json.dumps(_outcome_summary(outcome), sort_keys=True))
        return 0

    if args.command == "flush":
        report = engine.flush_backlog()
        print(json.dumps(asdict(report), sort_keys=True))
        return 0 if report.error is None else 1

    if args.command == "status":
        print(json.dumps(engine.stats(), sort_keys=True))
        return 0

    if args.command == "pending":
        rows = _pending_rows(engine.backlog)
        if args.json:
            print(json.dumps(rows, indent=2, ensure_ascii=False))
        else:
            for row in rows:
                print(json.dumps(row, sort_keys=True, ensure_ascii=False))
            print(f"[fieldtrack] pending={len(rows)}")
        return 0

    if args.command == "clear":
        removed = engine.clear_backlog()
        print(f"[fieldtrack] cleared {removed} pending entries")
        return 0

    if args.command == "prune":
        if args.max_entries is None and args.max_age_s is None:
            raise SystemExit("prune needs --max-entries and/or --max-age-s")
        deleted = engine.backlog.prune(max_entries=args.max_entries, max_age_s=args.max_age_s)
        print(f"[fieldtrack] pruned {deleted} entries (pending={engine.backlog_size()})")
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
