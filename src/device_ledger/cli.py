from __future__ import annotations

import argparse
import json
import logging
import signal
from typing import Callable

from device_ledger.config.logging import get_logger, log_json, setup_logging
from device_ledger.config.settings import Settings, load_settings
from device_ledger.core.exceptions import ConfigError, PersistenceError
from device_ledger.core.rate_limit import TokenBucket
from device_ledger.pipeline.maintenance import backfill_locations, clear_records, migrate_records
from device_ledger.pipeline.reporting import compute_stats, list_records, location_report
from device_ledger.registry import build_resolver, build_store
from device_ledger.storage.base import RecordStore
from device_ledger.storage.postgres_store import init_schema

logger = get_logger("device_ledger")

EXIT_CONFIG = 2
EXIT_STORE = 3


def _install_shutdown_handlers(shutdown: Callable[[], None]) -> None:
    def _handler(signum, frame):
        log_json(logger, logging.INFO, "shutdown_signal", signal=signal.Signals(signum).name)
        shutdown()
        raise SystemExit(0)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _open_store(settings: Settings) -> RecordStore:
    store = build_store(settings)
    store.ping()
    return store


def cmd_serve(settings: Settings) -> int:
    from device_ledger.web.app import create_app, shutdown_app

    store = _open_store(settings)
    app = create_app(settings, store=store)
    _install_shutdown_handlers(lambda: shutdown_app(app))
    log_json(logger, logging.INFO, "server_starting", host=settings.host, port=settings.port, store=settings.store_backend, records=store.count())
    try:
        app.run(host=settings.host, port=settings.port, threaded=True, use_reloader=False)
    finally:
        shutdown_app(app)
    return 0


def cmd_init_db(settings: Settings) -> int:
    if settings.store_backend != "postgres":
        print(f"Nothing to do for store backend '{settings.store_backend}'.")
        return 0
    init_schema(settings.database_url or "")
    print("OK")
    print("table: device_records")
    return 0


def cmd_stats(store: RecordStore, recent: int) -> int:
    stats = compute_stats(list_records(store), recent=recent)
    print(f"total: {stats['total']}")
    print(f"last_capture: {stats['last_capture']}")
    print(f"countries: {stats['countries']}")
    print(f"cities: {stats['cities']}")
    print(f"vpn_likely: {stats['vpn_likely']}")
    for key in ("browsers", "os", "device_classes", "location_sources"):
        print(f"{key}: {json.dumps(stats[key], ensure_ascii=False)}")
    for row in stats["recent"]:
        print(f"  {row['id']}  {row['captured_at']}  {row['city']}, {row['country']}  {row['browser']}/{row['os']}  {row['device_class']}")
    return 0


def cmd_locations(store: RecordStore, sample: int) -> int:
    report = location_report(list_records(store), sample=sample)
    print(f"total: {report['total']}")
    print(f"unresolved: {report['unresolved']}")
    print(f"unresolved_pct: {report['unresolved_pct']:.2f}%")
    print(f"unresolved_with_gps: {report['unresolved_with_gps']}")
    for i, row in enumerate(report["sample"], start=1):
        print(f"  {i}. {json.dumps(row, ensure_ascii=False)}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="device-ledger")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("serve", help="Run the capture HTTP service")
    sub.add_parser("init-db", help="Create the PostgreSQL table and indexes")

    statp = sub.add_parser("stats", help="Print aggregate counts")
    statp.add_argument("--recent", type=int, default=10)

    locp = sub.add_parser("locations", help="Report records without a resolved location")
    locp.add_argument("--sample", type=int, default=3)

    clearp = sub.add_parser("clear", help="Delete every record")
    clearp.add_argument("--yes", action="store_true", help="Required confirmation")

    sub.add_parser("backfill", help="Re-resolve unresolved locations (rate-limited)")
    sub.add_parser("migrate", help="Fill derived fields on legacy records")

    args = parser.parse_args(argv)

    try:
        settings = load_settings()
    except ConfigError as e:
        setup_logging("INFO")
        log_json(logger, logging.ERROR, "config_error", error=str(e))
        return EXIT_CONFIG
    setup_logging(settings.log_level)

    try:
        if args.cmd == "serve":
            return cmd_serve(settings)
        if args.cmd == "init-db":
            return cmd_init_db(settings)

        store = _open_store(settings)
        try:
            if args.cmd == "stats":
                return cmd_stats(store, args.recent)
            if args.cmd == "locations":
                return cmd_locations(store, args.sample)
            if args.cmd == "clear":
                if not args.yes:
                    print("Refusing to delete without --yes.")
                    return 1
                print(f"deleted: {clear_records(store)}")
                return 0
            if args.cmd == "backfill":
                bucket = TokenBucket(rate_per_sec=settings.backfill_rate_per_sec)
                result = backfill_locations(store, build_resolver(settings), bucket=bucket, vpn_keywords=settings.vpn_isp_keywords)
                print(json.dumps(result))
                return 0
            if args.cmd == "migrate":
                print(json.dumps(migrate_records(store, vpn_keywords=settings.vpn_isp_keywords)))
                return 0
        finally:
            store.close()
    except PersistenceError as e:
        log_json(logger, logging.ERROR, "store_unavailable", store=settings.store_backend, error=str(e))
        return EXIT_STORE

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
