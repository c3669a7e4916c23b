from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from flask import Blueprint, Flask, current_app, jsonify, request

from device_ledger.config.logging import get_logger, log_json
from device_ledger.config.settings import Settings, load_settings
from device_ledger.core.exceptions import DeviceLedgerError
from device_ledger.core.rate_limit import TokenBucket
from device_ledger.geo.resolver import GeoResolver
from device_ledger.normalize.origin import resolve_origin
from device_ledger.pipeline.maintenance import backfill_locations, clear_records, migrate_records
from device_ledger.pipeline.orchestrator import CaptureOrchestrator
from device_ledger.pipeline.reporting import compute_stats, list_records, location_report
from device_ledger.registry import build_resolver, build_store
from device_ledger.storage.base import RecordStore

logger = get_logger(__name__)

EXTENSION_KEY = "device_ledger"
ADMIN_TOKEN_HEADER = "X-Admin-Token"


@dataclass
class LedgerServices:
    settings: Settings
    store: RecordStore
    resolver: GeoResolver
    orchestrator: CaptureOrchestrator
    scheduler: Optional[BackgroundScheduler] = None


def services() -> LedgerServices:
    return current_app.extensions[EXTENSION_KEY]


api = Blueprint("device_ledger_api", __name__)


def _forbidden():
    """403 response unless the admin token matches; None when allowed."""
    token = services().settings.admin_token
    if not token:
        return None
    supplied = request.headers.get(ADMIN_TOKEN_HEADER, "")
    if hmac.compare_digest(supplied.encode("utf-8"), token.encode("utf-8")):
        return None
    return jsonify({"error": "forbidden"}), 403


@api.get("/")
def health():
    return jsonify({"status": "ok", "records": services().store.count()})


@api.post("/api/capture")
def capture():
    svc = services()
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    origin = resolve_origin(request.headers, request.remote_addr)
    user_agent = request.headers.get("User-Agent", "Unknown")

    try:
        outcome = svc.orchestrator.capture(body, origin, user_agent, referrer=request.headers.get("Referer"))
    except Exception as e:
        log_json(logger, logging.ERROR, "capture_failed", origin=origin, error_type=type(e).__name__, error=str(e))
        return jsonify({"error": "internal error"}), 500

    return jsonify(outcome.to_response())


@api.get("/api/records")
def records():
    denied = _forbidden()
    if denied:
        return denied
    return jsonify([r.to_dict() for r in list_records(services().store)])


@api.get("/api/stats")
def stats():
    denied = _forbidden()
    if denied:
        return denied
    return jsonify(compute_stats(list_records(services().store)))


@api.get("/api/locations")
def locations():
    denied = _forbidden()
    if denied:
        return denied
    return jsonify(location_report(list_records(services().store)))


@api.delete("/api/records")
def clear():
    denied = _forbidden()
    if denied:
        return denied
    return jsonify({"deleted": clear_records(services().store)})


@api.post("/api/admin/backfill")
def backfill():
    denied = _forbidden()
    if denied:
        return denied
    svc = services()
    bucket = TokenBucket(rate_per_sec=svc.settings.backfill_rate_per_sec)
    result = backfill_locations(svc.store, svc.resolver, bucket=bucket, vpn_keywords=svc.settings.vpn_isp_keywords)
    return jsonify(result)


@api.post("/api/admin/migrate")
def migrate():
    denied = _forbidden()
    if denied:
        return denied
    svc = services()
    return jsonify(migrate_records(svc.store, vpn_keywords=svc.settings.vpn_isp_keywords))


def _handle_ledger_error(e: DeviceLedgerError):
    log_json(logger, logging.ERROR, "request_failed", path=request.path, error_type=type(e).__name__, error=str(e))
    return jsonify({"error": "internal error"}), 500


def start_cache_sweeper(resolver: GeoResolver, interval_seconds: int) -> BackgroundScheduler:
    sched = BackgroundScheduler(timezone="UTC")
    sched.add_job(
        resolver.sweep_cache,
        IntervalTrigger(seconds=max(1, int(interval_seconds))),
        id="geo_cache_sweep",
        max_instances=1,
        coalesce=True,
    )
    sched.start()
    log_json(logger, logging.INFO, "scheduler_started", geo_cache_sweep_seconds=interval_seconds)
    return sched


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[RecordStore] = None,
    resolver: Optional[GeoResolver] = None,
    start_scheduler: bool = True,
) -> Flask:
    settings = settings or load_settings()
    store = store if store is not None else build_store(settings)
    resolver = resolver if resolver is not None else build_resolver(settings)
    orchestrator = CaptureOrchestrator(store=store, resolver=resolver, vpn_keywords=settings.vpn_isp_keywords)

    app = Flask(__name__)
    svc = LedgerServices(settings=settings, store=store, resolver=resolver, orchestrator=orchestrator)
    app.extensions[EXTENSION_KEY] = svc
    app.register_blueprint(api)
    app.register_error_handler(DeviceLedgerError, _handle_ledger_error)

    if start_scheduler:
        svc.scheduler = start_cache_sweeper(resolver, settings.geo_cache_sweep_seconds)
    return app


def shutdown_app(app: Flask) -> None:
    """Stop background jobs and release store connections."""
    svc: LedgerServices = app.extensions[EXTENSION_KEY]
    if svc.scheduler is not None and svc.scheduler.running:
        svc.scheduler.shutdown(wait=False)
    svc.store.close()
    log_json(logger, logging.INFO, "shutdown_complete")
