from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Iterable, Optional

from device_ledger.config.logging import get_logger, log_json
from device_ledger.core.models import DeviceRecord, LocationSource, NormalizedAttributes
from device_ledger.core.rate_limit import TokenBucket
from device_ledger.enrich.user_agent import parse_user_agent
from device_ledger.geo.resolver import GeoResolver
from device_ledger.normalize.origin import is_local_address
from device_ledger.pipeline.orchestrator import attach_vpn
from device_ledger.pipeline.reporting import is_unresolved
from device_ledger.storage.base import RecordStore

logger = get_logger(__name__)


def clear_records(store: RecordStore) -> int:
    deleted = store.delete_all()
    log_json(logger, logging.WARNING, "records_cleared", deleted=deleted)
    return deleted


def _stored_attributes(r: DeviceRecord) -> NormalizedAttributes:
    return NormalizedAttributes(version=r.attributes_version, values={**r.attributes, "origin": r.origin})


def backfill_locations(
    store: RecordStore,
    resolver: GeoResolver,
    *,
    bucket: Optional[TokenBucket] = None,
    vpn_keywords: Iterable[str] = (),
) -> Dict[str, int]:
    """Re-resolve location for records stored as unresolved.

    Only `location` is rewritten; fingerprint and capture time never change.
    Each record waits on the token bucket before its provider calls.
    """
    bucket = bucket or TokenBucket(rate_per_sec=1.0)
    keywords = tuple(vpn_keywords)
    scanned = updated = still_unresolved = 0

    for r in store.list_recent():
        if not is_unresolved(r):
            continue
        scanned += 1
        bucket.acquire()

        location = resolver.resolve(r.origin, r.coordinates)
        if not location.is_resolved:
            still_unresolved += 1
            continue

        location = attach_vpn(replace(location, cached=False), _stored_attributes(r), keywords)
        if store.update(r.fingerprint, location=location):
            updated += 1

    stats = {"scanned": scanned, "updated": updated, "still_unresolved": still_unresolved}
    log_json(logger, logging.INFO, "backfill_done", **stats)
    return stats


def _inferred_source(r: DeviceRecord) -> LocationSource:
    if is_local_address(r.origin):
        return LocationSource.LOCAL_NETWORK
    if r.location.has_place():
        return LocationSource.NETWORK_PRIMARY
    return LocationSource.UNRESOLVED


def migrate_records(store: RecordStore, *, vpn_keywords: Iterable[str] = ()) -> Dict[str, int]:
    """Fill derived fields missing on legacy records.

    Covers device class and bot/headless flags (re-parsed from the stored
    user-agent string), the location source tag and the VPN assessment.
    Fingerprint and capture time are left untouched.
    """
    keywords = tuple(vpn_keywords)
    scanned = migrated = 0

    for r in store.list_recent():
        scanned += 1
        new_ua = None
        new_location = None

        if r.user_agent is None or r.user_agent.device_class is None:
            new_ua = parse_user_agent(
                str(r.attributes.get("user_agent") or ""),
                webdriver=bool(r.attributes.get("browser.webdriver")),
            )

        location = r.location
        if location.source is None:
            location = replace(location, source=_inferred_source(r))
        if location.vpn is None:
            location = attach_vpn(location, _stored_attributes(r), keywords)
        if location is not r.location:
            new_location = location

        if new_ua is None and new_location is None:
            continue
        if store.update(r.fingerprint, location=new_location, user_agent=new_ua):
            migrated += 1

    stats = {"scanned": scanned, "migrated": migrated}
    log_json(logger, logging.INFO, "migrate_done", **stats)
    return stats
