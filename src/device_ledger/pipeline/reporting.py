from __future__ import annotations

from collections import Counter
from typing import Any, Dict, Iterable, List

from device_ledger.core.models import DeviceRecord, LocationSource
from device_ledger.core.time import as_iso
from device_ledger.storage.base import RecordStore

_UNKNOWN = "Unknown"


def list_records(store: RecordStore) -> List[DeviceRecord]:
    """All records, newest first."""
    return store.list_recent()


def record_summary(r: DeviceRecord) -> Dict[str, Any]:
    ua = r.user_agent
    return {
        "id": r.short_id,
        "captured_at": as_iso(r.captured_at),
        "city": r.location.city or _UNKNOWN,
        "country": r.location.country or _UNKNOWN,
        "browser": ua.browser_name if ua else _UNKNOWN,
        "os": ua.os_name if ua else _UNKNOWN,
        "device_class": ua.device_class.value if ua and ua.device_class else _UNKNOWN,
    }


def _known(value: Any) -> bool:
    return bool(value) and value != _UNKNOWN


def compute_stats(records: Iterable[DeviceRecord], *, recent: int = 10) -> Dict[str, Any]:
    ordered = sorted(records, key=lambda r: r.captured_at, reverse=True)

    browsers: Counter = Counter()
    systems: Counter = Counter()
    device_classes: Counter = Counter()
    sources: Counter = Counter()
    countries = set()
    cities = set()
    vpn_likely = 0

    for r in ordered:
        ua = r.user_agent
        browsers[ua.browser_name if ua else _UNKNOWN] += 1
        systems[ua.os_name if ua else _UNKNOWN] += 1
        device_classes[ua.device_class.value if ua and ua.device_class else _UNKNOWN] += 1
        sources[r.location.source.value if r.location.source else _UNKNOWN] += 1

        if _known(r.location.country):
            countries.add(r.location.country)
        if _known(r.location.city):
            cities.add(r.location.city)
        if r.location.vpn and r.location.vpn.likely:
            vpn_likely += 1

    return {
        "total": len(ordered),
        "last_capture": as_iso(ordered[0].captured_at) if ordered else None,
        "countries": len(countries),
        "cities": len(cities),
        "browsers": dict(browsers.most_common()),
        "os": dict(systems.most_common()),
        "device_classes": dict(device_classes.most_common()),
        "location_sources": dict(sources.most_common()),
        "vpn_likely": vpn_likely,
        "recent": [record_summary(r) for r in ordered[:recent]],
    }


def is_unresolved(r: DeviceRecord) -> bool:
    """True when the record still lacks a city or a country.

    Local-network records never count; their place is fixed.
    """
    loc = r.location
    if loc.source is LocationSource.LOCAL_NETWORK:
        return False
    if loc.source is LocationSource.UNRESOLVED:
        return True
    return not (_known(loc.city) and _known(loc.country))


def location_report(records: Iterable[DeviceRecord], *, sample: int = 3) -> Dict[str, Any]:
    """Coverage of resolved locations across the ledger."""
    all_records = list(records)
    unresolved = [r for r in all_records if is_unresolved(r)]
    with_gps = [r for r in unresolved if r.coordinates is not None]
    total = len(all_records)
    return {
        "total": total,
        "unresolved": len(unresolved),
        "unresolved_pct": round(100.0 * len(unresolved) / total, 2) if total else 0.0,
        "unresolved_with_gps": len(with_gps),
        "sample": [
            {
                "id": r.short_id,
                "origin": r.origin,
                "city": r.location.city,
                "country": r.location.country,
                "location_source": r.location.source.value if r.location.source else None,
                "captured_at": as_iso(r.captured_at),
            }
            for r in unresolved[:sample]
        ],
    }
