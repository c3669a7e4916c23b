from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional, Tuple

from device_ledger.config.logging import get_logger, log_json
from device_ledger.core.exceptions import ProviderError
from device_ledger.core.models import Coordinates, LocationRecord, LocationSource
from device_ledger.geo.cache import TTLCache
from device_ledger.geo.providers import IpGeoProvider, ReverseGeocoder
from device_ledger.normalize.origin import is_local_address, parse_ip

logger = get_logger(__name__)


def local_network_record() -> LocationRecord:
    return LocationRecord(
        city="Local Network",
        region="Local Network",
        country_code="LAN",
        country="Local Network",
        isp="Local Network",
        source=LocationSource.LOCAL_NETWORK,
    )


def unresolved_record() -> LocationRecord:
    return LocationRecord(source=LocationSource.UNRESOLVED)


class GeoResolver:
    """Origin (and optional device coordinates) -> LocationRecord.

    Resolution order:
    1. private/loopback origin: fixed local-network record, no cache, no calls
    2. unexpired cache entry for the origin
    3. device GPS via reverse geocoding, with ISP/timezone from a network lookup
    4. primary IP provider
    5. secondary IP provider
    6. unresolved (never cached)

    Providers are tried once each; a timeout is a failure like any other.
    """

    def __init__(
        self,
        *,
        primary: IpGeoProvider,
        secondary: Optional[IpGeoProvider] = None,
        reverse: Optional[ReverseGeocoder] = None,
        cache: Optional[TTLCache] = None,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.reverse = reverse
        self.cache = cache if cache is not None else TTLCache()

    def resolve(self, origin: str, coordinates: Optional[Coordinates] = None) -> LocationRecord:
        if is_local_address(origin):
            return local_network_record()

        if parse_ip(origin) is None:
            log_json(logger, logging.INFO, "geo_unresolved", origin=origin, reason="not an IP address")
            return unresolved_record()

        cached = self.cache.get(origin)
        if cached is not None:
            return replace(cached, cached=True)

        record: Optional[LocationRecord] = None
        if coordinates is not None:
            record = self._from_coordinates(origin, coordinates)
        if record is None:
            record = self._from_network(origin)

        if record is None:
            log_json(logger, logging.WARNING, "geo_unresolved", origin=origin, reason="all providers failed")
            return unresolved_record()

        self.cache.put(origin, record)
        return record

    def sweep_cache(self) -> int:
        removed = self.cache.sweep()
        if removed:
            log_json(logger, logging.DEBUG, "geo_cache_swept", removed=removed, remaining=len(self.cache))
        return removed

    def _from_coordinates(self, origin: str, coords: Coordinates) -> Optional[LocationRecord]:
        if self.reverse is None:
            return None
        try:
            place = self.reverse.reverse(coords)
        except ProviderError as e:
            log_json(logger, logging.WARNING, "geo_provider_failed", provider=e.provider, error=str(e))
            return None

        # ISP and timezone are not derivable from coordinates.
        network = self._from_network(origin)
        return replace(
            place,
            latitude=coords.latitude,
            longitude=coords.longitude,
            timezone=place.timezone or (network.timezone if network else None),
            isp=network.isp if network else None,
            org=network.org if network else None,
            source=LocationSource.DEVICE_GPS,
            cached=False,
        )

    def _from_network(self, origin: str) -> Optional[LocationRecord]:
        chain: Tuple[Tuple[Optional[IpGeoProvider], LocationSource], ...] = (
            (self.primary, LocationSource.NETWORK_PRIMARY),
            (self.secondary, LocationSource.NETWORK_FALLBACK),
        )
        for provider, source in chain:
            if provider is None:
                continue
            try:
                record = provider.lookup(origin)
            except ProviderError as e:
                log_json(logger, logging.WARNING, "geo_provider_failed", provider=e.provider, origin=origin, error=str(e))
                continue
            return replace(record, source=source, cached=False)
        return None
