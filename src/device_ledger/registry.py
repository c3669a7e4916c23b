from __future__ import annotations

from device_ledger.config.settings import Settings
from device_ledger.geo.cache import TTLCache
from device_ledger.geo.http_client import HttpClient, HttpConfig
from device_ledger.geo.providers import IpApiProvider, IpWhoisProvider, NominatimReverseGeocoder
from device_ledger.geo.resolver import GeoResolver
from device_ledger.storage.base import RecordStore
from device_ledger.storage.jsonl_store import LocalJsonlRecordStore
from device_ledger.storage.postgres_store import PostgresRecordStore


def build_store(settings: Settings) -> RecordStore:
    if settings.store_backend == "postgres":
        return PostgresRecordStore(settings.database_url or "")
    return LocalJsonlRecordStore(settings.ledger_path)


def build_resolver(settings: Settings) -> GeoResolver:
    client = HttpClient(
        HttpConfig(
            user_agent=settings.http_user_agent,
            connect_timeout=settings.geo_connect_timeout,
            read_timeout=settings.geo_read_timeout,
        )
    )
    return GeoResolver(
        primary=IpApiProvider(client, settings.geo_primary_url),
        secondary=IpWhoisProvider(client, settings.geo_secondary_url),
        reverse=NominatimReverseGeocoder(client, settings.geo_reverse_url),
        cache=TTLCache(settings.geo_cache_ttl_seconds),
    )
