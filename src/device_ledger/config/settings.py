from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple

from dotenv import load_dotenv

from device_ledger.core.exceptions import ConfigError


ENV_PREFIX = "DEVICE_LEDGER_"

STORE_BACKENDS = ("jsonl", "postgres")

# Substrings matched case-insensitively against the ISP/organization of an origin.
DEFAULT_VPN_ISP_KEYWORDS: Tuple[str, ...] = (
    "vpn",
    "proxy",
    "hosting",
    "datacenter",
    "data center",
    "server",
    "cloud",
    "digitalocean",
    "amazon",
    "aws",
    "google llc",
    "microsoft",
    "azure",
    "ovh",
    "linode",
    "akamai",
    "vultr",
    "hetzner",
    "m247",
    "leaseweb",
    "choopa",
    "nordvpn",
    "expressvpn",
    "mullvad",
    "surfshark",
    "proton",
    "private internet access",
)


def _get_env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(ENV_PREFIX + name)
    return v if v is not None else default


def _get_env_int(name: str, default: int) -> int:
    v = _get_env(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _get_env_float(name: str, default: float) -> float:
    v = _get_env(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _get_env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    v = _get_env(name)
    if v is None or not v.strip():
        return default
    return tuple(item.strip().lower() for item in v.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    # Storage
    store_backend: str = "jsonl"
    database_url: str | None = None
    ledger_path: str = "./data/device_ledger.jsonl"

    # Logging
    log_level: str = "INFO"

    # Geolocation
    geo_cache_ttl_seconds: int = 3600
    geo_cache_sweep_seconds: int = 600
    geo_connect_timeout: float = 3.0
    geo_read_timeout: float = 5.0
    geo_primary_url: str = "http://ip-api.com/json/{ip}"
    geo_secondary_url: str = "https://ipwho.is/{ip}"
    geo_reverse_url: str = "https://nominatim.openstreetmap.org/reverse"
    http_user_agent: str = "device-ledger/0.1"
    vpn_isp_keywords: Tuple[str, ...] = DEFAULT_VPN_ISP_KEYWORDS

    # Maintenance passes: one external call per record at this rate.
    backfill_rate_per_sec: float = 1.0

    # HTTP surface
    admin_token: str = ""
    host: str = "0.0.0.0"
    port: int = 3000


def load_settings(*, use_dotenv: bool = True) -> Settings:
    if use_dotenv:
        load_dotenv(override=False)

    backend = (_get_env("STORE", "jsonl") or "jsonl").strip().lower()
    if backend not in STORE_BACKENDS:
        raise ConfigError(f"Unknown {ENV_PREFIX}STORE={backend!r}. Expected one of: {', '.join(STORE_BACKENDS)}.")

    database_url = _get_env("DATABASE_URL") or os.getenv("DATABASE_URL") or None
    if backend == "postgres" and not database_url:
        raise ConfigError(f"Missing {ENV_PREFIX}DATABASE_URL (or DATABASE_URL).")

    defaults = Settings()
    settings = Settings(
        store_backend=backend,
        database_url=database_url,
        ledger_path=_get_env("LEDGER_PATH", defaults.ledger_path) or defaults.ledger_path,
        log_level=(_get_env("LOG_LEVEL", defaults.log_level) or defaults.log_level).upper(),
        geo_cache_ttl_seconds=_get_env_int("GEO_CACHE_TTL_SECONDS", defaults.geo_cache_ttl_seconds),
        geo_cache_sweep_seconds=_get_env_int("GEO_CACHE_SWEEP_SECONDS", defaults.geo_cache_sweep_seconds),
        geo_connect_timeout=_get_env_float("GEO_CONNECT_TIMEOUT", defaults.geo_connect_timeout),
        geo_read_timeout=_get_env_float("GEO_READ_TIMEOUT", defaults.geo_read_timeout),
        geo_primary_url=_get_env("GEO_PRIMARY_URL", defaults.geo_primary_url) or defaults.geo_primary_url,
        geo_secondary_url=_get_env("GEO_SECONDARY_URL", defaults.geo_secondary_url) or defaults.geo_secondary_url,
        geo_reverse_url=_get_env("GEO_REVERSE_URL", defaults.geo_reverse_url) or defaults.geo_reverse_url,
        http_user_agent=_get_env("HTTP_USER_AGENT", defaults.http_user_agent) or defaults.http_user_agent,
        vpn_isp_keywords=_get_env_list("VPN_ISP_KEYWORDS", defaults.vpn_isp_keywords),
        backfill_rate_per_sec=_get_env_float("BACKFILL_RATE", defaults.backfill_rate_per_sec),
        admin_token=_get_env("ADMIN_TOKEN", "") or "",
        host=_get_env("HOST", defaults.host) or defaults.host,
        port=_get_env_int("PORT", defaults.port),
    )

    positive = {
        "GEO_CACHE_TTL_SECONDS": settings.geo_cache_ttl_seconds,
        "GEO_CACHE_SWEEP_SECONDS": settings.geo_cache_sweep_seconds,
        "BACKFILL_RATE": settings.backfill_rate_per_sec,
    }
    for name, value in positive.items():
        if value <= 0:
            raise ConfigError(f"{ENV_PREFIX}{name} must be positive, got {value!r}.")
    return settings
