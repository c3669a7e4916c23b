from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from device_ledger.core.exceptions import ProviderError
from device_ledger.core.models import Coordinates, LocationRecord
from device_ledger.geo.http_client import HttpClient


class IpGeoProvider(Protocol):
    name: str

    def lookup(self, ip: str) -> LocationRecord:
        """Resolve an IP address. Raises ProviderError on any failure."""
        ...


class ReverseGeocoder(Protocol):
    name: str

    def reverse(self, coords: Coordinates) -> LocationRecord:
        """Resolve a coordinate pair. Raises ProviderError on any failure."""
        ...


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _float_or_none(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class IpApiProvider:
    """ip-api.com JSON endpoint (keyless tier)."""

    name = "ip-api"

    FIELDS = "status,message,country,countryCode,regionName,city,lat,lon,timezone,isp,org,query"

    def __init__(self, client: HttpClient, url_template: str = "http://ip-api.com/json/{ip}") -> None:
        self._client = client
        self._url_template = url_template

    def lookup(self, ip: str) -> LocationRecord:
        data = self._client.get_json(self.name, self._url_template.format(ip=ip), params={"fields": self.FIELDS})
        if data.get("status") != "success":
            raise ProviderError(self.name, str(data.get("message") or "lookup failed"))
        return LocationRecord(
            city=_str_or_none(data.get("city")),
            region=_str_or_none(data.get("regionName")),
            country_code=_str_or_none(data.get("countryCode")),
            country=_str_or_none(data.get("country")),
            timezone=_str_or_none(data.get("timezone")),
            latitude=_float_or_none(data.get("lat")),
            longitude=_float_or_none(data.get("lon")),
            isp=_str_or_none(data.get("isp")),
            org=_str_or_none(data.get("org")),
        )


class IpWhoisProvider:
    """ipwho.is JSON endpoint (keyless)."""

    name = "ipwho.is"

    def __init__(self, client: HttpClient, url_template: str = "https://ipwho.is/{ip}") -> None:
        self._client = client
        self._url_template = url_template

    def lookup(self, ip: str) -> LocationRecord:
        data = self._client.get_json(self.name, self._url_template.format(ip=ip))
        if data.get("success") is False:
            raise ProviderError(self.name, str(data.get("message") or "lookup failed"))

        tz = data.get("timezone")
        tz_id = tz.get("id") if isinstance(tz, dict) else tz
        conn: Dict[str, Any] = data.get("connection") if isinstance(data.get("connection"), dict) else {}
        return LocationRecord(
            city=_str_or_none(data.get("city")),
            region=_str_or_none(data.get("region")),
            country_code=_str_or_none(data.get("country_code")),
            country=_str_or_none(data.get("country")),
            timezone=_str_or_none(tz_id),
            latitude=_float_or_none(data.get("latitude")),
            longitude=_float_or_none(data.get("longitude")),
            isp=_str_or_none(conn.get("isp")),
            org=_str_or_none(conn.get("org")),
        )


class NominatimReverseGeocoder:
    """OpenStreetMap Nominatim reverse geocoding. Requires a descriptive User-Agent."""

    name = "nominatim"

    def __init__(self, client: HttpClient, url: str = "https://nominatim.openstreetmap.org/reverse") -> None:
        self._client = client
        self._url = url

    def reverse(self, coords: Coordinates) -> LocationRecord:
        params = {
            "format": "jsonv2",
            "lat": coords.latitude,
            "lon": coords.longitude,
            "zoom": 10,
            "addressdetails": 1,
        }
        data = self._client.get_json(self.name, self._url, params=params)
        if data.get("error"):
            raise ProviderError(self.name, str(data["error"]))
        address = data.get("address")
        if not isinstance(address, dict):
            raise ProviderError(self.name, "no address in response")

        city = address.get("city") or address.get("town") or address.get("village") or address.get("municipality")
        country_code = _str_or_none(address.get("country_code"))
        return LocationRecord(
            city=_str_or_none(city),
            region=_str_or_none(address.get("state") or address.get("region")),
            country_code=country_code.upper() if country_code else None,
            country=_str_or_none(address.get("country")),
            latitude=coords.latitude,
            longitude=coords.longitude,
        )
