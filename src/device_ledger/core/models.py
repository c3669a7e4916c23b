from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from device_ledger.core.time import as_iso, parse_utc


SHORT_ID_LENGTH = 8


class LocationSource(str, Enum):
    DEVICE_GPS = "device-gps"
    NETWORK_PRIMARY = "network-primary"
    NETWORK_FALLBACK = "network-fallback"
    LOCAL_NETWORK = "local-network"
    UNRESOLVED = "unresolved"


class Confidence(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DeviceClass(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"


class Admission(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float
    accuracy: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"latitude": self.latitude, "longitude": self.longitude, "accuracy": self.accuracy}

    @classmethod
    def from_dict(cls, d: Optional[Mapping[str, Any]]) -> Optional["Coordinates"]:
        if not d:
            return None
        try:
            return cls(
                latitude=float(d["latitude"]),
                longitude=float(d["longitude"]),
                accuracy=float(d["accuracy"]) if d.get("accuracy") is not None else None,
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass
class VpnAssessment:
    signals: List[str] = field(default_factory=list)
    likely: bool = False
    confidence: Confidence = Confidence.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {"signals": list(self.signals), "likely": self.likely, "confidence": self.confidence.value}

    @classmethod
    def from_dict(cls, d: Optional[Mapping[str, Any]]) -> Optional["VpnAssessment"]:
        if not d:
            return None
        return cls(
            signals=[str(s) for s in d.get("signals") or []],
            likely=bool(d.get("likely", False)),
            confidence=Confidence(d.get("confidence") or Confidence.NONE.value),
        )


@dataclass
class LocationRecord:
    city: Optional[str] = None
    region: Optional[str] = None
    country_code: Optional[str] = None
    country: Optional[str] = None
    timezone: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    isp: Optional[str] = None
    org: Optional[str] = None
    # None only on legacy records read back before the migration pass tags them.
    source: Optional[LocationSource] = LocationSource.UNRESOLVED
    cached: bool = False
    vpn: Optional[VpnAssessment] = None

    @property
    def is_resolved(self) -> bool:
        return self.source not in (None, LocationSource.UNRESOLVED)

    def has_place(self) -> bool:
        return bool(_known(self.city) or _known(self.country))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "city": self.city,
            "region": self.region,
            "country_code": self.country_code,
            "country": self.country,
            "timezone": self.timezone,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "isp": self.isp,
            "org": self.org,
            "source": self.source.value if self.source else None,
            "cached": self.cached,
            "vpn": self.vpn.to_dict() if self.vpn else None,
        }

    @classmethod
    def from_dict(cls, d: Optional[Mapping[str, Any]]) -> "LocationRecord":
        d = d or {}
        source = d.get("source")
        return cls(
            city=d.get("city"),
            region=d.get("region"),
            country_code=d.get("country_code"),
            country=d.get("country"),
            timezone=d.get("timezone"),
            latitude=d.get("latitude"),
            longitude=d.get("longitude"),
            isp=d.get("isp"),
            org=d.get("org"),
            source=LocationSource(source) if source else None,
            cached=bool(d.get("cached", False)),
            vpn=VpnAssessment.from_dict(d.get("vpn")),
        )


@dataclass(frozen=True)
class NormalizedAttributes:
    """Flat attribute mapping keyed by dotted names, tagged with the table version."""

    version: int
    values: Mapping[str, Any]

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    @property
    def origin(self) -> str:
        return str(self.values.get("origin", "unknown"))

    @property
    def user_agent(self) -> str:
        return str(self.values.get("user_agent", "Unknown"))


@dataclass
class ParsedUserAgent:
    browser_name: str = "Unknown"
    browser_version: str = ""
    os_name: str = "Unknown"
    os_version: str = ""
    platform: str = "Unknown"
    device_class: Optional[DeviceClass] = DeviceClass.DESKTOP
    is_bot: bool = False
    is_headless: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "browser_name": self.browser_name,
            "browser_version": self.browser_version,
            "os_name": self.os_name,
            "os_version": self.os_version,
            "platform": self.platform,
            "device_class": self.device_class.value if self.device_class else None,
            "is_bot": self.is_bot,
            "is_headless": self.is_headless,
        }

    @classmethod
    def from_dict(cls, d: Optional[Mapping[str, Any]]) -> Optional["ParsedUserAgent"]:
        if not d:
            return None
        device_class = d.get("device_class")
        return cls(
            browser_name=str(d.get("browser_name") or "Unknown"),
            browser_version=str(d.get("browser_version") or ""),
            os_name=str(d.get("os_name") or "Unknown"),
            os_version=str(d.get("os_version") or ""),
            platform=str(d.get("platform") or "Unknown"),
            device_class=DeviceClass(device_class) if device_class else None,
            is_bot=bool(d.get("is_bot", False)),
            is_headless=bool(d.get("is_headless", False)),
        )


@dataclass
class DeviceRecord:
    fingerprint: str
    attributes_version: int
    attributes: Dict[str, Any]
    origin: str
    captured_at: datetime
    location: LocationRecord = field(default_factory=LocationRecord)
    user_agent: Optional[ParsedUserAgent] = None
    coordinates: Optional[Coordinates] = None
    referrer: str = "Direct"

    @property
    def short_id(self) -> str:
        return self.fingerprint[:SHORT_ID_LENGTH]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "attributes_version": self.attributes_version,
            "attributes": dict(self.attributes),
            "origin": self.origin,
            "captured_at": as_iso(self.captured_at),
            "location": self.location.to_dict(),
            "user_agent": self.user_agent.to_dict() if self.user_agent else None,
            "coordinates": self.coordinates.to_dict() if self.coordinates else None,
            "referrer": self.referrer,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "DeviceRecord":
        captured_at = d["captured_at"]
        if isinstance(captured_at, str):
            captured_at = parse_utc(captured_at)
        return cls(
            fingerprint=str(d["fingerprint"]),
            attributes_version=int(d.get("attributes_version") or 0),
            attributes=dict(d.get("attributes") or {}),
            origin=str(d.get("origin") or "unknown"),
            captured_at=captured_at,
            location=LocationRecord.from_dict(d.get("location")),
            user_agent=ParsedUserAgent.from_dict(d.get("user_agent")),
            coordinates=Coordinates.from_dict(d.get("coordinates")),
            referrer=str(d.get("referrer") or "Direct"),
        )


@dataclass
class CaptureOutcome:
    accepted: bool
    duplicate: bool
    fingerprint: Optional[str] = None

    @property
    def id(self) -> Optional[str]:
        return self.fingerprint[:SHORT_ID_LENGTH] if self.fingerprint else None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"accepted": self.accepted, "duplicate": self.duplicate}
        if self.id:
            body["id"] = self.id
        return body


def _known(value: Optional[str]) -> bool:
    return bool(value) and value != "Unknown"
