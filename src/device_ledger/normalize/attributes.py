from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from device_ledger.core.models import Coordinates, NormalizedAttributes


# Bump whenever ATTRIBUTE_FIELDS changes: keys and defaults feed the fingerprint.
ATTRIBUTE_SCHEMA_VERSION = 1

MAX_STRING_LENGTH = 512
MAX_LIST_ITEMS = 200


@dataclass(frozen=True)
class AttributeField:
    """One recognized attribute.

    `sources` are dotted paths into the submission, tried in order; the first
    present value of the right type wins. Legacy flat names are listed after
    the grouped ones.
    """

    key: str
    default: Any
    sources: Tuple[str, ...]


ATTRIBUTE_FIELDS: Tuple[AttributeField, ...] = (
    AttributeField("screen.resolution", "Unknown", ("screen.resolution", "screenResolution")),
    AttributeField("screen.available_resolution", "Unknown", ("screen.availableResolution", "screen.available_resolution")),
    AttributeField("screen.color_depth", 0, ("screen.colorDepth", "screen.color_depth")),
    AttributeField("screen.pixel_ratio", 1.0, ("screen.pixelRatio", "screen.pixel_ratio", "screen.devicePixelRatio")),
    AttributeField("browser.language", "Unknown", ("browser.language", "language")),
    AttributeField("browser.languages", [], ("browser.languages",)),
    AttributeField("browser.platform", "Unknown", ("browser.platform", "platform")),
    AttributeField("browser.vendor", "Unknown", ("browser.vendor",)),
    AttributeField("browser.cookies_enabled", False, ("browser.cookiesEnabled", "browser.cookies_enabled", "cookiesEnabled")),
    AttributeField("browser.do_not_track", "Unknown", ("browser.doNotTrack", "browser.do_not_track")),
    AttributeField("browser.webdriver", False, ("browser.webdriver",)),
    AttributeField("device.hardware_concurrency", 0, ("device.hardwareConcurrency", "device.hardware_concurrency")),
    AttributeField("device.device_memory", 0.0, ("device.deviceMemory", "device.device_memory")),
    AttributeField("device.max_touch_points", 0, ("device.maxTouchPoints", "device.max_touch_points")),
    AttributeField("device.touch_support", False, ("device.touchSupport", "device.touch_support")),
    AttributeField("network.public_ip", "", ("network.publicIp", "network.public_ip", "network.webrtcIp")),
    AttributeField("network.connection_type", "Unknown", ("network.connectionType", "network.connection_type")),
    AttributeField("canvas.hash", "", ("canvas.hash", "canvas")),
    AttributeField("webgl.vendor", "Unknown", ("webgl.vendor",)),
    AttributeField("webgl.renderer", "Unknown", ("webgl.renderer",)),
    AttributeField("fonts", [], ("fonts", "fonts.list", "fonts.available")),
    AttributeField("timezone.name", "Unknown", ("timezone.name", "timezone.timezone", "timezone")),
    AttributeField("timezone.offset", 0, ("timezone.offset",)),
    AttributeField("behavior.mouse_moves", 0, ("behavior.mouseMoves", "behavior.mouse_moves")),
    AttributeField("behavior.clicks", 0, ("behavior.clicks",)),
    AttributeField("behavior.key_presses", 0, ("behavior.keyPresses", "behavior.key_presses")),
    AttributeField("behavior.scroll_events", 0, ("behavior.scrollEvents", "behavior.scroll_events")),
    AttributeField("behavior.time_on_page_ms", 0, ("behavior.timeOnPage", "behavior.time_on_page_ms")),
)

ATTRIBUTE_DEFAULTS: Dict[str, Any] = {f.key: f.default for f in ATTRIBUTE_FIELDS}

_MISSING = object()


def normalize(submission: Any, origin: Optional[str], user_agent: Optional[str]) -> NormalizedAttributes:
    """Submission + connection context -> NormalizedAttributes.

    Total: any input, including None or a non-dict body, yields the default
    for every key.
    """
    sub = submission if isinstance(submission, Mapping) else {}

    values: Dict[str, Any] = {
        "origin": _coerce(origin, "unknown"),
        "user_agent": _coerce(user_agent, "Unknown"),
    }
    for f in ATTRIBUTE_FIELDS:
        values[f.key] = _first_valid(sub, f)

    return NormalizedAttributes(version=ATTRIBUTE_SCHEMA_VERSION, values=values)


def extract_coordinates(submission: Any) -> Optional[Coordinates]:
    """Device-reported GPS position, or None when absent or out of range."""
    if not isinstance(submission, Mapping):
        return None
    geo = submission.get("geolocation")
    if not isinstance(geo, Mapping):
        return None

    lat = _as_float(geo.get("latitude"))
    lon = _as_float(geo.get("longitude"))
    if lat is None or lon is None:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    # 0,0 is what broken clients send when permission was denied.
    if lat == 0.0 and lon == 0.0:
        return None
    return Coordinates(latitude=lat, longitude=lon, accuracy=_as_float(geo.get("accuracy")))


def client_fingerprint(submission: Any) -> Optional[str]:
    """A client-computed fingerprint, if the submission carries a well-formed one."""
    if not isinstance(submission, Mapping):
        return None
    fp = submission.get("fingerprint")
    if not isinstance(fp, str):
        return None
    fp = fp.strip().lower()
    if len(fp) != 64 or any(c not in "0123456789abcdef" for c in fp):
        return None
    return fp


def _first_valid(sub: Mapping[str, Any], f: AttributeField) -> Any:
    for path in f.sources:
        raw = _lookup(sub, path)
        if raw is _MISSING or raw is None:
            continue
        value = _coerce(raw, f.default)
        if value != f.default or _matches_type(raw, f.default):
            return value
    return _copy_default(f.default)


def _lookup(sub: Mapping[str, Any], path: str) -> Any:
    node: Any = sub
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _matches_type(raw: Any, default: Any) -> bool:
    if isinstance(default, bool):
        return isinstance(raw, bool)
    if isinstance(default, (int, float)):
        return isinstance(raw, (int, float)) and not isinstance(raw, bool)
    if isinstance(default, str):
        return isinstance(raw, str) and bool(raw.strip())
    if isinstance(default, list):
        return isinstance(raw, (list, tuple))
    return False


def _coerce(raw: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return raw if isinstance(raw, bool) else default

    if isinstance(default, int):
        if isinstance(raw, bool):
            return default
        if isinstance(raw, int):
            return raw
        if isinstance(raw, float) and math.isfinite(raw) and raw.is_integer():
            return int(raw)
        return default

    if isinstance(default, float):
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            return default
        raw = float(raw)
        return raw if math.isfinite(raw) else default

    if isinstance(default, str):
        if isinstance(raw, str):
            s = raw.strip()[:MAX_STRING_LENGTH]
            return s or default
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return str(raw)
        return default

    if isinstance(default, list):
        if not isinstance(raw, (list, tuple)):
            return list(default)
        return _string_list(raw)

    return default


def _string_list(raw: Any) -> List[str]:
    out: List[str] = []
    seen = set()
    for item in raw:
        if not isinstance(item, str):
            continue
        s = item.strip()[:MAX_STRING_LENGTH]
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
        if len(out) >= MAX_LIST_ITEMS:
            break
    return out


def _copy_default(default: Any) -> Any:
    return list(default) if isinstance(default, list) else default


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None
