from __future__ import annotations

import hashlib
from typing import Any, List, Sequence, Tuple

from device_ledger.core.models import SHORT_ID_LENGTH, NormalizedAttributes


# Ordered identity components. Never add wall-clock time: the same device must
# hash identically on every submission.
FINGERPRINT_COMPONENTS: Tuple[str, ...] = (
    "origin",
    "user_agent",
    "screen.resolution",
    "screen.color_depth",
    "screen.pixel_ratio",
    "browser.language",
    "browser.platform",
    "device.hardware_concurrency",
    "device.max_touch_points",
    "timezone.name",
    "canvas.hash",
    "webgl.vendor",
    "webgl.renderer",
    "fonts",
)

MAX_FONTS = 30
MAX_COMPONENT_LENGTH = 256
COMPONENT_DELIMITER = "|"
LIST_DELIMITER = ","


class Fingerprinter:
    """NormalizedAttributes -> 64-char SHA-256 hex digest.

    The attribute table version is always the first component.
    """

    def __init__(self, components: Sequence[str] = FINGERPRINT_COMPONENTS, *, max_fonts: int = MAX_FONTS) -> None:
        self._components = tuple(components)
        self._max_fonts = max_fonts

    def components(self, attrs: NormalizedAttributes) -> List[str]:
        parts = [f"v{attrs.version}"]
        for key in self._components:
            parts.append(self._render(key, attrs.get(key, "")))
        return parts

    def generate(self, attrs: NormalizedAttributes) -> str:
        material = COMPONENT_DELIMITER.join(self.components(attrs)).encode("utf-8")
        return hashlib.sha256(material).hexdigest()

    def _render(self, key: str, value: Any) -> str:
        if isinstance(value, (list, tuple)):
            items = [str(v) for v in value]
            if key == "fonts":
                items = sorted(items)[: self._max_fonts]
            return LIST_DELIMITER.join(items)
        if isinstance(value, bool):
            return "1" if value else "0"
        if value is None:
            return ""
        return str(value)[:MAX_COMPONENT_LENGTH]


def short_id(fingerprint: str) -> str:
    return fingerprint[:SHORT_ID_LENGTH]
