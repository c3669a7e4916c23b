from __future__ import annotations

from typing import Iterable, List, Optional

from device_ledger.core.models import Confidence, VpnAssessment
from device_ledger.normalize.origin import is_local_address, parse_ip

SIGNAL_TIMEZONE_MISMATCH = "timezone_mismatch"
SIGNAL_WEBRTC_LEAK = "webrtc_leak"
SIGNAL_HOSTING_ISP = "hosting_isp"

_UNKNOWN = {"", "unknown", "none", "null"}


def _known(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() not in _UNKNOWN


def timezone_mismatch(client_timezone: Optional[str], network_timezone: Optional[str]) -> bool:
    if not (_known(client_timezone) and _known(network_timezone)):
        return False
    return client_timezone.strip().lower() != network_timezone.strip().lower()


def webrtc_leak(client_public_ip: Optional[str], origin: Optional[str]) -> bool:
    """Client-discovered public address differs from the connection origin.

    Local candidates (LAN addresses WebRTC also reports) never count.
    """
    leaked = parse_ip(client_public_ip)
    observed = parse_ip(origin)
    if leaked is None or observed is None:
        return False
    if is_local_address(str(leaked)):
        return False
    return leaked != observed


def hosting_isp(isp: Optional[str], org: Optional[str], keywords: Iterable[str]) -> bool:
    haystack = " ".join(s.lower() for s in (isp, org) if s)
    if not haystack:
        return False
    return any(k and k.lower() in haystack for k in keywords)


def assess_vpn(
    *,
    origin: Optional[str],
    client_timezone: Optional[str],
    network_timezone: Optional[str],
    client_public_ip: Optional[str],
    isp: Optional[str],
    org: Optional[str],
    keywords: Iterable[str],
) -> VpnAssessment:
    """Advisory anonymization heuristic; never used to block a capture.

    Confidence: timezone mismatch plus WebRTC leak, or the leak alone -> high;
    timezone mismatch alone -> medium; hosting-provider ISP alone -> low.
    """
    tz = timezone_mismatch(client_timezone, network_timezone)
    leak = webrtc_leak(client_public_ip, origin)
    hosting = hosting_isp(isp, org, keywords)

    signals: List[str] = []
    if tz:
        signals.append(SIGNAL_TIMEZONE_MISMATCH)
    if leak:
        signals.append(SIGNAL_WEBRTC_LEAK)
    if hosting:
        signals.append(SIGNAL_HOSTING_ISP)

    if leak:
        confidence = Confidence.HIGH
    elif tz:
        confidence = Confidence.MEDIUM
    elif hosting:
        confidence = Confidence.LOW
    else:
        confidence = Confidence.NONE

    return VpnAssessment(signals=signals, likely=bool(signals), confidence=confidence)
