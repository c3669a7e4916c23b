from __future__ import annotations

import ipaddress
from typing import Mapping, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

UNKNOWN_ORIGIN = "unknown"


def resolve_origin(headers: Mapping[str, str], remote_addr: Optional[str]) -> str:
    """Client address as seen by the server, after proxy forwarding headers.

    First entry of X-Forwarded-For, else X-Real-IP, else the socket peer.
    """
    forwarded = headers.get("X-Forwarded-For", "") or ""
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return _clean(first)

    real_ip = (headers.get("X-Real-IP", "") or "").strip()
    if real_ip:
        return _clean(real_ip)

    peer = (remote_addr or "").strip()
    return _clean(peer) if peer else UNKNOWN_ORIGIN


def parse_ip(origin: Optional[str]) -> Optional[IPAddress]:
    if not origin:
        return None
    try:
        return ipaddress.ip_address(origin.strip())
    except ValueError:
        return None


def is_local_address(origin: Optional[str]) -> bool:
    """Private, loopback, link-local or unspecified addresses, plus "localhost"."""
    if origin and origin.strip().lower() == "localhost":
        return True
    ip = parse_ip(origin)
    if ip is None:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_unspecified


def _clean(address: str) -> str:
    # IPv4-mapped IPv6 (::ffff:1.2.3.4) is reported by dual-stack sockets.
    ip = parse_ip(address)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return address
