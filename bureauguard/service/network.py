from __future__ import annotations

import ipaddress
from typing import Iterable, Optional

from starlette.requests import Request

from bureauguard.logging import get_logger

logger = get_logger(__name__)

UNKNOWN_ORIGIN = "0.0.0.0"


def normalize_ip(raw: Optional[str]) -> str:
    """Canonical text form of an address.

    IPv4-mapped IPv6 addresses collapse to IPv4 and IPv6 is compressed, so
    one client always maps to one rate limit key. Anything that is not an
    address comes back stripped but otherwise unchanged.
    """
    value = (raw or "").strip()
    if not value:
        return value
    try:
        addr = ipaddress.ip_address(value)
    except ValueError:
        return value
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return str(addr)


def ip_in_range(ip: str, cidr: str) -> bool:
    try:
        addr = ipaddress.ip_address(normalize_ip(ip))
        network = ipaddress.ip_network(cidr.strip(), strict=False)
    except ValueError:
        return False
    if addr.version != network.version:
        return False
    return addr in network


def matches_any_range(ip: str, cidrs: Iterable[str]) -> bool:
    return any(ip_in_range(ip, cidr) for cidr in cidrs)


def client_origin(request: Request, trust_proxy_headers: bool = False) -> str:
    """Network origin used as the per-client rate limit key."""

    if trust_proxy_headers:
        real_ip = normalize_ip(request.headers.get("x-real-ip"))
        if real_ip:
            return real_ip
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = normalize_ip(forwarded.split(",")[0])
            if first:
                return first
    if request.client and request.client.host:
        return normalize_ip(request.client.host)
    logger.warning("client_origin_unknown", path=request.url.path)
    return UNKNOWN_ORIGIN
