"""Classification of internal and non-routable addresses."""
from __future__ import annotations

import re

_IPV4_MAPPED_PREFIX = "::ffff:"
_LOOPBACK = {"127.0.0.1", "::1", "localhost"}
_PRIVATE_RANGES = (
    re.compile(r"^10\."),
    re.compile(r"^172\.(1[6-9]|2[0-9]|3[0-1])\."),
    re.compile(r"^192\.168\."),
)


def normalize_ip(raw: str) -> str:
    """Strip whitespace and an IPv6-mapped IPv4 prefix."""
    cleaned = raw.strip()
    if cleaned.lower().startswith(_IPV4_MAPPED_PREFIX):
        cleaned = cleaned[len(_IPV4_MAPPED_PREFIX):]
    return cleaned


def is_private_ip(ip: str) -> bool:
    """Return True for loopback addresses and the private IPv4 ranges."""
    if ip in _LOOPBACK:
        return True
    return any(pattern.match(ip) for pattern in _PRIVATE_RANGES)
