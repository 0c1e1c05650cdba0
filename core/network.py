"""
core/network.py -- Client network identity for abuse controls.

Derives a NetworkFingerprint (ip_key, subnet_key) from request headers and the
direct peer address. Only the configured trusted proxy header is consulted,
and only the entry `hops` positions from the right end of its chain is used:
every entry to the left of that position was written by the client or by an
untrusted hop and can be forged freely.

  hops=1 on "198.51.100.5, 203.0.113.9"  -> 203.0.113.9
  hops=2 on "198.51.100.5, 203.0.113.9"  -> 198.51.100.5
  hops=0                                 -> peer address, headers ignored

Subnet keys group addresses by IPv4 /24 and IPv6 /64, the allocation units an
attacker can rotate through cheaply.

The resolver is pure. It never raises: anything it cannot validate becomes
UNKNOWN_NETWORK, and callers skip network-keyed rate limits for that value.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger("accessgate.network")

UNKNOWN_KEY = "unknown"
DEFAULT_PROXY_HEADER = "x-forwarded-for"

_IPV4_SUBNET_PREFIX = 24
_IPV6_SUBNET_PREFIX = 64


@dataclass(frozen=True)
class NetworkFingerprint:
    """Normalized client address and its covering subnet."""

    ip_key: str
    subnet_key: str

    @property
    def is_unknown(self) -> bool:
        return self.ip_key == UNKNOWN_KEY


UNKNOWN_NETWORK = NetworkFingerprint(UNKNOWN_KEY, UNKNOWN_KEY)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_ip(candidate: str | None) -> str | None:
    """Return the canonical text form of an address, or None if invalid.

    Accepts the shapes proxies actually emit: quoted values, `for=` prefixes
    from the Forwarded header, `[v6]:port`, `v4:port` and `%zone` suffixes.
    IPv4-mapped IPv6 addresses collapse to plain IPv4.
    """
    if not candidate:
        return None
    value = candidate.strip()
    if value.lower().startswith("for="):
        value = value[4:]
    value = value.strip().strip('"').strip()
    if not value or value.lower() == UNKNOWN_KEY:
        return None

    if value.startswith("["):
        closing = value.find("]")
        if closing > 0:
            value = value[1:closing]
    elif value.count(":") == 1 and "." in value:
        value = value.rsplit(":", 1)[0]

    value = value.split("%", 1)[0].strip()
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return str(address)


def fingerprint_for(address: str | None) -> NetworkFingerprint:
    """Build a fingerprint from a single address candidate."""
    ip = normalize_ip(address)
    if ip is None:
        return UNKNOWN_NETWORK
    parsed = ipaddress.ip_address(ip)
    prefix = _IPV4_SUBNET_PREFIX if parsed.version == 4 else _IPV6_SUBNET_PREFIX
    network = ipaddress.ip_network(f"{ip}/{prefix}", strict=False)
    return NetworkFingerprint(ip_key=ip, subnet_key=str(network))


def _split_chain(header: str, raw: str) -> list[str]:
    """Split a forwarding header value into its per-hop entries, left to right."""
    entries: list[str] = []
    for segment in raw.split(","):
        segment = segment.strip()
        if not segment:
            continue
        if header == "forwarded":
            # Forwarded: for=192.0.2.60;proto=http;by=203.0.113.43
            for pair in segment.split(";"):
                pair = pair.strip()
                if pair.lower().startswith("for="):
                    entries.append(pair)
                    break
            else:
                entries.append("")
            continue
        entries.append(segment)
    return entries


def _header_value(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    for key, candidate in headers.items():
        if key.lower() == name:
            return candidate
    return None


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class NetworkFingerprintResolver:
    """Resolve a NetworkFingerprint from request headers using a trust policy.

    Usage:
        resolver = NetworkFingerprintResolver("x-forwarded-for", hops=1)
        fingerprint = resolver.resolve(request.headers, request.client.host)
    """

    def __init__(self, header: str = "", hops: int = 1, production: bool = False) -> None:
        if hops < 0:
            raise ValueError("hops must be zero or positive")
        normalized = header.strip().lower()
        if not normalized:
            if production and hops > 0:
                logger.warning(
                    "TRUSTED_PROXY_HEADER is not set; falling back to %s with %d hop(s). "
                    "Network rate limits may be keyed on spoofable addresses.",
                    DEFAULT_PROXY_HEADER,
                    hops,
                )
            normalized = DEFAULT_PROXY_HEADER
        self.header = normalized
        self.hops = hops

    def resolve(self, headers: Mapping[str, str], peer_ip: str | None = None) -> NetworkFingerprint:
        if self.hops == 0:
            return fingerprint_for(peer_ip)

        raw = _header_value(headers, self.header)
        if raw is None or not raw.strip():
            return fingerprint_for(peer_ip)

        chain = _split_chain(self.header, raw)
        if len(chain) < self.hops:
            return UNKNOWN_NETWORK
        return fingerprint_for(chain[-self.hops])
