"""IP safety classifier for outbound requests.

Decides whether a resolved address may be connected to.  The classifier is
pure: no I/O, no caching, and it never raises.  Anything that fails to parse
as an IP address is unsafe (fail-closed).

Blocked IPv4 ranges::

    0.0.0.0/8        current network
    10.0.0.0/8       private
    100.64.0.0/10    carrier-grade NAT
    127.0.0.0/8      loopback
    169.254.0.0/16   link-local (cloud metadata endpoints live here)
    172.16.0.0/12    private
    192.0.2.0/24     TEST-NET-1
    192.168.0.0/16   private
    198.18.0.0/15    benchmarking
    198.51.100.0/24  TEST-NET-2
    203.0.113.0/24   TEST-NET-3
    224.0.0.0/4      multicast
    240.0.0.0/4      reserved and broadcast

Blocked IPv6 ranges::

    ::/128           unspecified
    ::1/128          loopback
    fc00::/7         unique-local
    fe80::/10        link-local
    ff00::/8         multicast
    2001:db8::/32    documentation

IPv4-mapped IPv6 addresses are judged by the IPv4 address they embed.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Blocked networks
# ---------------------------------------------------------------------------

_BLOCKED_V4: tuple[ipaddress.IPv4Network, ...] = tuple(
    ipaddress.IPv4Network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.0.2.0/24",
        "192.168.0.0/16",
        "198.18.0.0/15",
        "198.51.100.0/24",
        "203.0.113.0/24",
        "224.0.0.0/4",
        "240.0.0.0/4",
    )
)

_BLOCKED_V6: tuple[ipaddress.IPv6Network, ...] = tuple(
    ipaddress.IPv6Network(cidr)
    for cidr in (
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
        "ff00::/8",
        "2001:db8::/32",
    )
)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AddressVerdict:
    """Outcome of classifying one address.

    Attributes:
        address: The address string as given.
        family: ``4`` or ``6``, or ``None`` if the address did not parse.
        safe: ``True`` if a connection to ``address`` is permitted.
    """

    address: str
    family: int | None
    safe: bool


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class IpSafetyClassifier:
    """Classify addresses against private, reserved and special-purpose ranges.

    Args:
        allow_internal: Disable every range check.  Operator configuration
            for deployments inside a trusted private network; off by default.
            Strings that do not parse as an address stay unsafe either way.
    """

    def __init__(self, allow_internal: bool = False) -> None:
        self.allow_internal = allow_internal

    def verdict(self, address: str) -> AddressVerdict:
        """Classify ``address`` and return the full verdict."""
        try:
            ip = ipaddress.ip_address(address)
        except (ValueError, TypeError):
            return AddressVerdict(address=str(address), family=None, safe=False)

        if self.allow_internal:
            return AddressVerdict(address=address, family=ip.version, safe=True)

        return AddressVerdict(address=address, family=ip.version, safe=_is_public(ip))

    def is_safe(self, address: str) -> bool:
        """Return ``True`` if ``address`` may be connected to."""
        return self.verdict(address).safe


def _is_public(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(ip, ipaddress.IPv6Address):
        mapped = ip.ipv4_mapped
        if mapped is not None:
            return _is_public(mapped)
        return not any(ip in network for network in _BLOCKED_V6)
    return not any(ip in network for network in _BLOCKED_V4)
