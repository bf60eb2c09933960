"""DNS resolve-and-pin for outbound requests.

Resolving a hostname, validating the address and then letting the HTTP
client resolve the same hostname again leaves a window in which the record
can change (DNS rebinding).  :class:`PinnedResolver` closes that window:
it resolves exactly once, validates the result, and hands back the single
address the caller must connect to.  :mod:`webtoepub.scraper.http_fetcher`
then connects to that address directly, so the HTTP client never performs
a lookup of its own.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable

from webtoepub.core.exceptions import NetworkError, UnsafeTargetError
from webtoepub.scraper.ip_safety import IpSafetyClassifier

logger = logging.getLogger(__name__)

#: Async callable mapping a hostname to one ``(address, family)`` pair.
Lookup = Callable[[str], Awaitable[tuple[str, int]]]


@dataclass(frozen=True)
class ResolvedAddress:
    """A validated address bound to the hostname it was resolved for.

    Attributes:
        hostname: The hostname that was looked up.
        address: The resolved address; the only one that may be connected to.
        family: ``4`` or ``6``.
    """

    hostname: str
    address: str
    family: int


async def system_lookup(hostname: str) -> tuple[str, int]:
    """Resolve ``hostname`` with the system resolver and return the first address.

    Runs ``getaddrinfo`` in the event loop's default executor so that a slow
    resolver suspends only the calling task.

    Raises:
        NetworkError: If the hostname cannot be resolved.
    """
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise NetworkError(f"DNS lookup failed for {hostname}: {exc}") from exc
    if not infos:
        raise NetworkError(f"DNS lookup returned no addresses for {hostname}")

    family, _type, _proto, _canonname, sockaddr = infos[0]
    return str(sockaddr[0]), 6 if family == socket.AF_INET6 else 4


class PinnedResolver:
    """Resolve a hostname once and validate the address before anyone uses it.

    Args:
        classifier: Classifier every resolved address is checked against.
        lookup: Async hostname lookup.  Defaults to :func:`system_lookup`;
            tests inject a fake to keep DNS off the network.
    """

    def __init__(self, classifier: IpSafetyClassifier, lookup: Lookup | None = None) -> None:
        self.classifier = classifier
        self._lookup: Lookup = lookup or system_lookup

    async def resolve_and_pin(self, hostname: str) -> ResolvedAddress:
        """Resolve ``hostname`` and return the validated address to connect to.

        Every call performs a fresh lookup and a fresh classification; nothing
        is cached between calls, so a redirect back to a previously seen host
        is re-validated too.

        Raises:
            UnsafeTargetError: If the resolved address fails the classifier.
            NetworkError: If resolution fails.
        """
        address, family = await self._lookup(hostname)
        verdict = self.classifier.verdict(address)
        if not verdict.safe:
            logger.warning("scraper: %s resolved to blocked address %s", hostname, address)
            raise UnsafeTargetError(hostname=hostname, address=address)
        return ResolvedAddress(
            hostname=hostname,
            address=address,
            family=verdict.family or family,
        )
