"""Shared pytest fixtures for WebToEpub engine tests.

Fixture summary
---------------
fake_dns        - In-memory DNS table standing in for the system resolver.
settings        - Default Settings, isolated from any local .env file.
http_client     - The hardened outbound httpx client, closed after the test.
fetcher         - SafeFetcher wired to ``fake_dns`` and ``http_client``.
broadcaster     - Fresh JobBroadcaster.
services        - Full engine wiring (``build_services``) over ``fake_dns``.
api_client      - httpx.AsyncClient driving the FastAPI app in-process.

No fixture performs real DNS or network I/O.  Outbound HTTP is mocked with
``respx`` in the individual tests; the pinned request URL carries the
address from ``fake_dns`` as its host, so respx routes are declared against
those addresses.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from webtoepub.api.dependencies import EngineServices, build_services
from webtoepub.api.main import create_app
from webtoepub.config.settings import Settings
from webtoepub.core.event_bus import JobBroadcaster
from webtoepub.core.exceptions import NetworkError
from webtoepub.scraper.http_fetcher import SafeFetcher, build_http_client
from webtoepub.scraper.ip_safety import IpSafetyClassifier
from webtoepub.scraper.resolver import PinnedResolver

#: Public test address used for most hostnames (TEST-NET ranges are blocked).
PUBLIC_ADDRESS = "93.184.216.34"


class FakeDNS:
    """Async hostname lookup backed by a dict.

    Unknown hostnames fail the way an NXDOMAIN would.  Every lookup is
    recorded in :attr:`calls`, so tests can assert that validation happened
    before any resolution.
    """

    def __init__(self) -> None:
        self.table: dict[str, str] = {}
        self.calls: list[str] = []

    def add(self, hostname: str, address: str) -> None:
        self.table[hostname] = address

    async def __call__(self, hostname: str) -> tuple[str, int]:
        self.calls.append(hostname)
        try:
            address = self.table[hostname]
        except KeyError:
            raise NetworkError(f"DNS lookup failed for {hostname}") from None
        return address, 6 if ":" in address else 4


@pytest.fixture
def fake_dns() -> FakeDNS:
    dns = FakeDNS()
    dns.add("novels.example", PUBLIC_ADDRESS)
    dns.add("images.example", "1.1.1.1")
    dns.add("internal.example", "127.0.0.1")
    return dns


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, allow_internal_ips=False, toc_max_pages=5)


@pytest_asyncio.fixture
async def http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    client = build_http_client()
    yield client
    await client.aclose()


@pytest.fixture
def fetcher(fake_dns: FakeDNS, http_client: httpx.AsyncClient) -> SafeFetcher:
    resolver = PinnedResolver(IpSafetyClassifier(), lookup=fake_dns)
    return SafeFetcher(resolver, http_client)


@pytest.fixture
def broadcaster() -> JobBroadcaster:
    return JobBroadcaster()


@pytest_asyncio.fixture
async def services(
    settings: Settings, fake_dns: FakeDNS
) -> AsyncGenerator[EngineServices, None]:
    engine = build_services(settings, lookup=fake_dns)
    yield engine
    await engine.aclose()


@pytest_asyncio.fixture
async def api_client(
    settings: Settings, services: EngineServices
) -> AsyncGenerator[AsyncClient, None]:
    """Yield an AsyncClient bound to an app using the ``services`` fixture."""
    app = create_app(settings, services=services)
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        yield client
