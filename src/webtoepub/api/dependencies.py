"""Service wiring and FastAPI dependency providers.

The engine's collaborators are built once per application by
:func:`build_services` and stored on ``app.state.services``.  Route handlers
reach them through the ``get_*`` providers below, which work for both HTTP
and WebSocket routes because they take a :class:`HTTPConnection`.

Dependency graph::

    IpSafetyClassifier ← PinnedResolver ← SafeFetcher ─┬─ BatchFetcher
                                                      └─ analyze_novel ← JobOrchestrator
    JobBroadcaster ──────────────────────────────────────┴──────────────────┘
"""

from __future__ import annotations

import functools
from dataclasses import dataclass

import httpx
from fastapi.requests import HTTPConnection

from webtoepub.config.settings import Settings
from webtoepub.core.event_bus import JobBroadcaster
from webtoepub.scraper.batch import BatchFetcher
from webtoepub.scraper.http_fetcher import SafeFetcher, build_http_client
from webtoepub.scraper.ip_safety import IpSafetyClassifier
from webtoepub.scraper.resolver import Lookup, PinnedResolver
from webtoepub.scraper.tasks import Analyzer, JobOrchestrator, analyze_novel


@dataclass
class EngineServices:
    """Every long-lived collaborator the routes need."""

    http_client: httpx.AsyncClient
    classifier: IpSafetyClassifier
    resolver: PinnedResolver
    fetcher: SafeFetcher
    broadcaster: JobBroadcaster
    orchestrator: JobOrchestrator
    batch_fetcher: BatchFetcher

    async def aclose(self) -> None:
        """Cancel outstanding jobs and close the shared HTTP client."""
        await self.orchestrator.shutdown()
        await self.http_client.aclose()


def build_services(
    settings: Settings,
    *,
    lookup: Lookup | None = None,
    http_client: httpx.AsyncClient | None = None,
    analyzer: Analyzer | None = None,
) -> EngineServices:
    """Construct the engine from settings.

    Args:
        settings: Validated application settings.
        lookup: DNS lookup override; tests pass a fake so no real
            resolution happens.
        http_client: Client override; defaults to :func:`build_http_client`.
        analyzer: Crawl override; defaults to :func:`analyze_novel` bound to
            this engine's fetcher.

    Returns:
        A fully wired :class:`EngineServices`.
    """
    client = http_client or build_http_client()
    classifier = IpSafetyClassifier(allow_internal=settings.allow_internal_ips)
    resolver = PinnedResolver(classifier, lookup=lookup)
    fetcher = SafeFetcher(resolver, client, user_agent=settings.user_agent)
    broadcaster = JobBroadcaster()
    if analyzer is None:
        analyzer = functools.partial(
            analyze_novel, fetcher=fetcher, max_pages=settings.toc_max_pages
        )
    return EngineServices(
        http_client=client,
        classifier=classifier,
        resolver=resolver,
        fetcher=fetcher,
        broadcaster=broadcaster,
        orchestrator=JobOrchestrator(broadcaster, analyzer),
        batch_fetcher=BatchFetcher(
            fetcher, broadcaster, concurrency=settings.batch_concurrency
        ),
    )


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


def get_services(connection: HTTPConnection) -> EngineServices:
    """Return the services attached to the running application."""
    return connection.app.state.services


def get_fetcher(connection: HTTPConnection) -> SafeFetcher:
    return get_services(connection).fetcher


def get_broadcaster(connection: HTTPConnection) -> JobBroadcaster:
    return get_services(connection).broadcaster


def get_orchestrator(connection: HTTPConnection) -> JobOrchestrator:
    return get_services(connection).orchestrator


def get_batch_fetcher(connection: HTTPConnection) -> BatchFetcher:
    return get_services(connection).batch_fetcher
