"""Concurrent chapter fetching for ``POST /api/chapters-batch``.

Each chapter descriptor is fetched through the
:class:`~webtoepub.scraper.http_fetcher.SafeFetcher` and extracted with
:func:`~webtoepub.scraper.content_extractor.extract_chapter` in a worker
thread, so parsing a large chapter never stalls the event loop.  A failing
chapter never fails the batch: it becomes a ``failed`` result in its slot,
and results always come back in request order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

from webtoepub.api.metrics import chapter_fetches_total
from webtoepub.core.event_bus import JobBroadcaster
from webtoepub.core.exceptions import InvalidInputError
from webtoepub.scraper.content_extractor import extract_chapter
from webtoepub.scraper.http_fetcher import SafeFetcher

logger = logging.getLogger(__name__)


@dataclass
class ChapterFetchResult:
    """Outcome of one chapter in a batch.

    Attributes:
        index: Position of the descriptor in the request.
        url: Chapter URL, or ``None`` if the descriptor carried none.
        status: ``"success"`` or ``"failed"``.
        title: Chapter title (success only).
        content: Chapter body as XHTML paragraphs (success only).
        images: Image URLs found in the body (success only).
        error: Failure message (failed only).
    """

    index: int
    url: str | None
    status: str
    title: str | None = None
    content: str | None = None
    images: list[str] | None = field(default=None)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def _descriptor_url(descriptor: Any) -> str | None:
    if isinstance(descriptor, str):
        return descriptor.strip() or None
    if isinstance(descriptor, Mapping):
        url = descriptor.get("url")
        if isinstance(url, str) and url.strip():
            return url.strip()
    return None


def _descriptor_title(descriptor: Any) -> str | None:
    if isinstance(descriptor, Mapping):
        title = descriptor.get("title")
        if isinstance(title, str) and title.strip():
            return title.strip()
    return None


class BatchFetcher:
    """Fetch many chapters with bounded concurrency.

    Args:
        fetcher: SSRF-safe fetcher for every chapter page.
        broadcaster: Channel for ``chapter-progress`` events.
        concurrency: Maximum chapters in flight at once.
    """

    def __init__(
        self,
        fetcher: SafeFetcher,
        broadcaster: JobBroadcaster,
        *,
        concurrency: int = 4,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.fetcher = fetcher
        self.broadcaster = broadcaster
        self.concurrency = concurrency

    async def fetch_batch(
        self,
        chapters: Any,
        job_id: str | None = None,
        user_agent: str | None = None,
    ) -> list[ChapterFetchResult]:
        """Fetch every chapter descriptor and return one result per descriptor.

        Args:
            chapters: List of descriptors, each a ``{"url", "title"?}`` object
                or a bare URL string.
            job_id: When given, a ``chapter-progress`` event is published on
                this channel after each chapter finishes.
            user_agent: Overrides the default ``User-Agent`` for this batch.

        Returns:
            Results in the same order as ``chapters``.

        Raises:
            InvalidInputError: If ``chapters`` is not a list.
        """
        if not isinstance(chapters, list):
            raise InvalidInputError("chapters array is required")

        semaphore = asyncio.Semaphore(self.concurrency)
        total = len(chapters)
        completed = 0

        async def run(index: int, descriptor: Any) -> ChapterFetchResult:
            nonlocal completed
            async with semaphore:
                result = await self._fetch_one(index, descriptor, user_agent)
            completed += 1
            chapter_fetches_total.labels(status=result.status).inc()
            if job_id:
                self.broadcaster.publish(
                    job_id,
                    "chapter-progress",
                    {
                        "index": index,
                        "url": result.url,
                        "status": result.status,
                        "completed": completed,
                        "total": total,
                    },
                )
            return result

        logger.info("scraper: batch of %d chapter(s) started (job=%s)", total, job_id)
        results = await asyncio.gather(
            *(run(index, descriptor) for index, descriptor in enumerate(chapters))
        )
        failed = sum(1 for result in results if result.status == "failed")
        logger.info(
            "scraper: batch finished: %d succeeded, %d failed (job=%s)",
            total - failed,
            failed,
            job_id,
        )
        return list(results)

    async def _fetch_one(
        self, index: int, descriptor: Any, user_agent: str | None
    ) -> ChapterFetchResult:
        url = _descriptor_url(descriptor)
        if url is None:
            return ChapterFetchResult(
                index=index, url=None, status="failed", error="Chapter has no url"
            )
        try:
            resource = await self.fetcher.fetch(url, user_agent=user_agent)
            extracted = await asyncio.to_thread(
                extract_chapter, resource.text, resource.final_url
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("scraper: chapter %d (%s) failed: %s", index, url, exc)
            return ChapterFetchResult(
                index=index, url=url, status="failed", error=str(exc) or type(exc).__name__
            )
        return ChapterFetchResult(
            index=index,
            url=url,
            status="success",
            title=_descriptor_title(descriptor) or extracted.title,
            content=extracted.html,
            images=extracted.images,
        )
