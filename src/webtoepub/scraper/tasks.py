"""Background novel-analysis jobs.

A job is started by ``POST /api/novel-info`` and runs detached from the
request that triggered it::

    RECEIVED → QUEUED → RUNNING → COMPLETED
                                → FAILED

The request handler calls :meth:`JobOrchestrator.submit`, which validates the
input synchronously and schedules the crawl as an ``asyncio`` task.  The
task is wrapped by :meth:`JobOrchestrator._run_and_report`, which guarantees
that exactly one terminal event (``complete`` or ``error``) is published on
the job's channel no matter how the crawl ends.  Nothing raised inside the
crawl ever propagates out of the task.

Progress reaches the client only through the
:class:`~webtoepub.core.event_bus.JobBroadcaster`; the HTTP response carries
nothing but the ``queued`` acknowledgement.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from webtoepub.api.metrics import novel_jobs_total
from webtoepub.core.event_bus import TERMINAL_EVENTS, JobBroadcaster
from webtoepub.core.exceptions import ExtractionError, InvalidInputError
from webtoepub.scraper.content_extractor import ChapterLink, parse_novel_page
from webtoepub.scraper.http_fetcher import SafeFetcher

logger = logging.getLogger(__name__)

#: Finished jobs whose terminal state :meth:`JobOrchestrator.status` still reports.
FINISHED_JOB_HISTORY: int = 256

#: Async callable performing the crawl for one job.
Analyzer = Callable[[str, "JobReporter"], Awaitable[dict[str, Any]]]


class JobStatus(str, enum.Enum):
    """Lifecycle states of a novel-analysis job."""

    RECEIVED = "received"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class JobAcknowledgement:
    """Immediate reply to a job submission."""

    status: str = JobStatus.QUEUED.value
    message: str = "Analysis started. Please wait for socket events."

    def to_dict(self) -> dict[str, str]:
        return {"status": self.status, "message": self.message}


class JobReporter:
    """Publishes non-terminal events for one job.

    Handed to the analyzer so it can report progress without access to the
    broadcaster itself.  Terminal events are reserved for the orchestrator.
    """

    def __init__(self, broadcaster: JobBroadcaster, job_id: str) -> None:
        self.broadcaster = broadcaster
        self.job_id = job_id

    def progress(self, message: str, **extra: Any) -> None:
        """Publish a ``progress`` event with ``message`` and any extra fields."""
        self.emit("progress", {"message": message, **extra})

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        """Publish a custom non-terminal event.

        Raises:
            ValueError: If ``event`` is ``complete`` or ``error``.
        """
        if event in TERMINAL_EVENTS:
            raise ValueError(f"{event!r} is published by the orchestrator only")
        self.broadcaster.publish(self.job_id, event, payload)


# ---------------------------------------------------------------------------
# Default analyzer
# ---------------------------------------------------------------------------


async def analyze_novel(
    url: str,
    reporter: JobReporter,
    *,
    fetcher: SafeFetcher,
    max_pages: int,
) -> dict[str, Any]:
    """Crawl a novel's table of contents and return the ``complete`` payload.

    Follows TOC pagination until a page adds no new chapters, links back to
    a page already read, or ``max_pages`` pages have been fetched.

    Args:
        url: Table-of-contents URL submitted by the client.
        reporter: Progress sink for this job.
        fetcher: SSRF-safe fetcher used for every page.
        max_pages: Upper bound on TOC pages fetched.

    Returns:
        ``{"novel": {...}}`` with title, author, description, cover and the
        ordered chapter list.

    Raises:
        FetchError: If the first TOC page cannot be fetched.
        ExtractionError: If no chapter links were found.
    """
    reporter.progress(f"Fetching table of contents from {url}")
    page = await fetcher.fetch(url)
    info = await asyncio.to_thread(parse_novel_page, page.text, page.final_url)
    reporter.progress(
        f"Parsed novel page: {info.title or 'Untitled'}",
        chapters=len(info.chapters),
    )

    chapters: list[ChapterLink] = list(info.chapters)
    seen = {chapter.url for chapter in chapters}
    visited = {url, page.final_url}
    next_page = info.next_page
    pages = 1

    while next_page and next_page not in visited and pages < max_pages:
        visited.add(next_page)
        pages += 1
        reporter.progress(f"Fetching table of contents page {pages}", page=pages)
        try:
            more_page = await fetcher.fetch(next_page)
        except Exception as exc:  # noqa: BLE001
            logger.warning("scraper: TOC page %s failed, stopping pagination: %s", next_page, exc)
            break
        more = await asyncio.to_thread(
            parse_novel_page, more_page.text, more_page.final_url
        )
        new_links = [chapter for chapter in more.chapters if chapter.url not in seen]
        if not new_links:
            break
        for chapter in new_links:
            seen.add(chapter.url)
            chapters.append(chapter)
        next_page = more.next_page

    if not chapters:
        raise ExtractionError(page.final_url, "No chapters found")

    for index, chapter in enumerate(chapters):
        chapter.index = index
    info.chapters = chapters

    reporter.progress(f"Found {len(chapters)} chapters", chapters=len(chapters), pages=pages)
    return {"novel": info.to_payload()}


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class JobOrchestrator:
    """Accepts novel-analysis jobs and runs them as detached tasks.

    Jobs are not stored: live jobs are tracked until they finish, and only
    the last ``history`` terminal states are remembered after that.

    Args:
        broadcaster: Channel the job's events are published on.
        analyzer: Coroutine function performing the crawl.
        history: Number of finished jobs whose final state is kept.
    """

    def __init__(
        self,
        broadcaster: JobBroadcaster,
        analyzer: Analyzer,
        *,
        history: int = FINISHED_JOB_HISTORY,
    ) -> None:
        self.broadcaster = broadcaster
        self.analyzer = analyzer
        self.history = history
        self._tasks: set[asyncio.Task[None]] = set()
        self._states: dict[str, JobStatus] = {}
        self._finished: OrderedDict[str, JobStatus] = OrderedDict()

    def submit(self, url: str, job_id: str) -> JobAcknowledgement:
        """Validate a job request and schedule its crawl.

        Returns before any network I/O.  Every failure after this call
        returns is reported through the job's ``error`` event.

        Args:
            url: Table-of-contents URL.
            job_id: Opaque client-chosen identifier; also the channel name.

        Raises:
            InvalidInputError: If either field is empty or the URL does not
                parse as an absolute URL.
        """
        url = (url or "").strip()
        job_id = (job_id or "").strip()
        if not url:
            raise InvalidInputError("URL is required")
        if not job_id:
            raise InvalidInputError("jobId is required for session tracking")
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError, ValueError) as exc:
            raise InvalidInputError(f"Invalid URL: {url}") from exc
        if not parsed.scheme or not parsed.host:
            raise InvalidInputError(f"Invalid URL: {url}")

        self._states[job_id] = JobStatus.RECEIVED
        task = asyncio.get_running_loop().create_task(
            self._run_and_report(url, job_id),
            name=f"novel-job:{job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._states[job_id] = JobStatus.QUEUED
        logger.info("scraper: job %s queued for %s", job_id, url)
        return JobAcknowledgement()

    async def _run_and_report(self, url: str, job_id: str) -> None:
        """Run the analyzer and publish exactly one terminal event."""
        self._states[job_id] = JobStatus.RUNNING
        reporter = JobReporter(self.broadcaster, job_id)
        try:
            result = await self.analyzer(url, reporter)
        except asyncio.CancelledError:
            logger.warning("scraper: job %s cancelled", job_id)
            self._finish(job_id, "error", {"message": "Analysis cancelled"})
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("scraper: job %s failed: %s", job_id, exc)
            self._finish(job_id, "error", {"message": str(exc) or type(exc).__name__})
            return
        self._finish(job_id, "complete", result)
        logger.info("scraper: job %s completed", job_id)

    def _finish(self, job_id: str, event: str, payload: dict[str, Any]) -> None:
        status = JobStatus.COMPLETED if event == "complete" else JobStatus.FAILED
        self._states.pop(job_id, None)
        self._finished[job_id] = status
        self._finished.move_to_end(job_id)
        while len(self._finished) > self.history:
            self._finished.popitem(last=False)
        novel_jobs_total.labels(status=status.value).inc()
        self.broadcaster.publish(job_id, event, payload)

    def status(self, job_id: str) -> JobStatus | None:
        """Return the last known state of ``job_id``.

        ``None`` if the job was never submitted, or finished so long ago
        that its state has left the history.
        """
        return self._states.get(job_id) or self._finished.get(job_id)

    @property
    def active_count(self) -> int:
        """Number of jobs whose task has not finished yet."""
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every scheduled job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding jobs; each still publishes its ``error`` event."""
        # A task cancelled before its first step never enters _run_and_report.
        await asyncio.sleep(0)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("scraper: cancelled %d outstanding job(s)", len(tasks))
