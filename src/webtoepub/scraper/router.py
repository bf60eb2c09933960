"""FastAPI routers for novel analysis, chapter batches and the image proxy.

Every outbound request these routes trigger goes through the SSRF-safe
:class:`~webtoepub.scraper.http_fetcher.SafeFetcher`.

Routes (mounted under ``/api``):
    POST   /novel-info             validate, schedule a novel job, return ``queued``
    POST   /chapters-batch         fetch many chapters, one result per chapter
    GET    /proxy-image?url=...    stream a remote image back to the browser
    GET    /jobs/{job_id}/events   SSE stream of a job's events

Realtime routes (no prefix):
    WS     /ws                     join/leave job channels, receive job events
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Annotated, AsyncGenerator, Optional

import structlog
from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response, StreamingResponse

from webtoepub.api.dependencies import (
    get_batch_fetcher,
    get_broadcaster,
    get_fetcher,
    get_orchestrator,
)
from webtoepub.core.event_bus import JobBroadcaster, JobEvent, Subscriber
from webtoepub.core.exceptions import (
    FetchError,
    InvalidInputError,
    PayloadTooLargeError,
    SystemicError,
    UnsafeTargetError,
    WebToEpubError,
)
from webtoepub.core.schemas.novel import (
    ChaptersBatchRequest,
    ChaptersBatchResponse,
    ErrorResponse,
    JobQueuedResponse,
    NovelInfoRequest,
)
from webtoepub.scraper.batch import BatchFetcher
from webtoepub.scraper.config import DEFAULT_IMAGE_CONTENT_TYPE, SSE_KEEPALIVE_SECONDS
from webtoepub.scraper.http_fetcher import SafeFetcher
from webtoepub.scraper.tasks import JobOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()
realtime_router = APIRouter()

#: Client-facing messages for image proxy failures, by exception class.
_PROXY_ERROR_MESSAGES: dict[type[FetchError], str] = {
    UnsafeTargetError: "Access to this resource is forbidden",
    PayloadTooLargeError: "Image too large",
}


# ---------------------------------------------------------------------------
# Novel analysis
# ---------------------------------------------------------------------------


@router.post(
    "/novel-info",
    response_model=JobQueuedResponse,
    responses={400: {"model": ErrorResponse}},
)
async def submit_novel_info(
    payload: NovelInfoRequest,
    orchestrator: Annotated[JobOrchestrator, Depends(get_orchestrator)],
) -> dict[str, str]:
    """Start analysing a novel's table of contents in the background.

    The response only acknowledges the job.  Progress and the final result
    are published on the job's channel (``/ws`` or
    ``/api/jobs/{job_id}/events``), which the client should join *before*
    calling this route.

    Args:
        payload: ``{"url", "jobId"}``.
        orchestrator: Injected job orchestrator.

    Returns:
        ``{"status": "queued", "message": ...}``.

    Raises:
        InvalidInputError: Missing ``url``/``jobId`` or unparsable URL (400).
    """
    ack = orchestrator.submit(payload.url or "", payload.job_id or "")
    logger.info("novel_job_queued", job_id=payload.job_id, url=payload.url)
    return ack.to_dict()


# ---------------------------------------------------------------------------
# Chapter batch
# ---------------------------------------------------------------------------


@router.post(
    "/chapters-batch",
    response_model=ChaptersBatchResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def fetch_chapters_batch(
    payload: ChaptersBatchRequest,
    batch_fetcher: Annotated[BatchFetcher, Depends(get_batch_fetcher)],
) -> dict[str, list]:
    """Fetch a list of chapters and return one result per chapter.

    Individual chapter failures appear as ``{"status": "failed", "error"}``
    entries; they never fail the request.

    Raises:
        InvalidInputError: ``chapters`` is not an array (400).
        SystemicError: The batch itself could not run (500).
    """
    if not isinstance(payload.chapters, list):
        raise InvalidInputError("chapters array is required")
    try:
        results = await batch_fetcher.fetch_batch(
            payload.chapters,
            job_id=payload.job_id,
            user_agent=payload.user_agent,
        )
    except WebToEpubError:
        raise
    except Exception as exc:
        logger.error("chapters_batch_failed", error=str(exc), job_id=payload.job_id)
        raise SystemicError("Failed to fetch batch", details=str(exc)) from exc
    return {"results": [result.to_dict() for result in results]}


# ---------------------------------------------------------------------------
# Image proxy
# ---------------------------------------------------------------------------


@router.get(
    "/proxy-image",
    response_model=None,
    responses={
        200: {"content": {"image/*": {}}},
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def proxy_image(
    fetcher: Annotated[SafeFetcher, Depends(get_fetcher)],
    url: Optional[str] = None,
) -> Response:
    """Fetch a remote image on behalf of the browser.

    Args:
        fetcher: Injected SSRF-safe fetcher.
        url: Absolute ``http``/``https`` image URL.

    Returns:
        The image bytes with the upstream ``Content-Type`` (``image/jpeg``
        when the upstream sends none), or a JSON error: 400 for a missing
        or invalid URL, 403 for a blocked address, 413 for an oversized
        body, 500 for anything else.
    """
    if not url:
        raise InvalidInputError("URL required")
    try:
        resource = await fetcher.fetch(url)
    except InvalidInputError:
        raise
    except FetchError as exc:
        message = _PROXY_ERROR_MESSAGES.get(type(exc), "Failed to fetch image")
        logger.warning(
            "proxy_image_failed",
            url=url,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return JSONResponse(status_code=exc.status_code, content={"error": message})
    return Response(
        content=resource.body,
        media_type=resource.content_type or DEFAULT_IMAGE_CONTENT_TYPE,
    )


# ---------------------------------------------------------------------------
# Job event stream (SSE)
# ---------------------------------------------------------------------------


@router.get("/jobs/{job_id}/events")
async def stream_job_events(
    job_id: str,
    request: Request,
    broadcaster: Annotated[JobBroadcaster, Depends(get_broadcaster)],
) -> StreamingResponse:
    """Stream a job's events as Server-Sent Events.

    The subscription is registered before the response starts, so every
    event published after this request arrives is delivered.  Idle streams
    receive a ``: keepalive`` comment every 15 seconds.  The stream ends
    after the job's ``complete`` or ``error`` event, or when the client
    disconnects.

    **Event types**: ``progress``, ``chapter-progress``, ``complete``,
    ``error``::

        event: progress
        data: {"message": "Fetching table of contents from https://..."}
    """
    subscriber = broadcaster.subscribe(f"sse-{uuid.uuid4()}", job_id)
    logger.info(
        "sse_stream_opened",
        job_id=job_id,
        connection_id=subscriber.connection_id,
        subscribers=broadcaster.subscriber_count(job_id),
    )

    async def event_generator() -> AsyncGenerator[str, None]:
        try:
            yield ": connected\n\n"
            while True:
                try:
                    event = await asyncio.wait_for(
                        subscriber.get(), timeout=SSE_KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ": keepalive\n\n"
                    continue
                yield event.to_sse()
                if event.is_terminal:
                    break
        finally:
            broadcaster.disconnect(subscriber.connection_id)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


# ---------------------------------------------------------------------------
# Job event socket (WebSocket)
# ---------------------------------------------------------------------------


async def _forward_events(websocket: WebSocket, subscriber: Subscriber) -> None:
    """Send every event queued for ``subscriber`` to the socket, in order."""
    try:
        async for event in subscriber:
            await websocket.send_json(event.to_message())
    except (WebSocketDisconnect, RuntimeError):
        return


@realtime_router.websocket("/ws")
async def job_events_socket(
    websocket: WebSocket,
    broadcaster: Annotated[JobBroadcaster, Depends(get_broadcaster)],
) -> None:
    """Bidirectional job channel.

    Client messages::

        {"action": "join",  "jobId": "..."}
        {"action": "leave", "jobId": "..."}

    Server messages are ``{"event", "jobId", "data"}`` objects: a ``joined``
    or ``left`` acknowledgement for each action, then every event published
    on the joined jobs.  Malformed messages get a ``protocol-error`` reply.
    All outgoing messages pass through the connection's queue, so an
    acknowledgement always precedes the events published after it.
    """
    await websocket.accept()
    subscriber = broadcaster.connect(f"ws-{uuid.uuid4()}")
    connection_id = subscriber.connection_id
    sender = asyncio.create_task(_forward_events(websocket, subscriber))
    logger.info("websocket_connected", connection_id=connection_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                message = None
            if not isinstance(message, dict):
                subscriber.deliver(
                    JobEvent("", "protocol-error", {"message": "Messages must be JSON objects"})
                )
                continue

            action = message.get("action")
            job_id = message.get("jobId")
            if not isinstance(job_id, str) or not job_id:
                subscriber.deliver(
                    JobEvent("", "protocol-error", {"message": "jobId is required"})
                )
                continue

            if action == "join":
                broadcaster.subscribe(connection_id, job_id)
                subscriber.deliver(JobEvent(job_id, "joined", {"jobId": job_id}))
                logger.info("websocket_joined", connection_id=connection_id, job_id=job_id)
            elif action == "leave":
                broadcaster.unsubscribe(connection_id, job_id)
                subscriber.deliver(JobEvent(job_id, "left", {"jobId": job_id}))
            else:
                subscriber.deliver(
                    JobEvent(job_id, "protocol-error", {"message": f"Unknown action: {action}"})
                )
    except WebSocketDisconnect:
        logger.info("websocket_disconnected", connection_id=connection_id)
    finally:
        broadcaster.disconnect(connection_id)
        sender.cancel()
