"""In-process pub/sub event bus for job progress updates.

Background crawl work publishes events onto a job's channel; every client
connection that joined that job receives them.  Channels behave like rooms
keyed by the opaque, client-supplied ``jobId``::

    broadcaster = JobBroadcaster()

    subscriber = broadcaster.connect()               # one per client connection
    broadcaster.subscribe(subscriber.connection_id, job_id)

    broadcaster.publish(job_id, "progress", {"message": "Fetching TOC"})

    event = await subscriber.get()                   # JobEvent(job_id, "progress", {...})

Delivery guarantees:

- Live broadcast only.  A connection that joins after an event was
  published never receives it; nothing is stored.
- Per-publisher FIFO.  Events published for one job by one task reach each
  current subscriber in emission order.  Nothing is promised across jobs.

Message shapes (``data`` payloads):

``progress``          ``{"message": str, ...}``
``complete``          ``{"novel": {...}}``
``error``             ``{"message": str}``
``chapter-progress``  ``{"index", "url", "status", "completed", "total"}``

The subscription table is the one piece of shared mutable state in the
engine; all mutations and the publish snapshot happen under a lock so a
subscribe racing a publish can never corrupt another job's subscriber set.
``publish`` must be called from the event-loop thread that owns the
subscribers' queues.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

#: Events after which a job emits nothing further.
TERMINAL_EVENTS: frozenset[str] = frozenset({"complete", "error"})


# ---------------------------------------------------------------------------
# Event and subscriber
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobEvent:
    """One event published on a job channel.

    Attributes:
        job_id: Channel the event was published on.
        event: Event name (e.g. ``"progress"``, ``"error"``).
        data: JSON-serialisable payload.
    """

    job_id: str
    event: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        """``True`` for ``complete`` and ``error``."""
        return self.event in TERMINAL_EVENTS

    def to_sse(self) -> str:
        """Render the event as a Server-Sent Events frame."""
        return f"event: {self.event}\ndata: {json.dumps(self.data)}\n\n"

    def to_message(self) -> dict[str, Any]:
        """Render the event as a WebSocket JSON message."""
        return {"event": self.event, "jobId": self.job_id, "data": self.data}


class Subscriber:
    """Receiving end of one client connection.

    Events from every job the connection joined land in a single unbounded
    queue, in the order they were published.
    """

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self._queue: asyncio.Queue[JobEvent] = asyncio.Queue()

    def deliver(self, event: JobEvent) -> None:
        self._queue.put_nowait(event)

    async def get(self) -> JobEvent:
        """Wait for and return the next event."""
        return await self._queue.get()

    def drain(self) -> list[JobEvent]:
        """Return every event already queued without waiting."""
        events: list[JobEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def __aiter__(self) -> Subscriber:
        return self

    async def __anext__(self) -> JobEvent:
        return await self.get()


# ---------------------------------------------------------------------------
# Broadcaster
# ---------------------------------------------------------------------------


class JobBroadcaster:
    """Room-style publish/subscribe keyed by job identifier."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: dict[str, Subscriber] = {}
        self._rooms: dict[str, set[str]] = {}

    def connect(self, connection_id: str | None = None) -> Subscriber:
        """Register a client connection and return its subscriber.

        Args:
            connection_id: Identifier for the connection; a UUID is generated
                when omitted.  Connecting an existing id returns its
                existing subscriber.
        """
        connection_id = connection_id or str(uuid.uuid4())
        with self._lock:
            subscriber = self._connections.get(connection_id)
            if subscriber is None:
                subscriber = Subscriber(connection_id)
                self._connections[connection_id] = subscriber
        return subscriber

    def subscribe(self, connection_id: str, job_id: str) -> Subscriber:
        """Join ``connection_id`` to the channel for ``job_id``.

        Connects the id first if it is not yet known.  Joining twice is a
        no-op.
        """
        subscriber = self.connect(connection_id)
        with self._lock:
            self._rooms.setdefault(job_id, set()).add(connection_id)
        logger.debug("event_bus: %s joined job %s", connection_id, job_id)
        return subscriber

    def unsubscribe(self, connection_id: str, job_id: str) -> None:
        """Remove ``connection_id`` from the channel for ``job_id``."""
        with self._lock:
            members = self._rooms.get(job_id)
            if members is None:
                return
            members.discard(connection_id)
            if not members:
                del self._rooms[job_id]

    def disconnect(self, connection_id: str) -> int:
        """Forget a connection and leave every channel it had joined.

        Returns:
            Number of queued events the connection never consumed; they are
            discarded.
        """
        with self._lock:
            subscriber = self._connections.pop(connection_id, None)
            for job_id in [j for j, members in self._rooms.items() if connection_id in members]:
                members = self._rooms[job_id]
                members.discard(connection_id)
                if not members:
                    del self._rooms[job_id]
        dropped = len(subscriber.drain()) if subscriber is not None else 0
        logger.debug(
            "event_bus: %s disconnected, %d undelivered event(s) dropped",
            connection_id,
            dropped,
        )
        return dropped

    def publish(self, job_id: str, event: str, payload: dict[str, Any] | None = None) -> int:
        """Deliver an event to every current subscriber of ``job_id``.

        Args:
            job_id: Channel to publish on.
            event: Event name.
            payload: JSON-serialisable event data.

        Returns:
            Number of connections the event was delivered to.  ``0`` is not
            an error: nobody may be listening yet, or anymore.
        """
        job_event = JobEvent(job_id=job_id, event=event, data=dict(payload or {}))
        with self._lock:
            targets = [
                self._connections[cid]
                for cid in self._rooms.get(job_id, ())
                if cid in self._connections
            ]
        for subscriber in targets:
            subscriber.deliver(job_event)
        logger.debug(
            "event_bus: published %s for job %s to %d subscriber(s)",
            event,
            job_id,
            len(targets),
        )
        return len(targets)

    def subscriber_count(self, job_id: str) -> int:
        """Return how many connections are currently joined to ``job_id``."""
        with self._lock:
            return len(self._rooms.get(job_id, ()))
