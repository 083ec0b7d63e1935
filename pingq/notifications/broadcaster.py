"""
Update broadcaster: fan-out of pipeline announcements to subscribers.

Three announcement kinds, delivered at most once per transition:

- ``Arrived``         full record, announced synchronously on ingestion
- ``FieldsUpdated``   category / importance / enrichment status (+ event details)
- ``SummaryResolved`` summary text, or ``None`` with ``cancelled=True``

Arrival is announced before the enrichment task for the record is created,
so per-record causal order (arrival before updates) holds for every
subscriber. A failing subscriber is logged and skipped.

SSE clients consume through ``AnnouncementQueue``, which answers overflow
with a ``Resync`` marker instead of silently dropping single items.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pingq.notifications.models import (
    Category,
    EnrichmentStatus,
    EventDetails,
    Importance,
    Notification,
)
from pingq.observability.logging import get_logger
from pingq.observability.telemetry import counter

logger = get_logger(__name__)


@dataclass(frozen=True)
class Arrived:
    record: Notification

    event_name = "notification"

    @property
    def notification_id(self) -> str:
        return self.record.id

    def to_dict(self) -> dict[str, Any]:
        return self.record.to_dict()


@dataclass(frozen=True)
class FieldsUpdated:
    notification_id: str
    category: Category | None
    importance: Importance | None
    enrichment_status: EnrichmentStatus
    event_details: EventDetails | None = None

    event_name = "fields-update"

    @classmethod
    def of(cls, record: Notification) -> FieldsUpdated:
        return cls(
            notification_id=record.id,
            category=record.category,
            importance=record.importance,
            enrichment_status=record.enrichment_status,
            event_details=record.event_details,
        )

    def to_dict(self) -> dict[str, Any]:
        details = self.event_details
        return {
            "id": self.notification_id,
            "category": self.category.value if self.category else None,
            "importance": self.importance.value if self.importance else None,
            "enrichment_status": self.enrichment_status.value,
            "summary_pending": self.enrichment_status is EnrichmentStatus.PENDING,
            "event_details": details.__dict__.copy() if details else None,
        }


@dataclass(frozen=True)
class SummaryResolved:
    notification_id: str
    summary: str | None
    cancelled: bool

    event_name = "summary-update"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.notification_id, "summary": self.summary, "cancelled": self.cancelled}


@dataclass(frozen=True)
class Resync:
    """Stream marker: announcements were dropped, refetch the feed."""

    dropped: int

    event_name = "resync"
    notification_id = None

    def to_dict(self) -> dict[str, Any]:
        return {"dropped": self.dropped}


Announcement = Arrived | FieldsUpdated | SummaryResolved
Subscriber = Callable[[Announcement], None]


class Broadcaster:
    """Synchronous fan-out to zero or more subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber``; returns a callable that unsubscribes it."""
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def announce(self, announcement: Announcement) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        counter(f"broadcast.{announcement.event_name}")
        for subscriber in subscribers:
            try:
                subscriber(announcement)
            except Exception:
                counter("broadcast.subscriber_error")
                logger.exception(
                    "Subscriber %r failed on %s for %s",
                    subscriber,
                    announcement.event_name,
                    announcement.notification_id,
                )

    # Convenience emitters matching the three announcement kinds.

    def arrived(self, record: Notification) -> None:
        self.announce(Arrived(record=record))

    def fields_updated(self, record: Notification) -> None:
        self.announce(FieldsUpdated.of(record))

    def summary_resolved(self, notification_id: str, summary: str | None) -> None:
        self.announce(
            SummaryResolved(notification_id=notification_id, summary=summary, cancelled=summary is None)
        )


class AnnouncementQueue:
    """
    Subscriber that buffers announcements for one async consumer (e.g. an SSE client).

    ``announce`` may be called from any thread; items are handed to the owning
    loop. When the buffer overflows everything buffered is discarded and a
    single ``Resync`` takes its place, so the consumer never gets an update
    for a record whose arrival it lost.
    """

    def __init__(self, maxsize: int = 256, loop: asyncio.AbstractEventLoop | None = None):
        if maxsize < 2:
            raise ValueError("maxsize must leave room for a resync marker")
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[Announcement | Resync] = asyncio.Queue(maxsize=maxsize)

    def __call__(self, announcement: Announcement) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._put(announcement)
        else:
            self._loop.call_soon_threadsafe(self._put, announcement)

    def _put(self, announcement: Announcement | Resync) -> None:
        if self._queue.full():
            dropped = 0
            while not self._queue.empty():
                self._queue.get_nowait()
                dropped += 1
            counter("broadcast.queue_overflow")
            logger.warning("Stream queue overflowed; dropped %d announcements", dropped)
            self._queue.put_nowait(Resync(dropped=dropped))
        self._queue.put_nowait(announcement)

    async def get(self) -> Announcement | Resync:
        return await self._queue.get()

    def qsize(self) -> int:
        return self._queue.qsize()
