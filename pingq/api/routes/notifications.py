"""Notification feed endpoints: pagination, lookup, live stream and calendar links."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import Response, StreamingResponse

from pingq.api.dependencies import get_pipeline
from pingq.calendar.links import (
    IncompleteEventError,
    google_calendar_url,
    ics_content,
    outlook_calendar_url,
)
from pingq.config import INITIAL_PAGE_SIZE, MAX_PAGE_SIZE, STREAM_QUEUE_SIZE
from pingq.notifications.broadcaster import Announcement, AnnouncementQueue, Resync
from pingq.notifications.models import Notification
from pingq.observability.logging import get_logger
from pingq.observability.telemetry import counter
from pingq.pipeline import NotificationPipeline

logger = get_logger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])

KEEPALIVE_SECONDS = 15.0


def format_sse(announcement: Announcement | Resync) -> str:
    """One server-sent event frame for ``announcement``."""
    data = json.dumps(announcement.to_dict(), separators=(",", ":"))
    return f"event: {announcement.event_name}\ndata: {data}\n\n"


async def announcement_stream(
    queue: AnnouncementQueue,
    is_disconnected: Any,
    keepalive: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """
    Yield SSE frames from ``queue`` until the client goes away.

    A comment frame is sent every ``keepalive`` seconds of silence so
    proxies keep the connection open.
    """
    yield ": connected\n\n"
    while not await is_disconnected():
        try:
            announcement = await asyncio.wait_for(queue.get(), timeout=keepalive)
        except TimeoutError:
            yield ": keepalive\n\n"
            continue
        yield format_sse(announcement)


@router.get("")
async def list_notifications(
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=INITIAL_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Newest-first page of notifications (1-based)."""
    return pipeline.page(page, per_page).to_dict()


@router.get("/stream")
async def stream_notifications(
    request: Request,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> StreamingResponse:
    """
    Live announcements as server-sent events (notification, fields-update, summary-update).

    A ``resync`` event means the client fell behind and announcements were
    dropped; it should refetch /api/notifications.
    """
    queue = AnnouncementQueue(maxsize=STREAM_QUEUE_SIZE)
    unsubscribe = pipeline.broadcaster.subscribe(queue)
    counter("api.stream.opened")

    async def frames() -> AsyncIterator[str]:
        try:
            async for frame in announcement_stream(queue, request.is_disconnected):
                yield frame
        finally:
            unsubscribe()
            counter("api.stream.closed")

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/test", status_code=status.HTTP_201_CREATED)
async def create_test_notification(
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Inject a sample notification through the normal ingestion path."""
    record = pipeline.create_test_notification()
    if record is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Test notification rejected")
    return record.to_dict()


def _require(pipeline: NotificationPipeline, notification_id: str) -> Notification:
    record = pipeline.get(notification_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return record


@router.get("/{notification_id}")
async def get_notification(
    notification_id: str,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    return _require(pipeline, notification_id).to_dict()


@router.get("/{notification_id}/calendar", response_model=None)
async def calendar_link(
    notification_id: str,
    kind: Literal["google", "outlook", "ics"] = Query(default="google"),
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, str] | Response:
    """
    "Add to calendar" target for a notification's extracted event.

    Returns:
        ``{"url": ...}`` for google/outlook, a text/calendar file for ics

    Raises:
        HTTPException: 404 if the notification or its event is missing,
            422 if the event lacks a title, date or time
    """
    record = _require(pipeline, notification_id)
    if record.event_details is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification has no event")

    try:
        if kind == "ics":
            body = ics_content(record.event_details, uid=f"{record.id}@pingq")
            return Response(
                content=body,
                media_type="text/calendar",
                headers={"Content-Disposition": f'attachment; filename="event-{record.id}.ics"'},
            )
        if kind == "outlook":
            return {"url": outlook_calendar_url(record.event_details)}
        return {"url": google_calendar_url(record.event_details)}
    except (IncompleteEventError, ValueError) as e:
        logger.warning("Cannot build %s calendar link for %s: %s", kind, record.id, e)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Event details are incomplete"
        ) from e
