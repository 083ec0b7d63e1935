"""Unit tests for the update broadcaster and the SSE announcement queue."""

from __future__ import annotations

import asyncio

import pytest

from pingq.api.routes.notifications import announcement_stream, format_sse
from pingq.notifications.broadcaster import (
    AnnouncementQueue,
    Arrived,
    Broadcaster,
    FieldsUpdated,
    Resync,
    SummaryResolved,
)
from pingq.notifications.models import Category, EnrichmentStatus, Importance
from pingq.observability.telemetry import get_counter


def test_all_subscribers_receive_announcements(make_record):
    broadcaster = Broadcaster()
    first, second = [], []
    broadcaster.subscribe(first.append)
    broadcaster.subscribe(second.append)

    broadcaster.arrived(make_record("a"))

    assert [a.notification_id for a in first] == ["a"]
    assert first == second


def test_unsubscribe_stops_delivery(make_record):
    broadcaster = Broadcaster()
    received = []
    unsubscribe = broadcaster.subscribe(received.append)

    unsubscribe()
    unsubscribe()  # idempotent
    broadcaster.arrived(make_record())

    assert received == []
    assert broadcaster.subscriber_count == 0


def test_failing_subscriber_does_not_block_others(make_record):
    broadcaster = Broadcaster()
    received = []

    def broken(_announcement):
        raise RuntimeError("subscriber bug")

    broadcaster.subscribe(broken)
    broadcaster.subscribe(received.append)
    broadcaster.summary_resolved("a", None)

    assert received == [SummaryResolved(notification_id="a", summary=None, cancelled=True)]
    assert get_counter("broadcast.subscriber_error") == 1


def test_announcement_payloads(make_record):
    record = make_record("a")
    record.category = Category.QUESTION
    record.importance = Importance.LOW
    record.enrichment_status = EnrichmentStatus.PENDING

    assert Arrived(record).to_dict()["id"] == "a"
    assert FieldsUpdated.of(record).to_dict() == {
        "id": "a",
        "category": "QUESTION",
        "importance": "LOW",
        "enrichment_status": "PENDING",
        "summary_pending": True,
        "event_details": None,
    }
    assert SummaryResolved("a", "short", False).to_dict() == {
        "id": "a",
        "summary": "short",
        "cancelled": False,
    }


def test_arrived_payload_is_json_ready(make_record):
    data = Arrived(make_record("a", dm=True)).to_dict()

    assert data["timestamp"] == "2025-06-01T11:59:00+00:00"
    assert data["origin"]["kind"] == "direct_message"
    assert data["origin"]["display_name"] == "Direct Message"
    assert data["enrichment_status"] == "NONE"
    assert data["summary_pending"] is False


def test_format_sse():
    frame = format_sse(SummaryResolved("a", "hi", False))
    assert frame == 'event: summary-update\ndata: {"id":"a","summary":"hi","cancelled":false}\n\n'


@pytest.mark.asyncio
async def test_queue_overflow_replaces_backlog_with_resync(make_record):
    queue = AnnouncementQueue(maxsize=2)

    queue(Arrived(make_record("m0")))
    queue(FieldsUpdated.of(make_record("m0")))
    queue(SummaryResolved("m0", None, True))

    # The lost arrival is signalled before any later update for the same record
    assert queue.qsize() == 2
    marker = await queue.get()
    assert isinstance(marker, Resync)
    assert marker.dropped == 2
    assert (await queue.get()).notification_id == "m0"
    assert get_counter("broadcast.queue_overflow") == 1


def test_queue_needs_room_for_resync_marker():
    with pytest.raises(ValueError):
        AnnouncementQueue(maxsize=1)


def test_resync_frame():
    assert format_sse(Resync(dropped=3)) == 'event: resync\ndata: {"dropped":3}\n\n'


@pytest.mark.asyncio
async def test_queue_accepts_announcements_from_other_threads():
    queue = AnnouncementQueue(maxsize=4)

    await asyncio.to_thread(queue, SummaryResolved("t", "x", False))

    assert (await asyncio.wait_for(queue.get(), timeout=1)).notification_id == "t"


@pytest.mark.asyncio
async def test_announcement_stream_until_disconnect():
    queue = AnnouncementQueue(maxsize=4)
    queue(SummaryResolved("a", "hi", False))
    checks = iter([False, False, True])

    async def is_disconnected():
        return next(checks)

    frames = [frame async for frame in announcement_stream(queue, is_disconnected, keepalive=0.01)]

    assert frames[0] == ": connected\n\n"
    assert frames[1].startswith("event: summary-update\n")
    assert frames[2] == ": keepalive\n\n"
    assert len(frames) == 3
