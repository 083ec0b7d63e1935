"""Pipeline tests: ingestion, background enrichment and announcements end to end

Uses the scripted transport from conftest, so no network is involved.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest
from pydantic import ValidationError

from pingq.notifications.broadcaster import Arrived, FieldsUpdated, SummaryResolved
from pingq.notifications.models import Category, EnrichmentStatus, Importance
from pingq.observability.telemetry import get_counter
from pingq.pipeline import SAMPLE_MESSAGES
from pingq.settings import PipelineSettings

EVENT_REPLY = (
    '{"has_event": true, "title": "Team meeting", "date": "2025-06-02", "time": "2pm", '
    '"end_date": "", "end_time": "", "location": "", "description": "Team meeting"}'
)


@pytest.fixture
def announcements():
    return []


@pytest.fixture
def pipeline(make_pipeline, announcements, guild):
    pipeline = make_pipeline()
    pipeline.broadcaster.subscribe(announcements.append)
    pipeline.on_ready([guild])
    return pipeline


async def wait_for_call(transport, capability: str) -> None:
    while capability not in transport.capabilities_called():
        await asyncio.sleep(0)


def for_id(announcements, notification_id):
    return [a for a in announcements if a.notification_id == notification_id]


# ============================================================================
# Store capacity and ordering
# ============================================================================


def test_capacity_bound_with_default_capacity(make_pipeline, make_event):
    pipeline = make_pipeline(PipelineSettings())

    for i in range(1001):
        pipeline.on_event(make_event(f"m{i}", body="short"))

    assert pipeline.store.size() == 1000
    assert pipeline.get("m0") is None
    assert pipeline.get("m1") is not None
    assert pipeline.page(1, 20).records[0].id == "m1000"


def test_disabled_enrichment_leaves_record_untouched(make_pipeline, make_event, transport):
    pipeline = make_pipeline(PipelineSettings())

    record = pipeline.on_event(make_event(body="x" * 500))

    assert record.enrichment_status is EnrichmentStatus.NONE
    assert pipeline.coordinator.in_flight == 0
    stored = pipeline.get("m1")
    assert stored.enrichment_status is EnrichmentStatus.NONE
    assert stored.summary is None
    assert transport.calls == []


def test_malformed_event_is_dropped(make_pipeline):
    pipeline = make_pipeline(PipelineSettings())

    assert pipeline.on_event({"message": {"id": "1"}, "body": None}) is None
    assert pipeline.on_event({"body": "no id"}) is None
    assert pipeline.store.size() == 0
    assert get_counter("pipeline.event_rejected") == 2


def test_duplicate_event_is_dropped(make_pipeline, make_event, announcements):
    pipeline = make_pipeline(PipelineSettings())
    pipeline.broadcaster.subscribe(announcements.append)

    assert pipeline.on_event(make_event("dup")) is not None
    assert pipeline.on_event(make_event("dup", body="again")) is None

    assert pipeline.store.size() == 1
    assert pipeline.get("dup").body != "again"
    assert len(announcements) == 1


def test_disconnect_clears_directory_only(pipeline, make_event):
    pipeline.apply_settings({"enable_summarization": False})
    pipeline.on_event(make_event())
    assert pipeline.is_connected

    pipeline.on_disconnect()

    assert not pipeline.is_connected
    assert pipeline.directory.is_empty()
    assert pipeline.store.size() == 1
    assert pipeline.settings.enable_summarization is False


# ============================================================================
# Summary lifecycle
# ============================================================================


@pytest.mark.asyncio
async def test_summary_completes(pipeline, transport, announcements, make_event):
    transport.replies["summarize"] = "X"

    pipeline.on_event(make_event(body="y" * 150))
    await pipeline.drain()

    record = pipeline.get("m1")
    assert record.enrichment_status is EnrichmentStatus.COMPLETE
    assert record.summary == "X"

    events = for_id(announcements, "m1")
    assert isinstance(events[0], Arrived)
    resolved = [a for a in events if isinstance(a, SummaryResolved)]
    assert resolved == [SummaryResolved(notification_id="m1", summary="X", cancelled=False)]


@pytest.mark.asyncio
async def test_summary_failure_cancels(pipeline, transport, announcements, make_event):
    transport.replies["summarize"] = None

    pipeline.on_event(make_event(body="y" * 150))
    await pipeline.drain()

    record = pipeline.get("m1")
    assert record.enrichment_status is EnrichmentStatus.CANCELLED
    assert record.summary is None
    resolved = [a for a in announcements if isinstance(a, SummaryResolved)]
    assert resolved == [SummaryResolved(notification_id="m1", summary=None, cancelled=True)]


@pytest.mark.asyncio
async def test_summary_exception_cancels(pipeline, transport, make_event):
    transport.replies["summarize"] = RuntimeError("connection reset")

    pipeline.on_event(make_event(body="y" * 150))
    await pipeline.drain()

    assert pipeline.get("m1").enrichment_status is EnrichmentStatus.CANCELLED


@pytest.mark.asyncio
async def test_short_message_gets_no_summary_but_is_categorized(pipeline, transport, make_event):
    pipeline.on_event(make_event(body="Do you want to grab some coffee?"))
    await pipeline.drain()

    record = pipeline.get("m1")
    assert record.enrichment_status is EnrichmentStatus.NONE
    assert record.category is Category.ANNOUNCEMENT
    assert record.importance is Importance.HIGH
    assert "summarize" not in transport.capabilities_called()


@pytest.mark.asyncio
async def test_whitespace_body_follows_length_rule(pipeline, transport, make_event):
    record = pipeline.on_event(make_event(body=" " * 150))
    await pipeline.drain()

    assert record.enrichment_status is EnrichmentStatus.PENDING
    assert pipeline.get("m1").enrichment_status is EnrichmentStatus.COMPLETE
    assert "summarize" in transport.capabilities_called()


@pytest.mark.asyncio
async def test_ingestion_returns_before_enrichment(pipeline, transport, long_message, make_event):
    gate = transport.gate("summarize")

    returned = pipeline.on_event(make_event(body=long_message))
    # Length mode decides before storing: the caller already sees PENDING
    assert returned.enrichment_status is EnrichmentStatus.PENDING
    assert pipeline.get("m1").summary_pending is True

    await wait_for_call(transport, "summarize")
    # Readers see the in-flight state as a valid record
    pending = pipeline.page(1, 20).records[0]
    assert pending.enrichment_status is EnrichmentStatus.PENDING
    assert pending.summary is None

    # Ingestion and reads keep working while the summary is in flight
    pipeline.on_event(make_event("m2", body="hi"))
    assert pipeline.store.size() == 2

    gate.set()
    await pipeline.drain()
    assert pipeline.get("m1").enrichment_status is EnrichmentStatus.COMPLETE


@pytest.mark.asyncio
async def test_eviction_mid_flight_is_a_silent_noop(make_pipeline, transport, announcements, make_event, long_message):
    pipeline = make_pipeline(capacity=1)
    pipeline.broadcaster.subscribe(announcements.append)
    gate = transport.gate("summarize")

    pipeline.on_event(make_event("m1", body=long_message))
    await wait_for_call(transport, "summarize")
    pipeline.on_event(make_event("m2", body="hi"))  # evicts m1

    gate.set()
    await pipeline.drain()

    assert pipeline.get("m1") is None
    assert pipeline.store.size() == 1
    assert pipeline.get("m2").body == "hi"
    assert not any(isinstance(a, SummaryResolved) for a in for_id(announcements, "m1"))


# ============================================================================
# Ingestion from connector threads
# ============================================================================


@pytest.mark.asyncio
async def test_event_from_worker_thread_is_enriched_on_bound_loop(make_pipeline, make_event, long_message, announcements):
    pipeline = make_pipeline()
    pipeline.broadcaster.subscribe(announcements.append)
    pipeline.bind_loop(asyncio.get_running_loop())

    returned = await asyncio.to_thread(pipeline.on_event, make_event("t1", body=long_message))
    assert returned.enrichment_status is EnrichmentStatus.PENDING

    await pipeline.drain()

    assert pipeline.get("t1").enrichment_status is EnrichmentStatus.COMPLETE
    assert pipeline.coordinator.in_flight == 0
    assert isinstance(for_id(announcements, "t1")[0], Arrived)
    assert isinstance(for_id(announcements, "t1")[-1], SummaryResolved)


def test_event_without_any_loop_is_stored_unenriched(make_pipeline, make_event, long_message, transport, announcements):
    pipeline = make_pipeline()
    pipeline.broadcaster.subscribe(announcements.append)

    returned = pipeline.on_event(make_event("p1", body=long_message))

    assert returned.enrichment_status is EnrichmentStatus.NONE
    assert pipeline.get("p1").enrichment_status is EnrichmentStatus.NONE
    assert [type(a) for a in announcements] == [Arrived]
    assert transport.calls == []
    assert get_counter("enrichment.skipped_no_loop") == 1


@pytest.mark.asyncio
async def test_arrival_precedes_updates_for_every_record(pipeline, make_event, long_message, announcements):
    for i in range(5):
        pipeline.on_event(make_event(f"m{i}", body=long_message))
    await pipeline.drain()

    for i in range(5):
        events = for_id(announcements, f"m{i}")
        assert isinstance(events[0], Arrived)
        assert len(events) > 1
        assert not any(isinstance(a, Arrived) for a in events[1:])


@pytest.mark.asyncio
async def test_length_mode_arrival_is_already_pending(pipeline, make_event, long_message, announcements):
    pipeline.on_event(make_event(body=long_message))
    pipeline.on_event(make_event("short", body="hi"))
    await pipeline.drain()

    arrived = {a.notification_id: a.record for a in announcements if isinstance(a, Arrived)}
    assert arrived["m1"].enrichment_status is EnrichmentStatus.PENDING
    assert arrived["short"].enrichment_status is EnrichmentStatus.NONE
    kinds = [type(a) for a in for_id(announcements, "m1")]
    assert kinds.count(SummaryResolved) == 1


@pytest.mark.asyncio
async def test_smart_mode_announces_pending_before_resolution(make_pipeline, enabled_settings, make_event, long_message, announcements):
    pipeline = make_pipeline(enabled_settings.merged({"summary_detection_mode": "smart"}))
    pipeline.broadcaster.subscribe(announcements.append)

    returned = pipeline.on_event(make_event(body=long_message))
    assert returned.enrichment_status is EnrichmentStatus.NONE
    await pipeline.drain()

    events = for_id(announcements, "m1")
    statuses = [a.enrichment_status for a in events if isinstance(a, FieldsUpdated)]
    assert statuses == [EnrichmentStatus.PENDING]
    assert isinstance(events[-1], SummaryResolved)
    assert pipeline.get("m1").enrichment_status is EnrichmentStatus.COMPLETE


# ============================================================================
# Direct messages, categories and events
# ============================================================================


@pytest.mark.asyncio
async def test_direct_messages_are_summarized_but_never_categorized(make_pipeline, transport, make_event, long_message):
    pipeline = make_pipeline()  # no guild directory -> direct message

    pipeline.on_event(make_event(body=long_message))
    await pipeline.drain()

    record = pipeline.get("m1")
    assert record.is_direct_message
    assert record.category is None
    assert record.importance is None
    assert record.event_details is None
    assert record.enrichment_status is EnrichmentStatus.COMPLETE
    assert transport.capabilities_called() == ["summarize"]


@pytest.mark.asyncio
async def test_event_extraction_sets_event_category(pipeline, transport, make_event):
    transport.replies["extract_event"] = EVENT_REPLY
    transport.replies["categorize"] = '{"category": "CASUAL", "importance": "LOW"}'

    pipeline.on_event(make_event(body="Team meeting tomorrow at 2pm"))
    await pipeline.drain()

    record = pipeline.get("m1")
    assert record.category is Category.EVENT
    assert record.importance is Importance.LOW
    assert record.event_details.date == "2025-06-02"
    assert record.event_details.time == "14:00"
    assert record.event_details.end_date == "2025-06-02"


@pytest.mark.asyncio
@pytest.mark.parametrize("first", ["categorize", "extract_event"])
async def test_event_category_wins_regardless_of_completion_order(pipeline, transport, make_event, first):
    transport.replies["extract_event"] = EVENT_REPLY
    transport.replies["categorize"] = '{"category": "QUESTION", "importance": "HIGH"}'
    second = "extract_event" if first == "categorize" else "categorize"
    first_gate, second_gate = transport.gate(first), transport.gate(second)

    pipeline.on_event(make_event(body="Team meeting tomorrow at 2pm"))
    await wait_for_call(transport, first)
    await wait_for_call(transport, second)
    first_gate.set()
    for _ in range(5):
        await asyncio.sleep(0)
    second_gate.set()
    await pipeline.drain()

    assert pipeline.get("m1").category is Category.EVENT


@pytest.mark.asyncio
async def test_stale_event_is_rejected(make_pipeline, transport, guild, make_event):
    # 2025-06-02 15:30 is 90 minutes after the extracted 14:00 start
    pipeline = make_pipeline(clock=lambda: datetime(2025, 6, 2, 15, 30))
    pipeline.on_ready([guild])
    transport.replies["extract_event"] = EVENT_REPLY

    pipeline.on_event(make_event(body="Team meeting tomorrow at 2pm"))
    await pipeline.drain()

    record = pipeline.get("m1")
    assert record.event_details is None
    assert record.category is Category.ANNOUNCEMENT
    assert get_counter("enrichment.event_rejected") == 1


@pytest.mark.asyncio
async def test_backend_failures_degrade_to_fallbacks(pipeline, transport, make_event, long_message):
    transport.replies.update({"categorize": None, "extract_event": "garbage", "summarize": None})

    pipeline.on_event(make_event(body=long_message))
    await pipeline.drain()

    record = pipeline.get("m1")
    assert record.category is None
    assert record.importance is None
    assert record.event_details is None
    assert record.enrichment_status is EnrichmentStatus.CANCELLED


@pytest.mark.asyncio
async def test_smart_mode_need_check_failure_uses_length_rule(make_pipeline, transport, make_event, long_message):
    pipeline = make_pipeline(
        PipelineSettings(
            enable_summarization=True,
            summary_detection_mode="smart",
            min_length_for_summary=100,
            api_endpoint="https://llm.example.test/v1",
            model="test-model",
        )
    )
    transport.replies["need_check"] = None

    pipeline.on_event(make_event("long", body=long_message))
    pipeline.on_event(make_event("short", body="hi"))
    await pipeline.drain()

    assert pipeline.get("long").enrichment_status is EnrichmentStatus.COMPLETE
    assert pipeline.get("short").enrichment_status is EnrichmentStatus.NONE


# ============================================================================
# Settings and extras
# ============================================================================


@pytest.mark.asyncio
async def test_settings_take_effect_for_next_record(pipeline, transport, make_event, long_message):
    pipeline.apply_settings({"min_length_for_summary": 1000})
    pipeline.on_event(make_event("a", body=long_message))
    await pipeline.drain()
    assert pipeline.get("a").enrichment_status is EnrichmentStatus.NONE

    pipeline.apply_settings({"min_length_for_summary": 10, "model": "bigger-model"})
    pipeline.on_event(make_event("b", body=long_message))
    await pipeline.drain()
    assert pipeline.get("b").enrichment_status is EnrichmentStatus.COMPLETE
    assert transport.calls[-1][1].model == "bigger-model"


def test_invalid_settings_are_not_applied(make_pipeline):
    pipeline = make_pipeline()
    before = pipeline.settings

    with pytest.raises(ValidationError):
        pipeline.apply_settings({"summary_detection_mode": "vibes"})

    assert pipeline.settings == before


@pytest.mark.asyncio
async def test_test_connection_does_not_apply_candidate(make_pipeline, transport):
    pipeline = make_pipeline(PipelineSettings())

    check = await pipeline.test_connection({"api_endpoint": "https://other.test/v1", "model": "probe"})

    assert check.success is True
    assert transport.calls[-1][1].endpoint == "https://other.test/v1"
    assert pipeline.settings.api_endpoint != "https://other.test/v1"


def test_create_test_notification(make_pipeline):
    pipeline = make_pipeline(PipelineSettings())

    record = pipeline.create_test_notification()

    assert record.id.startswith("test-")
    assert record.author.name == "Test User"
    assert record.body in SAMPLE_MESSAGES
    assert pipeline.get(record.id) is not None
