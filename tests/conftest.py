"""
Pytest configuration for pingq tests

Provides a scripted completion transport (no network) and fixtures for
building records, backends and pipelines.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

import pytest

from pingq.enrichment.backend import EnrichmentBackend
from pingq.llm.client import ChatMessage, Completion, CompletionRequest, LLMError
from pingq.notifications.models import (
    Author,
    DirectMessage,
    GuildChannel,
    Notification,
    Origin,
)
from pingq.observability.telemetry import reset_counters, reset_latencies
from pingq.pipeline import NotificationPipeline
from pingq.settings import PipelineSettings

# Fixed "now" for event validation: Sunday 2025-06-01 12:00 local wall time.
FIXED_NOW = datetime(2025, 6, 1, 12, 0)

LONG_MESSAGE = (
    "Hey everyone! Just wanted to let you know that we're planning to meet up this Friday at 7PM "
    "at the usual place. Please let me know if you can make it so I can get a headcount."
)


def capability_of(messages: list[ChatMessage]) -> str:
    """Which backend capability produced ``messages`` (keyed on the system prompt)."""
    system = next((m.content for m in messages if m.role == "system"), "")
    if "need summarization" in system:
        return "need_check"
    if "summarizes" in system:
        return "summarize"
    if "categorizes" in system:
        return "categorize"
    if "extracts calendar events" in system:
        return "extract_event"
    return "connection_test"


class ScriptedTransport:
    """
    Completion transport that answers from a per-capability script.

    A reply may be a string, an exception instance (raised) or missing
    (raises LLMError). ``gate(capability)`` returns an asyncio.Event the
    call waits on, to control completion order.
    """

    def __init__(self, replies: dict[str, object] | None = None, model: str = "stub-model"):
        self.replies: dict[str, object] = dict(replies or {})
        self.model = model
        self.calls: list[tuple[str, CompletionRequest, list[ChatMessage]]] = []
        self._gates: dict[str, asyncio.Event] = {}

    def gate(self, capability: str) -> asyncio.Event:
        event = asyncio.Event()
        self._gates[capability] = event
        return event

    def capabilities_called(self) -> list[str]:
        return [name for name, _, _ in self.calls]

    async def complete(
        self,
        request: CompletionRequest,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        capability = capability_of(messages)
        self.calls.append((capability, request, messages))

        gate = self._gates.get(capability)
        if gate is not None:
            await gate.wait()

        reply = self.replies.get(capability)
        if reply is None:
            raise LLMError(f"no scripted reply for {capability}")
        if isinstance(reply, BaseException):
            raise reply
        return Completion(text=str(reply), model=self.model)


@pytest.fixture(autouse=True)
def reset_telemetry():
    """Counters are process-global; start every test from zero."""
    reset_counters()
    reset_latencies()
    yield
    reset_counters()
    reset_latencies()


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport(
        {
            "need_check": "YES",
            "summarize": "Meetup Friday 7PM at the usual place; reply for headcount.",
            "categorize": '{"category": "ANNOUNCEMENT", "importance": "HIGH"}',
            "extract_event": '{"has_event": false}',
            "connection_test": "Hello!",
        }
    )


@pytest.fixture
def enabled_settings() -> PipelineSettings:
    return PipelineSettings(
        enable_summarization=True,
        summary_detection_mode="length",
        min_length_for_summary=100,
        api_endpoint="https://llm.example.test/v1",
        api_key="sk-test",
        model="test-model",
    )


@pytest.fixture
def backend(transport: ScriptedTransport) -> EnrichmentBackend:
    return EnrichmentBackend(transports={"openai": transport, "gemini": transport})


@pytest.fixture
def make_pipeline(backend: EnrichmentBackend, enabled_settings: PipelineSettings):
    """Factory for pipelines sharing the scripted backend; settings default to enabled."""

    def _make(settings: PipelineSettings | None = None, **kwargs) -> NotificationPipeline:
        kwargs.setdefault("clock", lambda: FIXED_NOW)
        return NotificationPipeline(
            settings if settings is not None else enabled_settings, backend=backend, **kwargs
        )

    return _make


@pytest.fixture
def make_record() -> Callable[..., Notification]:
    """Factory for stored-record fixtures (guild channel origin unless told otherwise)."""

    def _make(
        notification_id: str = "m1",
        body: str = "hello there",
        origin: Origin | None = None,
        dm: bool = False,
    ) -> Notification:
        if origin is None:
            origin = (
                DirectMessage(channel_id="dm-1")
                if dm
                else GuildChannel(
                    server_name="Bird Club",
                    server_id="g1",
                    channel_name="general",
                    channel_id="c1",
                )
            )
        return Notification(
            id=notification_id,
            title="Bird Club",
            body=body,
            timestamp=datetime(2025, 6, 1, 11, 59, tzinfo=UTC),
            author=Author(name="ana"),
            origin=origin,
        )

    return _make


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def long_message() -> str:
    return LONG_MESSAGE


@pytest.fixture
def guild() -> dict:
    return {
        "id": "g1",
        "name": "Bird Club",
        "channels": [{"id": "c1", "name": "general"}, {"id": "c2", "name": "events"}],
    }


@pytest.fixture
def make_event() -> Callable[..., dict]:
    """Factory for raw connector payloads."""

    def _make(message_id: str = "m1", body: str = LONG_MESSAGE, **overrides) -> dict:
        payload = {
            "message": {"id": message_id, "nick": "ana", "timestamp": "2025-06-01T11:59:00Z"},
            "title": "Bird Club",
            "body": body,
            "icon_url": "https://cdn.example.test/ana.png",
            "channel_id": "c1",
        }
        payload.update(overrides)
        return payload

    return _make
