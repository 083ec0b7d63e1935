"""
Notification ingestion pipeline.

One ``NotificationPipeline`` per process owns the store, the broadcaster,
the enrichment backend/coordinator and the current settings. Connectors and
the HTTP layer receive it explicitly; there is no module-level state.

Data flow for each connector event::

    raw payload -> normalize_event -> coordinator.prepare -> store.prepend -> broadcast Arrived
                -> coordinator.schedule (background) -> store.mutate -> broadcast updates
"""

from __future__ import annotations

import asyncio
import copy
import random
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from pingq.config import INITIAL_PAGE_SIZE, MAX_NOTIFICATIONS
from pingq.enrichment.backend import BackendConfig, ConnectionCheck, EnrichmentBackend
from pingq.enrichment.coordinator import EnrichmentCoordinator, SummaryPolicy
from pingq.notifications.broadcaster import Broadcaster
from pingq.notifications.models import Notification, Page
from pingq.notifications.normalizer import (
    GuildDirectory,
    GuildEntry,
    MalformedEventError,
    normalize_event,
)
from pingq.notifications.store import NotificationStore
from pingq.observability.logging import get_logger, preview
from pingq.observability.telemetry import counter, log_event
from pingq.settings import PipelineSettings
from pingq.storage.settings_repository import SettingsRepository

logger = get_logger(__name__)

SAMPLE_MESSAGES: tuple[str, ...] = (
    "Hi, how is you!!!",
    "Do you want to grab some coffee?",
    "I like birds",
    "Hey everyone! Just wanted to let you know that we're planning to meet up this Friday at 7PM "
    "at the usual place. Please let me know if you can make it so I can get a headcount for the "
    "reservation.",
    "I just pushed a major update to our project repository. The changes include performance "
    "optimizations, some UI improvements, and a fix for that annoying bug we've been tracking. "
    "Please pull the latest changes and let me know if you encounter any issues!",
    "Does anyone have experience with the new React hooks API? I'm trying to refactor our "
    "component but I'm running into some issues with useEffect dependencies. I've been stuck on "
    "this for hours!",
    "I'm excited to announce that we'll be launching our new product next Tuesday! We've been "
    "working hard on this for months and I think you'll all be really impressed with the results. "
    "Special thanks to everyone who helped with testing and feedback.",
    "Just a reminder that we have a team meeting tomorrow at 3PM to discuss the upcoming project "
    "deadlines and resource allocation. Please come prepared with status updates on your assigned "
    "tasks.",
)
TEST_AVATAR = "https://cdn.discordapp.com/embed/avatars/0.png"


class NotificationPipeline:
    """Store + enrichment + settings, wired together once per process."""

    def __init__(
        self,
        settings: PipelineSettings | None = None,
        *,
        capacity: int = MAX_NOTIFICATIONS,
        backend: EnrichmentBackend | None = None,
        broadcaster: Broadcaster | None = None,
        settings_repository: SettingsRepository | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._settings = settings or PipelineSettings()
        self._settings_repository = settings_repository
        self.store = NotificationStore(capacity=capacity)
        self.broadcaster = broadcaster or Broadcaster()
        self.backend = backend or EnrichmentBackend()
        self.backend.configure(BackendConfig.from_settings(self._settings))
        self.coordinator = EnrichmentCoordinator(
            self.store,
            self.backend,
            self.broadcaster,
            policy=SummaryPolicy.from_settings(self._settings),
            clock=clock,
        )
        self.directory = GuildDirectory()
        self._connected = False

    @classmethod
    def from_repository(cls, repository: SettingsRepository, **kwargs: Any) -> NotificationPipeline:
        """Build a pipeline with settings loaded from (and later saved to) ``repository``."""
        return cls(repository.load(), settings_repository=repository, **kwargs)

    # -- connector inbound interface ---------------------------------------

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Event loop that runs enrichment for events delivered from other threads."""
        self.coordinator.bind_loop(loop)

    @property
    def is_connected(self) -> bool:
        return self._connected

    def on_ready(self, guilds: Iterable[GuildEntry | Mapping[str, Any]] = ()) -> None:
        """Connector connected: load the guild/channel directory used for origin resolution."""
        entries = [g if isinstance(g, GuildEntry) else GuildEntry.from_payload(g) for g in guilds]
        self.directory.load(entries)
        self._connected = True
        log_event("connector.ready", guilds=len(entries))

    def on_event(self, payload: Mapping[str, Any]) -> Notification | None:
        """
        Ingest one raw connector event.

        Returns as soon as the record is stored and announced; enrichment
        continues in the background. May be called from any thread: without
        a running loop the cycle goes to the loop given to ``bind_loop``.

        Returns:
            Copy of the stored record, or None if the event was rejected

        Side Effects:
            - Prepends to the store (may evict the oldest records)
            - Announces Arrived to subscribers
            - In length mode, marks the record PENDING before storing it when a summary is due
            - Schedules an enrichment cycle when enrichment is enabled
        """
        try:
            record = normalize_event(payload, self.directory, received_at=datetime.now(UTC))
        except MalformedEventError as e:
            counter("pipeline.event_rejected")
            logger.warning("Dropping malformed event: %s", e)
            return None

        if record.id in self.store:
            counter("pipeline.duplicate_dropped")
            logger.info("Dropping duplicate event %s", record.id)
            return None

        plan = self.coordinator.prepare(record)
        self.store.prepend(record)
        counter("pipeline.ingested")
        logger.debug("Ingested %s from %s: %s", record.id, record.origin.display_name, preview(record.body))

        snapshot = copy.copy(record)
        self.broadcaster.arrived(snapshot)
        if plan is not None:
            self.coordinator.schedule(snapshot, plan)
        return snapshot

    def on_disconnect(self) -> None:
        """Connector lost: drop connection-scoped lookup state; the store and settings survive."""
        self.directory.clear()
        self._connected = False
        log_event("connector.disconnected")

    # -- pagination ----------------------------------------------------------

    def page(self, page_number: int = 1, page_size: int = INITIAL_PAGE_SIZE) -> Page:
        return self.store.page(page_number, page_size)

    def get(self, notification_id: str) -> Notification | None:
        return self.store.get_by_id(notification_id)

    # -- settings ------------------------------------------------------------

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    def apply_settings(self, updates: PipelineSettings | Mapping[str, Any]) -> PipelineSettings:
        """
        Merge ``updates`` into the current settings and hot-swap them.

        The backend and summary policy pick the new values up on their next
        call; enrichment already in flight finishes with the old ones.

        Raises:
            pydantic.ValidationError: If the merged settings are invalid (nothing is applied)
        """
        if isinstance(updates, PipelineSettings):
            updates = updates.model_dump()
        new_settings = self._settings.merged(updates)

        self._settings = new_settings
        self.backend.configure(BackendConfig.from_settings(new_settings))
        self.coordinator.configure(SummaryPolicy.from_settings(new_settings))
        log_event("settings.applied", **new_settings.redacted())

        if self._settings_repository is not None:
            try:
                self._settings_repository.save(new_settings)
            except OSError as e:
                # Applied in memory regardless; persistence is best effort.
                counter("settings.save_failed")
                logger.error("Failed to save settings: %s", e)
        return new_settings

    async def test_connection(self, updates: Mapping[str, Any] | None = None) -> ConnectionCheck:
        """Probe the backend with the current settings overlaid by ``updates`` (not applied)."""
        candidate = self._settings.merged(updates or {})
        return await self.backend.test_connection(candidate)

    # -- extras --------------------------------------------------------------

    async def summarize_text(self, text: str) -> str | None:
        return await self.coordinator.summarize_text(text)

    def create_test_notification(self) -> Notification | None:
        """Push a random sample message through the normal ingestion path."""
        now = datetime.now(UTC)
        payload = {
            "message": {
                "id": f"test-{int(time.time() * 1000)}-{random.randrange(1000):03d}",
                "nick": "Test User",
                "timestamp": now.isoformat(),
            },
            "title": "Test Notification",
            "body": random.choice(SAMPLE_MESSAGES),
            "icon_url": TEST_AVATAR,
            "channel_id": "test-channel",
        }
        return self.on_event(payload)

    async def drain(self) -> None:
        """Wait for all background enrichment to settle (tests, shutdown)."""
        await self.coordinator.drain()
