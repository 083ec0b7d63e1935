"""
Record normalizer: raw connector payload -> ``Notification``.

The connector hands over the raw notification payload as delivered by the
chat client::

    {
        "message": {"id": "...", "nick": "...", "timestamp": "2025-..."},
        "title": "...",
        "body": "...",
        "icon_url": "...",
        "channel_id": "...",
    }

Origin resolution uses the connection-scoped ``GuildDirectory``:

- channel found in the directory -> ``GuildChannel``
- channel not found, directory non-empty -> ``UnknownGuild``
- directory empty, or the payload is flagged as a direct message -> ``DirectMessage``

Normalization is a pure transformation. Malformed payloads raise
``MalformedEventError``; the caller logs and drops them.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dateutil import parser as date_parser

from pingq.notifications.models import (
    Author,
    DirectMessage,
    GuildChannel,
    Notification,
    Origin,
    UnknownGuild,
)

CHANNEL_LINK_BASE = "https://discord.com/channels"
UNKNOWN_AUTHOR = "Unknown User"


class MalformedEventError(ValueError):
    """Raised when a raw event lacks the fields required to build a record."""


# ---------------------------------------------------------------------------
# Guild directory (connection-scoped lookup state)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChannelEntry:
    id: str
    name: str


@dataclass(frozen=True)
class GuildEntry:
    id: str
    name: str
    channels: tuple[ChannelEntry, ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> GuildEntry:
        channels = tuple(
            ChannelEntry(id=str(c["id"]), name=str(c.get("name") or ""))
            for c in payload.get("channels") or ()
            if c.get("id") is not None
        )
        return cls(id=str(payload["id"]), name=str(payload.get("name") or ""), channels=channels)


@dataclass
class GuildDirectory:
    """Channel id -> (guild, channel) index, rebuilt on every connector ``ready``."""

    _index: dict[str, tuple[GuildEntry, ChannelEntry]] = field(default_factory=dict)
    _guild_count: int = 0

    def load(self, guilds: Iterable[GuildEntry]) -> None:
        index: dict[str, tuple[GuildEntry, ChannelEntry]] = {}
        count = 0
        for guild in guilds:
            count += 1
            for channel in guild.channels:
                # First guild listing a channel wins, matching a linear scan.
                index.setdefault(channel.id, (guild, channel))
        self._index = index
        self._guild_count = count

    def clear(self) -> None:
        self._index = {}
        self._guild_count = 0

    def resolve(self, channel_id: str) -> tuple[GuildEntry, ChannelEntry] | None:
        return self._index.get(channel_id)

    def is_empty(self) -> bool:
        return self._guild_count == 0

    def __len__(self) -> int:
        return self._guild_count


# ---------------------------------------------------------------------------
# Raw event
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawEvent:
    message_id: str
    body: str
    title: str = ""
    author_name: str | None = None
    icon_ref: str | None = None
    channel_id: str = ""
    timestamp: str | None = None
    direct_message: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> RawEvent:
        """Parse the connector payload; raises MalformedEventError on missing id/body."""
        if not isinstance(payload, Mapping):
            raise MalformedEventError(f"event payload must be a mapping, got {type(payload).__name__}")

        message = payload.get("message") or {}
        if not isinstance(message, Mapping):
            raise MalformedEventError("event 'message' must be a mapping")

        message_id = message.get("id")
        if message_id is None or str(message_id).strip() == "":
            raise MalformedEventError("event is missing message.id")

        body = payload.get("body")
        if not isinstance(body, str) or body == "":
            raise MalformedEventError(f"event {message_id} is missing body text")

        return cls(
            message_id=str(message_id),
            body=body,
            title=str(payload.get("title") or ""),
            author_name=message.get("nick") or None,
            icon_ref=payload.get("icon_url") or None,
            channel_id=str(payload.get("channel_id") or ""),
            timestamp=message.get("timestamp"),
            direct_message=bool(payload.get("is_dm") or payload.get("direct_message")),
        )


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def resolve_origin(raw: RawEvent, directory: GuildDirectory | None) -> Origin:
    if raw.direct_message or directory is None or directory.is_empty():
        return DirectMessage(channel_id=raw.channel_id)

    found = directory.resolve(raw.channel_id)
    if found is None:
        return UnknownGuild(channel_id=raw.channel_id)

    guild, channel = found
    return GuildChannel(
        server_name=guild.name,
        server_id=guild.id,
        channel_name=channel.name,
        channel_id=channel.id,
    )


def build_external_link(origin: Origin, message_id: str) -> str | None:
    """Deep link back to the message; ``None`` when the server is unresolved."""
    if isinstance(origin, UnknownGuild) or not origin.channel_id:
        return None
    scope = "@me" if isinstance(origin, DirectMessage) else origin.server_id
    return f"{CHANNEL_LINK_BASE}/{scope}/{origin.channel_id}/{message_id}"


def _parse_timestamp(value: str | None, received_at: datetime) -> datetime:
    if not value:
        return received_at
    try:
        parsed = date_parser.isoparse(value)
    except (ValueError, OverflowError):
        return received_at
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def normalize_event(
    payload: Mapping[str, Any] | RawEvent,
    directory: GuildDirectory | None = None,
    received_at: datetime | None = None,
) -> Notification:
    """
    Build a canonical Notification from a raw connector payload.

    Args:
        payload: Raw connector payload (or an already-parsed RawEvent)
        directory: Guild/channel lookup for origin resolution
        received_at: Fallback timestamp when the payload carries none

    Returns:
        Notification with enrichment fields unset

    Raises:
        MalformedEventError: If message id or body is missing

    Side Effects:
        None (pure function)
    """
    raw = payload if isinstance(payload, RawEvent) else RawEvent.from_payload(payload)
    origin = resolve_origin(raw, directory)

    return Notification(
        id=raw.message_id,
        title=raw.title,
        body=raw.body,
        timestamp=_parse_timestamp(raw.timestamp, received_at or datetime.now(UTC)),
        author=Author(name=raw.author_name or UNKNOWN_AUTHOR, avatar_ref=raw.icon_ref),
        origin=origin,
        external_link=build_external_link(origin, raw.message_id),
    )
