"""
Module: models
Purpose: Domain types for ingested notifications.

The ``origin`` of a notification is a tagged variant (``DirectMessage``,
``GuildChannel`` or ``UnknownGuild``) instead of optional server/channel
fields, so downstream code branches on the variant rather than probing for
field presence. Enrichment fields are explicit optionals.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal


class Category(str, Enum):
    """Message category assigned by the backend (never for direct messages)."""

    EVENT = "EVENT"
    QUESTION = "QUESTION"
    ANNOUNCEMENT = "ANNOUNCEMENT"
    CASUAL = "CASUAL"


class Importance(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class EnrichmentStatus(str, Enum):
    """Summary lifecycle: NONE -> (PENDING) -> COMPLETE | CANCELLED."""

    NONE = "NONE"
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"


# ---------------------------------------------------------------------------
# Origin variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DirectMessage:
    channel_id: str
    kind: Literal["direct_message"] = "direct_message"

    @property
    def is_direct_message(self) -> bool:
        return True

    @property
    def display_name(self) -> str:
        return "Direct Message"


@dataclass(frozen=True)
class GuildChannel:
    server_name: str
    server_id: str
    channel_name: str
    channel_id: str
    kind: Literal["guild_channel"] = "guild_channel"

    @property
    def is_direct_message(self) -> bool:
        return False

    @property
    def display_name(self) -> str:
        return self.server_name


@dataclass(frozen=True)
class UnknownGuild:
    """Non-DM message whose channel is missing from the guild directory."""

    channel_id: str
    kind: Literal["unknown_guild"] = "unknown_guild"

    @property
    def is_direct_message(self) -> bool:
        return False

    @property
    def display_name(self) -> str:
        return "Unknown Server"


Origin = DirectMessage | GuildChannel | UnknownGuild


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Author:
    name: str
    avatar_ref: str | None = None


@dataclass(frozen=True)
class EventDetails:
    """Calendar event extracted from a message body, already validated.

    ``date``/``end_date`` are ``YYYY-MM-DD`` and ``time``/``end_time`` are 24-hour
    ``HH:MM``. ``end_time`` may be empty; consumers then assume start + 1 hour.
    """

    title: str
    date: str
    time: str
    end_date: str
    end_time: str = ""
    location: str = ""
    description: str = ""


@dataclass
class Notification:
    id: str
    title: str
    body: str
    timestamp: datetime
    author: Author
    origin: Origin
    external_link: str | None = None
    category: Category | None = None
    importance: Importance | None = None
    event_details: EventDetails | None = None
    summary: str | None = None
    enrichment_status: EnrichmentStatus = EnrichmentStatus.NONE

    @property
    def is_direct_message(self) -> bool:
        return self.origin.is_direct_message

    @property
    def summary_pending(self) -> bool:
        return self.enrichment_status is EnrichmentStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation used by the API and the update stream."""
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["category"] = self.category.value if self.category else None
        data["importance"] = self.importance.value if self.importance else None
        data["enrichment_status"] = self.enrichment_status.value
        data["summary_pending"] = self.summary_pending
        data["origin"]["display_name"] = self.origin.display_name
        return data


@dataclass(frozen=True)
class Page:
    """Result of a cumulative page read: records[0 .. page*per_page)."""

    records: list[Notification] = field(default_factory=list)
    has_more: bool = False
    total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "notifications": [record.to_dict() for record in self.records],
            "has_more": self.has_more,
            "total": self.total,
        }
