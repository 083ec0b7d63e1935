"""
Validation policy for extracted calendar events.

The backend returns loosely formatted strings. An event is accepted only when:

- title, date (``YYYY-MM-DD``) and start time are present and parse
- the start time is ``HH:MM`` 24-hour, or a 12-hour form ("2pm", "2:30 PM")
  that is normalized to 24-hour
- the start is not more than ``EVENT_PAST_TOLERANCE_MINUTES`` before ``now``

Malformed end fields never reject the event: a bad end date falls back to the
start date and a bad end time is cleared (consumers then assume +1 hour).
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field

from pingq.config import EVENT_PAST_TOLERANCE_MINUTES
from pingq.notifications.models import EventDetails

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_24H_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")
_TIME_12H_RE = re.compile(r"^(\d{1,2})(?:[:.](\d{2}))?\s*([ap])\.?\s*m?\.?$", re.IGNORECASE)


class ExtractedEvent(BaseModel):
    """Raw extraction payload as produced by the backend (strings are unvalidated)."""

    model_config = ConfigDict(extra="ignore")

    has_event: bool = True
    title: str | None = None
    date: str | None = None
    time: str | None = None
    end_date: str | None = None
    end_time: str | None = None
    location: str | None = None
    description: str | None = Field(default=None)


def parse_event_date(value: str | None) -> date | None:
    """Strict ``YYYY-MM-DD`` parse; None for anything else."""
    if not value:
        return None
    value = value.strip()
    if not _DATE_RE.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def normalize_time(value: str | None) -> str | None:
    """
    Normalize a time string to 24-hour ``HH:MM``.

    Examples:
        >>> normalize_time("14:05")
        '14:05'
        >>> normalize_time("2pm")
        '14:00'
        >>> normalize_time("12:30 AM")
        '00:30'
        >>> normalize_time("25:00") is None
        True
    """
    if not value:
        return None
    value = value.strip()

    match = _TIME_24H_RE.match(value)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            return None
        return f"{hour:02d}:{minute:02d}"

    match = _TIME_12H_RE.match(value)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:
            return None
        meridiem = match.group(3).lower()
        if meridiem == "a":
            hour = 0 if hour == 12 else hour
        else:
            hour = 12 if hour == 12 else hour + 12
        return f"{hour:02d}:{minute:02d}"

    return None


def validate_event(
    extracted: ExtractedEvent,
    now: datetime,
    past_tolerance: timedelta = timedelta(minutes=EVENT_PAST_TOLERANCE_MINUTES),
) -> EventDetails | None:
    """
    Apply the acceptance policy to a raw extraction.

    Args:
        extracted: Backend payload
        now: Reference clock; naive datetimes are compared as local wall time
        past_tolerance: How far in the past a start may lie

    Returns:
        EventDetails when accepted, None when rejected (treated as no event)

    Side Effects:
        None (pure function)
    """
    if not extracted.has_event:
        return None

    title = (extracted.title or "").strip()
    start_date = parse_event_date(extracted.date)
    start_time = normalize_time(extracted.time)
    if not title or start_date is None or start_time is None:
        return None

    start = datetime.fromisoformat(f"{start_date.isoformat()}T{start_time}")
    if now.tzinfo is not None:
        start = start.replace(tzinfo=now.tzinfo)
    if start < now - past_tolerance:
        return None

    end_date = parse_event_date(extracted.end_date) or start_date
    end_time = normalize_time(extracted.end_time) or ""

    return EventDetails(
        title=title,
        date=start_date.isoformat(),
        time=start_time,
        end_date=end_date.isoformat(),
        end_time=end_time,
        location=(extracted.location or "").strip(),
        description=(extracted.description or "").strip(),
    )
