"""
Calendar links for extracted events.

Builds "add to calendar" targets from ``EventDetails``:

1. Google Calendar template URL
2. Outlook web compose deeplink
3. iCalendar (.ics) document

Times are local wall-clock values as extracted; when the end date/time is
missing the event lasts one hour.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

from pingq.notifications.models import EventDetails

GOOGLE_CALENDAR_URL = "https://calendar.google.com/calendar/render"
OUTLOOK_CALENDAR_URL = "https://outlook.live.com/calendar/0/deeplink/compose"
DEFAULT_TITLE = "Event"
DEFAULT_DURATION = timedelta(hours=1)


class IncompleteEventError(ValueError):
    """Raised when title, date or time is missing."""


def event_span(details: EventDetails) -> tuple[datetime, datetime]:
    """
    Start/end datetimes for an event.

    Raises:
        IncompleteEventError: If title, date or time is missing
    """
    if not details.title or not details.date or not details.time:
        raise IncompleteEventError("event needs a title, date and time")

    start = datetime.fromisoformat(f"{details.date}T{details.time}")
    if details.end_date and details.end_time:
        end = datetime.fromisoformat(f"{details.end_date}T{details.end_time}")
    else:
        end = start + DEFAULT_DURATION
    return start, end


def _compact(moment: datetime) -> str:
    return moment.strftime("%Y%m%dT%H%M%S")


def google_calendar_url(details: EventDetails) -> str:
    start, end = event_span(details)
    params = {
        "action": "TEMPLATE",
        "text": details.title or DEFAULT_TITLE,
        "details": details.description,
        "location": details.location,
        "dates": f"{_compact(start)}/{_compact(end)}",
    }
    return f"{GOOGLE_CALENDAR_URL}?{urlencode(params)}"


def outlook_calendar_url(details: EventDetails) -> str:
    start, end = event_span(details)
    params = {
        "subject": details.title or DEFAULT_TITLE,
        "body": details.description,
        "location": details.location,
        "startdt": start.isoformat(timespec="minutes"),
        "enddt": end.isoformat(timespec="minutes"),
    }
    return f"{OUTLOOK_CALENDAR_URL}?{urlencode(params)}"


def _ics_escape(text: str) -> str:
    return (
        text.replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,").replace("\n", "\\n")
    )


def ics_content(
    details: EventDetails, uid: str | None = None, stamp: datetime | None = None
) -> str:
    """
    Minimal VCALENDAR document with a single VEVENT (CRLF line endings).

    ``stamp`` is the DTSTAMP (creation time, UTC); defaults to now.
    """
    start, end = event_span(details)
    stamp = (stamp or datetime.now(UTC)).astimezone(UTC)
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//pingq//calendar//EN",
        "BEGIN:VEVENT",
    ]
    if uid:
        lines.append(f"UID:{uid}")
    lines += [
        f"DTSTAMP:{_compact(stamp)}Z",
        f"DTSTART:{_compact(start)}",
        f"DTEND:{_compact(end)}",
        f"SUMMARY:{_ics_escape(details.title or DEFAULT_TITLE)}",
    ]
    if details.location:
        lines.append(f"LOCATION:{_ics_escape(details.location)}")
    lines += [
        f"DESCRIPTION:{_ics_escape(details.description)}",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines) + "\r\n"
