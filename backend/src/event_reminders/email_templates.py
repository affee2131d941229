from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from icalendar import Calendar, Event

from .models import CandidateEvent
from .scheduling import event_start_instant

CALENDAR_CONTENT_TYPE = "text/calendar; charset=utf-8; method=PUBLISH"
DEFAULT_EVENT_DURATION = timedelta(hours=1)


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content: str
    content_type: str


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text_body: str
    attachments: tuple[EmailAttachment, ...] = field(default_factory=tuple)


def build_calendar_event(
    *,
    uid: str,
    title: str,
    description: str,
    location: str,
    start: datetime,
    end: datetime | None,
    stamp: datetime,
) -> str:
    safe_end = end if end is not None and end > start else start + DEFAULT_EVENT_DURATION

    cal = Calendar()
    cal.add("prodid", "-//event-reminders//EN")
    cal.add("version", "2.0")
    cal.add("calscale", "GREGORIAN")
    cal.add("method", "PUBLISH")

    event = Event()
    event.add("uid", uid)
    event.add("dtstamp", stamp.astimezone(timezone.utc))
    event.add("dtstart", start.astimezone(timezone.utc))
    event.add("dtend", safe_end.astimezone(timezone.utc))
    event.add("summary", title)
    event.add("description", description)
    if location:
        event.add("location", location)
    cal.add_component(event)
    return cal.to_ical().decode("utf-8")


def _days_phrase(lead_days: int) -> str:
    if lead_days == 0:
        return "today"
    if lead_days == 1:
        return "in 1 day"
    return f"in {lead_days} days"


def render_event_reminder(
    *,
    app_name: str,
    event: CandidateEvent,
    lead_days: int,
    tz: ZoneInfo,
    rsvp_url: str,
    unsubscribe_url: str,
    now: datetime,
) -> RenderedEmail:
    start = event_start_instant(event.start_date, event.start_time, tz)
    end_time: time | None = event.end_time
    end = event_start_instant(event.start_date, end_time, tz) if end_time is not None else None
    local_start = start.astimezone(tz)

    date_label = local_start.strftime("%d.%m.%Y")
    time_label = local_start.strftime("%H:%M")
    if end is not None and end > start:
        time_label = f"{time_label} - {end.astimezone(tz).strftime('%H:%M')}"
    location = event.location or "to be announced"

    subject = f"{app_name}: event on {date_label}"
    text_body = "\n".join(
        [
            "Hello,",
            "",
            f"this is a reminder that an event takes place {_days_phrase(lead_days)}.",
            "",
            f"Date: {date_label}",
            f"Time: {time_label}",
            f"Location: {location}",
            "",
            f"Let us know whether you will attend: {rsvp_url}",
            "",
            f"To stop receiving event reminders: {unsubscribe_url}",
            "",
            app_name,
        ]
    )
    calendar = build_calendar_event(
        uid=f"event-{event.event_id}@event-reminders",
        title=f"{app_name} event",
        description=f"Event of {app_name}",
        location=event.location,
        start=start,
        end=end,
        stamp=now,
    )
    attachment = EmailAttachment(
        filename=f"event-{event.start_date.isoformat()}.ics",
        content=calendar,
        content_type=CALENDAR_CONTENT_TYPE,
    )
    return RenderedEmail(subject=subject, text_body=text_body, attachments=(attachment,))
