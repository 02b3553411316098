"""Subscribable iCalendar feed of a reader's bookings."""

from datetime import datetime, timezone
from typing import Iterable

from icalendar import Calendar, Event

from backend.core import config
from backend.database import utcnow
from backend.models.booking import STATUS_CANCELED, Booking
from backend.models.user import User

FEED_LIMIT = 500
PRODID = "-//Self Tape Reader//Calendar Feed//EN"


def _utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


def _description(booking: Booking) -> str:
    actor = booking.actor
    base_url = config.PUBLIC_URL
    parts = [
        f"Actor: {actor.public_name} <{actor.email}>",
        f"Status: {booking.status}",
    ]
    if booking.meeting_url:
        parts.append(f"Meeting: {booking.meeting_url}")
    parts += [
        "",
        "--- ACTIONS ---",
        f"Reschedule (2+ hrs notice): {base_url}/bookings/{booking.id}/reschedule",
        f"Cancel Booking: {base_url}/bookings/{booking.id}/cancel",
        f"Report Issue: {base_url}/bookings/{booking.id}/report",
        "",
        "--- CANCELLATION POLICY ---",
        "Cancel 24+ hours: No penalty",
        "Cancel under 24 hours: Warning + refund to actor",
        "No-show: 14-day suspension",
    ]
    if booking.notes:
        parts += ["", f"Notes: {booking.notes}"]
    return "\n".join(parts)


def build_reader_feed(reader: User, bookings: Iterable[Booking], now: datetime | None = None) -> bytes:
    """Render bookings as an RFC 5545 calendar with UTC times and CRLF line endings."""
    stamp = _utc(now or utcnow())

    calendar = Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")
    calendar.add("calscale", "GREGORIAN")
    calendar.add("method", "PUBLISH")
    calendar.add("x-wr-calname", reader.display_name or reader.email or "Reader Bookings")

    for booking in bookings:
        event = Event()
        event.add("uid", f"{booking.id}@selftapereader")
        event.add("dtstamp", stamp)
        event.add("dtstart", _utc(booking.start_time))
        event.add("dtend", _utc(booking.end_time))
        if booking.created_at:
            event.add("created", _utc(booking.created_at))
        if booking.updated_at:
            event.add("last-modified", _utc(booking.updated_at))
        event.add("summary", f"Self-Tape Session with {booking.actor.public_name}")
        event.add("description", _description(booking))
        event.add("status", "CANCELLED" if booking.status == STATUS_CANCELED else "CONFIRMED")
        calendar.add_component(event)

    return calendar.to_ical()
