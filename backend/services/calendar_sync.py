"""External calendar integration: OAuth tokens, busy-time lookups and booking events.

Busy lookups feed the read-time slot filter. Any provider failure degrades to
"no busy times" so a flaky calendar never blocks booking.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx
from icalendar import Calendar
from sqlalchemy.orm import Session

from backend.core import config
from backend.database import utcnow
from backend.models.booking import Booking
from backend.models.calendar import PROVIDER_GOOGLE, PROVIDER_ICAL, PROVIDER_MICROSOFT, CalendarConnection
from backend.models.user import User
from backend.services.availability import Interval, overlaps

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_SCOPES = ["https://www.googleapis.com/auth/calendar.events"]

MICROSOFT_AUTH_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_GRAPH_API = "https://graph.microsoft.com/v1.0"
MICROSOFT_SCOPES = ["offline_access", "Calendars.ReadWrite"]

TOKEN_REFRESH_MARGIN = timedelta(minutes=5)

_busy_cache: dict[tuple, tuple[float, list[Interval]]] = {}
_clock = time.monotonic


class CalendarError(Exception):
    """An OAuth exchange or iCal feed check failed."""


def clear_busy_cache() -> None:
    _busy_cache.clear()


def _cache_busy(key: tuple, busy: list[Interval]) -> None:
    now = _clock()
    expired = [
        cached_key for cached_key, (stored_at, _) in _busy_cache.items()
        if now - stored_at >= config.CALENDAR_CACHE_SECONDS
    ]
    for cached_key in expired:
        del _busy_cache[cached_key]
    _busy_cache[key] = (now, busy)


def _http_client() -> httpx.Client:
    return httpx.Client(timeout=config.HTTP_TIMEOUT_SECONDS)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_iso(value: str) -> datetime:
    # Graph returns seven fractional digits, which fromisoformat rejects on older interpreters.
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    if "." in value:
        head, _, tail = value.partition(".")
        offset = ""
        for sign in ("+", "-"):
            if sign in tail:
                offset = sign + tail.split(sign, 1)[1]
                break
        value = head + offset
    return to_naive_utc(datetime.fromisoformat(value))


def _iso_utc(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat() + "Z"


# OAuth


def google_authorization_url(state: str) -> str:
    if not config.GOOGLE_CLIENT_ID:
        raise CalendarError("Google Calendar is not configured.")
    params = {
        "client_id": config.GOOGLE_CLIENT_ID,
        "redirect_uri": config.GOOGLE_REDIRECT_URI,
        "response_type": "code",
        "access_type": "offline",
        "include_granted_scopes": "true",
        "scope": " ".join(GOOGLE_SCOPES),
        "state": state,
        "prompt": "consent",
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def microsoft_authorization_url(state: str) -> str:
    if not config.MICROSOFT_CLIENT_ID:
        raise CalendarError("Microsoft Calendar is not configured.")
    params = {
        "client_id": config.MICROSOFT_CLIENT_ID,
        "redirect_uri": config.MICROSOFT_REDIRECT_URI,
        "response_type": "code",
        "response_mode": "query",
        "scope": " ".join(MICROSOFT_SCOPES),
        "state": state,
    }
    return f"{MICROSOFT_AUTH_URL}?{urlencode(params)}"


def _token_request(url: str, data: dict) -> dict:
    try:
        with _http_client() as client:
            response = client.post(url, data=data)
    except httpx.HTTPError as exc:
        raise CalendarError(f"Token request failed: {exc}") from exc

    if response.status_code != 200:
        logger.error("Token endpoint %s returned %s: %s", url, response.status_code, response.text)
        raise CalendarError(f"Token request failed with status {response.status_code}.")

    try:
        tokens = response.json()
    except ValueError as exc:
        raise CalendarError("Token endpoint returned invalid JSON.") from exc
    if not tokens.get("access_token"):
        raise CalendarError("Token response did not include an access token.")
    return tokens


def exchange_code(provider: str, code: str) -> dict:
    if provider == PROVIDER_GOOGLE:
        return _token_request(GOOGLE_TOKEN_URL, {
            "code": code,
            "client_id": config.GOOGLE_CLIENT_ID,
            "client_secret": config.GOOGLE_CLIENT_SECRET,
            "redirect_uri": config.GOOGLE_REDIRECT_URI,
            "grant_type": "authorization_code",
        })
    if provider == PROVIDER_MICROSOFT:
        return _token_request(MICROSOFT_TOKEN_URL, {
            "code": code,
            "client_id": config.MICROSOFT_CLIENT_ID,
            "client_secret": config.MICROSOFT_CLIENT_SECRET,
            "redirect_uri": config.MICROSOFT_REDIRECT_URI,
            "grant_type": "authorization_code",
            "scope": " ".join(MICROSOFT_SCOPES),
        })
    raise CalendarError(f"Unsupported provider {provider}.")


def _get_connection(db: Session, user_id: int) -> CalendarConnection | None:
    return db.query(CalendarConnection).filter(CalendarConnection.user_id == user_id).first()


def save_oauth_connection(db: Session, user: User, provider: str, tokens: dict) -> CalendarConnection:
    """Store tokens, replacing whatever calendar the user had connected. The caller commits."""
    connection = _get_connection(db, user.id)
    if connection is None:
        connection = CalendarConnection(user_id=user.id)
        db.add(connection)

    # Google omits the refresh token on re-consent; keep the previous one.
    if tokens.get("refresh_token") or connection.provider != provider:
        connection.refresh_token = tokens.get("refresh_token")
    connection.provider = provider
    connection.access_token = tokens["access_token"]
    connection.token_expires_at = utcnow() + timedelta(seconds=int(tokens.get("expires_in", 3600)))
    connection.ical_url = None
    connection.calendar_id = "primary"
    db.flush()
    clear_busy_cache()
    return connection


def normalize_ical_url(url: str) -> str:
    value = (url or "").strip()
    lowered = value.lower()
    if lowered.startswith("webcal://"):
        return "https://" + value[len("webcal://"):]
    if lowered.startswith(("http://", "https://")):
        return value
    raise CalendarError("Invalid URL format. Must start with http://, https:// or webcal://")


def fetch_ical_feed(url: str) -> Calendar:
    try:
        with _http_client() as client:
            response = client.get(url, headers={"User-Agent": "SelfTapeReader/1.0"})
    except httpx.HTTPError as exc:
        raise CalendarError(f"Could not access iCal feed: {exc}") from exc

    if response.status_code != 200:
        raise CalendarError(f"Could not access iCal feed (HTTP {response.status_code}).")
    if "BEGIN:VCALENDAR" not in response.text:
        raise CalendarError("Invalid iCal format: missing VCALENDAR.")

    try:
        return Calendar.from_ical(response.text)
    except ValueError as exc:
        raise CalendarError(f"Invalid iCal format: {exc}") from exc


def connect_ical(db: Session, user: User, url: str) -> CalendarConnection:
    feed_url = normalize_ical_url(url)
    fetch_ical_feed(feed_url)

    connection = _get_connection(db, user.id)
    if connection is None:
        connection = CalendarConnection(user_id=user.id)
        db.add(connection)
    connection.provider = PROVIDER_ICAL
    connection.ical_url = feed_url
    connection.access_token = None
    connection.refresh_token = None
    connection.token_expires_at = None
    db.flush()
    clear_busy_cache()
    return connection


def disconnect(db: Session, user: User) -> bool:
    connection = _get_connection(db, user.id)
    if connection is None:
        return False
    db.delete(connection)
    db.flush()
    clear_busy_cache()
    return True


def get_access_token(db: Session, connection: CalendarConnection) -> str | None:
    """Current access token, refreshed when it is about to expire."""
    expires_at = connection.token_expires_at
    if expires_at is not None and expires_at > utcnow() + TOKEN_REFRESH_MARGIN:
        return connection.access_token
    if not connection.refresh_token:
        return connection.access_token

    if connection.provider == PROVIDER_GOOGLE:
        url, data = GOOGLE_TOKEN_URL, {
            "client_id": config.GOOGLE_CLIENT_ID,
            "client_secret": config.GOOGLE_CLIENT_SECRET,
            "refresh_token": connection.refresh_token,
            "grant_type": "refresh_token",
        }
    else:
        url, data = MICROSOFT_TOKEN_URL, {
            "client_id": config.MICROSOFT_CLIENT_ID,
            "client_secret": config.MICROSOFT_CLIENT_SECRET,
            "refresh_token": connection.refresh_token,
            "grant_type": "refresh_token",
            "scope": " ".join(MICROSOFT_SCOPES),
        }

    try:
        tokens = _token_request(url, data)
    except CalendarError:
        logger.warning("Token refresh failed for calendar connection %s", connection.id)
        return None

    connection.access_token = tokens["access_token"]
    if tokens.get("refresh_token"):
        connection.refresh_token = tokens["refresh_token"]
    connection.token_expires_at = utcnow() + timedelta(seconds=int(tokens.get("expires_in", 3600)))
    db.flush()
    return connection.access_token


# Busy times


def _google_busy(
    db: Session,
    connection: CalendarConnection,
    user: User,
    start: datetime,
    end: datetime,
) -> list[Interval]:
    token = get_access_token(db, connection)
    if not token:
        return []
    with _http_client() as client:
        response = client.get(
            f"{GOOGLE_CALENDAR_API}/calendars/{connection.calendar_id or 'primary'}/events",
            headers={"Authorization": f"Bearer {token}"},
            params={
                "timeMin": _iso_utc(start),
                "timeMax": _iso_utc(end),
                "singleEvents": "true",
                "orderBy": "startTime",
            },
        )
    response.raise_for_status()

    busy: list[Interval] = []
    for event in response.json().get("items", []):
        # All-day events carry only a date and do not block sessions.
        if "dateTime" not in event.get("start", {}) or event.get("transparency") == "transparent":
            continue
        declined = any(
            attendee.get("email") == user.email and attendee.get("responseStatus") == "declined"
            for attendee in event.get("attendees", [])
        )
        if declined:
            continue
        busy.append((_parse_iso(event["start"]["dateTime"]), _parse_iso(event["end"]["dateTime"])))
    return busy


def _microsoft_busy(db: Session, connection: CalendarConnection, start: datetime, end: datetime) -> list[Interval]:
    token = get_access_token(db, connection)
    if not token:
        return []
    with _http_client() as client:
        response = client.get(
            f"{MICROSOFT_GRAPH_API}/me/calendarView",
            headers={"Authorization": f"Bearer {token}", "Prefer": 'outlook.timezone="UTC"'},
            params={"startDateTime": _iso_utc(start), "endDateTime": _iso_utc(end), "$top": "250"},
        )
    response.raise_for_status()

    busy: list[Interval] = []
    for event in response.json().get("value", []):
        if event.get("isAllDay") or event.get("isCancelled") or event.get("showAs") == "free":
            continue
        busy.append((_parse_iso(event["start"]["dateTime"]), _parse_iso(event["end"]["dateTime"])))
    return busy


def ical_busy_intervals(calendar: Calendar, start: datetime, end: datetime) -> list[Interval]:
    """Timed, non-cancelled, opaque events of a parsed feed overlapping [start, end)."""
    busy: list[Interval] = []
    for event in calendar.walk("VEVENT"):
        if str(event.get("STATUS", "")).upper() == "CANCELLED":
            continue
        if str(event.get("TRANSP", "")).upper() == "TRANSPARENT":
            continue
        dtstart = event.get("DTSTART")
        dtend = event.get("DTEND")
        if dtstart is None or dtend is None:
            continue
        event_start, event_end = dtstart.dt, dtend.dt
        if not isinstance(event_start, datetime) or not isinstance(event_end, datetime):
            continue
        event_start, event_end = to_naive_utc(event_start), to_naive_utc(event_end)
        if overlaps(event_start, event_end, start, end):
            busy.append((event_start, event_end))
    return busy


def _ical_busy(connection: CalendarConnection, start: datetime, end: datetime) -> list[Interval]:
    if not connection.ical_url:
        return []
    return ical_busy_intervals(fetch_ical_feed(connection.ical_url), start, end)


def busy_intervals(db: Session, user: User, start: datetime, end: datetime) -> list[Interval]:
    connection = _get_connection(db, user.id)
    if connection is None:
        return []

    cache_key = (user.id, connection.provider, start, end)
    cached = _busy_cache.get(cache_key)
    if cached and _clock() - cached[0] < config.CALENDAR_CACHE_SECONDS:
        return cached[1]

    try:
        if connection.provider == PROVIDER_GOOGLE:
            busy = _google_busy(db, connection, user, start, end)
        elif connection.provider == PROVIDER_MICROSOFT:
            busy = _microsoft_busy(db, connection, start, end)
        elif connection.provider == PROVIDER_ICAL:
            busy = _ical_busy(connection, start, end)
        else:
            busy = []
    except (httpx.HTTPError, CalendarError, KeyError, ValueError):
        logger.warning("Busy lookup failed for user %s (%s)", user.id, connection.provider, exc_info=True)
        return []

    _cache_busy(cache_key, busy)
    return busy


def busy_lookup_for(db: Session):
    """Bind a session so the availability service can call ``lookup(reader, start, end)``."""
    def lookup(reader: User, start: datetime, end: datetime) -> list[Interval]:
        return busy_intervals(db, reader, start, end)
    return lookup


# Booking events


def _event_summary(booking: Booking, viewer: User) -> tuple[str, str]:
    other = booking.reader if viewer.id == booking.actor_id else booking.actor
    summary = f"Self-tape session with {other.public_name}"
    description = f"{booking.duration_minutes}-minute session."
    if booking.meeting_url:
        description += f"\nVideo room: {booking.meeting_url}"
    return summary, description


def create_booking_event(db: Session, user: User, booking: Booking) -> str | None:
    """Create the session in the user's Google or Microsoft calendar. Returns the event id."""
    connection = _get_connection(db, user.id)
    if connection is None or connection.provider == PROVIDER_ICAL:
        return None

    token = get_access_token(db, connection)
    if not token:
        return None

    summary, description = _event_summary(booking, user)
    try:
        with _http_client() as client:
            if connection.provider == PROVIDER_GOOGLE:
                response = client.post(
                    f"{GOOGLE_CALENDAR_API}/calendars/{connection.calendar_id or 'primary'}/events",
                    headers={"Authorization": f"Bearer {token}"},
                    json={
                        "summary": summary,
                        "description": description,
                        "start": {"dateTime": _iso_utc(booking.start_time), "timeZone": "UTC"},
                        "end": {"dateTime": _iso_utc(booking.end_time), "timeZone": "UTC"},
                        "reminders": {
                            "useDefault": False,
                            "overrides": [{"method": "email", "minutes": 60}, {"method": "popup", "minutes": 15}],
                        },
                    },
                )
                response.raise_for_status()
                event_id = response.json().get("id")
                booking.google_event_id = event_id
            else:
                response = client.post(
                    f"{MICROSOFT_GRAPH_API}/me/events",
                    headers={"Authorization": f"Bearer {token}"},
                    json={
                        "subject": summary,
                        "body": {"contentType": "text", "content": description},
                        "start": {"dateTime": booking.start_time.isoformat(), "timeZone": "UTC"},
                        "end": {"dateTime": booking.end_time.isoformat(), "timeZone": "UTC"},
                        "reminderMinutesBeforeStart": 15,
                    },
                )
                response.raise_for_status()
                event_id = response.json().get("id")
                booking.microsoft_event_id = event_id
    except (httpx.HTTPError, ValueError):
        logger.warning("Calendar event creation failed for booking %s", booking.id, exc_info=True)
        return None

    db.flush()
    logger.info("Calendar event %s created for booking %s", event_id, booking.id)
    return event_id


def delete_booking_event(db: Session, user: User, booking: Booking) -> bool:
    connection = _get_connection(db, user.id)
    if connection is None or connection.provider == PROVIDER_ICAL:
        return False

    if connection.provider == PROVIDER_GOOGLE:
        event_id = booking.google_event_id
        url = f"{GOOGLE_CALENDAR_API}/calendars/{connection.calendar_id or 'primary'}/events/{event_id}"
    else:
        event_id = booking.microsoft_event_id
        url = f"{MICROSOFT_GRAPH_API}/me/events/{event_id}"
    if not event_id:
        return False

    token = get_access_token(db, connection)
    if not token:
        return False

    try:
        with _http_client() as client:
            response = client.delete(url, headers={"Authorization": f"Bearer {token}"})
    except httpx.HTTPError:
        logger.warning("Calendar event deletion failed for booking %s", booking.id, exc_info=True)
        return False

    # 404/410 mean the event is already gone.
    if response.status_code not in (200, 204, 404, 410):
        logger.warning("Calendar event deletion for booking %s returned %s", booking.id, response.status_code)
        return False
    return True
