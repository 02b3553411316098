"""Reader availability: weekly templates, concrete slots and bookable starts.

Templates live in the reader's own timezone; slots and bookings are stored as
naive UTC. ``regenerate_reader_slots`` is the only place that turns templates
into slots, every caller (template save, reader sync, admin sync) goes through
it.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterable, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from backend.core import config
from backend.database import utcnow
from backend.models.availability import AvailabilitySlot, AvailabilityTemplate
from backend.models.booking import STATUS_CONFIRMED, STATUS_PENDING, Booking
from backend.models.user import User

logger = logging.getLogger(__name__)

SLOT_MINUTES = 30
SLOT_WINDOW_DAYS = 30
PENDING_HOLD_MINUTES = 15
BOOKING_DURATIONS = (15, 30, 60)
DEFAULT_MIN_ADVANCE_HOURS = 2
DEFAULT_MAX_ADVANCE_HOURS = 168
MINUTES_PER_DAY = 24 * 60

Interval = tuple[datetime, datetime]
BusyLookup = Callable[[User, datetime, datetime], list[Interval]]


@dataclass(frozen=True)
class TemplateWindow:
    day_of_week: int
    start_minutes: int
    end_minutes: int

    @property
    def start_hhmm(self) -> str:
        return format_hhmm(self.start_minutes)

    @property
    def end_hhmm(self) -> str:
        return format_hhmm(self.end_minutes)


def parse_hhmm(value: str) -> int:
    """Parse "HH:MM" into minutes after midnight; "24:00" is allowed as an end."""
    try:
        hours_text, minutes_text = value.strip().split(':')
        hours, minutes = int(hours_text), int(minutes_text)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f'Invalid time "{value}", expected HH:MM.') from exc

    total = hours * 60 + minutes
    if hours < 0 or not 0 <= minutes < 60 or total > MINUTES_PER_DAY:
        raise ValueError(f'Invalid time "{value}", expected HH:MM.')
    return total


def format_hhmm(minutes: int) -> str:
    return f'{minutes // 60:02d}:{minutes % 60:02d}'


def validate_template(day_of_week: int, start_time: str, end_time: str) -> TemplateWindow:
    if not 0 <= day_of_week <= 6:
        raise ValueError('Invalid day of week.')

    start_minutes = parse_hhmm(start_time)
    end_minutes = parse_hhmm(end_time)
    if start_minutes >= MINUTES_PER_DAY:
        raise ValueError('Invalid start time.')
    if start_minutes >= end_minutes:
        raise ValueError('Start time must be before end time.')

    return TemplateWindow(day_of_week, start_minutes, end_minutes)


def default_templates() -> list[TemplateWindow]:
    return [TemplateWindow(day, 9 * 60, 17 * 60) for day in range(1, 6)]


def get_zone(tz_name: str | None) -> ZoneInfo:
    name = tz_name or config.DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning('Unknown timezone %r, falling back to %s', name, config.DEFAULT_TIMEZONE)
        return ZoneInfo(config.DEFAULT_TIMEZONE)


def is_valid_timezone(tz_name: str) -> bool:
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def local_to_utc(day: date, minutes: int, tz: ZoneInfo) -> datetime:
    local = datetime.combine(day, time()) + timedelta(minutes=minutes)
    return local.replace(tzinfo=tz).astimezone(timezone.utc).replace(tzinfo=None)


def utc_to_local(value: datetime, tz: ZoneInfo) -> datetime:
    return value.replace(tzinfo=timezone.utc).astimezone(tz)


def local_today(now: datetime, tz: ZoneInfo) -> date:
    return utc_to_local(now, tz).date()


def min_advance_hours(reader: User) -> int:
    if reader.min_advance_hours is None:
        return DEFAULT_MIN_ADVANCE_HOURS
    return reader.min_advance_hours


def max_advance_hours(reader: User) -> int:
    if reader.max_advance_booking_hours is None:
        return DEFAULT_MAX_ADVANCE_HOURS
    return reader.max_advance_booking_hours


def day_bounds(day: date, tz: ZoneInfo) -> Interval:
    return local_to_utc(day, 0, tz), local_to_utc(day + timedelta(days=1), 0, tz)


def weekday_index(day: date) -> int:
    """0=Sunday .. 6=Saturday, the numbering templates use."""
    return (day.weekday() + 1) % 7


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    return start < other_end and end > other_start


def overlaps_any(start: datetime, end: datetime, intervals: Iterable[Interval]) -> bool:
    return any(overlaps(start, end, other_start, other_end) for other_start, other_end in intervals)


def build_slot_intervals(
    windows: Sequence[TemplateWindow],
    tz_name: str | None,
    now: datetime,
    days: int = SLOT_WINDOW_DAYS,
) -> list[Interval]:
    """Expand weekly windows into 30-minute UTC intervals for the next ``days`` days.

    Day boundaries and weekdays are evaluated in the reader's timezone, today
    included. A trailing remainder shorter than a slot is dropped and intervals
    that already started are skipped.
    """
    tz = get_zone(tz_name)
    today = local_today(now, tz)
    slot_length = timedelta(minutes=SLOT_MINUTES)
    intervals: set[Interval] = set()

    for offset in range(days):
        day = today + timedelta(days=offset)
        day_index = weekday_index(day)

        for window in windows:
            if window.day_of_week != day_index:
                continue

            current = window.start_minutes
            while current + SLOT_MINUTES <= window.end_minutes:
                slot_start = local_to_utc(day, current, tz)
                if slot_start > now:
                    intervals.add((slot_start, slot_start + slot_length))
                current += SLOT_MINUTES

    return sorted(intervals)


def template_window(template: AvailabilityTemplate) -> TemplateWindow:
    return validate_template(template.day_of_week, template.start_time, template.end_time)


def list_templates(db: Session, reader_id: int) -> list[AvailabilityTemplate]:
    return db.query(AvailabilityTemplate).filter(
        AvailabilityTemplate.reader_id == reader_id,
    ).order_by(AvailabilityTemplate.day_of_week.asc(), AvailabilityTemplate.start_time.asc()).all()


def regenerate_reader_slots(db: Session, reader: User, now: datetime | None = None) -> int:
    """Replace a reader's future free slots with slots derived from their active templates.

    Booked slots are kept and nothing new is created over them. The caller
    commits. Returns the number of slots created.
    """
    now = now or utcnow()

    windows: list[TemplateWindow] = []
    templates = db.query(AvailabilityTemplate).filter(
        AvailabilityTemplate.reader_id == reader.id,
        AvailabilityTemplate.is_active.is_(True),
    ).all()
    for template in templates:
        try:
            windows.append(template_window(template))
        except ValueError:
            logger.warning('Skipping invalid availability template %s for reader %s', template.id, reader.id)

    db.query(AvailabilitySlot).filter(
        AvailabilitySlot.reader_id == reader.id,
        AvailabilitySlot.start_time >= now,
        AvailabilitySlot.is_booked.is_(False),
    ).delete(synchronize_session=False)

    booked_intervals = db.query(AvailabilitySlot.start_time, AvailabilitySlot.end_time).filter(
        AvailabilitySlot.reader_id == reader.id,
        AvailabilitySlot.is_booked.is_(True),
        AvailabilitySlot.end_time > now,
    ).all()

    created = 0
    for slot_start, slot_end in build_slot_intervals(windows, reader.timezone, now):
        if overlaps_any(slot_start, slot_end, booked_intervals):
            continue
        db.add(AvailabilitySlot(
            reader_id=reader.id,
            start_time=slot_start,
            end_time=slot_end,
            is_booked=False,
        ))
        created += 1

    db.flush()
    logger.info('Regenerated %s availability slots for reader %s', created, reader.id)
    return created


def replace_templates(
    db: Session,
    reader: User,
    windows: Sequence[TemplateWindow],
    now: datetime | None = None,
) -> int:
    db.query(AvailabilityTemplate).filter(
        AvailabilityTemplate.reader_id == reader.id,
    ).delete(synchronize_session=False)

    for window in windows:
        db.add(AvailabilityTemplate(
            reader_id=reader.id,
            day_of_week=window.day_of_week,
            start_time=window.start_hhmm,
            end_time=window.end_hhmm,
            is_active=True,
        ))
    db.flush()

    return regenerate_reader_slots(db, reader, now)


def merge_periods(intervals: Iterable[Interval]) -> list[Interval]:
    """Join back-to-back or overlapping intervals into continuous periods."""
    periods: list[list[datetime]] = []
    for start, end in sorted(intervals):
        if periods and start <= periods[-1][1]:
            periods[-1][1] = max(periods[-1][1], end)
        else:
            periods.append([start, end])
    return [(start, end) for start, end in periods]


def bookable_starts(
    free_slots: Iterable[Interval],
    duration_minutes: int,
    earliest_start: datetime,
    busy: Sequence[Interval] = (),
    blocked: Sequence[Interval] = (),
) -> list[Interval]:
    """Session windows of ``duration_minutes`` that fit inside consecutive free slots.

    Candidates step by 15 minutes for 15-minute sessions and by 30 otherwise.
    """
    step = timedelta(minutes=15 if duration_minutes == 15 else 30)
    duration = timedelta(minutes=duration_minutes)
    starts: list[Interval] = []

    for period_start, period_end in merge_periods(free_slots):
        current = period_start
        while current + duration <= period_end:
            end = current + duration
            if (
                current >= earliest_start
                and not overlaps_any(current, end, busy)
                and not overlaps_any(current, end, blocked)
            ):
                starts.append((current, end))
            current += step

    return starts


def active_booking_intervals(
    db: Session,
    reader_id: int,
    range_start: datetime,
    range_end: datetime,
    now: datetime,
    exclude_booking_id: int | None = None,
) -> list[Interval]:
    """Intervals held by confirmed bookings or pending checkouts still inside their hold."""
    hold_cutoff = now - timedelta(minutes=PENDING_HOLD_MINUTES)
    query = db.query(Booking.start_time, Booking.end_time).filter(
        Booking.reader_id == reader_id,
        Booking.start_time < range_end,
        Booking.end_time > range_start,
        or_(
            Booking.status == STATUS_CONFIRMED,
            and_(Booking.status == STATUS_PENDING, Booking.created_at >= hold_cutoff),
        ),
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != exclude_booking_id)
    return [(start, end) for start, end in query.all()]


def conflicting_bookings(
    db: Session,
    reader_id: int,
    range_start: datetime,
    range_end: datetime,
    exclude_booking_id: int | None = None,
) -> list[Booking]:
    """Every confirmed or pending booking of the reader overlapping the range, however old."""
    query = db.query(Booking).filter(
        Booking.reader_id == reader_id,
        Booking.start_time < range_end,
        Booking.end_time > range_start,
        Booking.status.in_([STATUS_CONFIRMED, STATUS_PENDING]),
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != exclude_booking_id)
    return query.all()

def compute_day_starts(
    db: Session,
    reader: User,
    day: date,
    duration_minutes: int,
    now: datetime,
    busy_lookup: BusyLookup | None = None,
) -> list[Interval]:
    """Bookable session windows on a calendar day of the reader's timezone."""
    tz = get_zone(reader.timezone)
    day_start, day_end = day_bounds(day, tz)
    window_end = now + timedelta(hours=max_advance_hours(reader))

    if day_end <= now or day_start > window_end:
        return []

    free_slots = [
        (slot_start, slot_end)
        for slot_start, slot_end in db.query(AvailabilitySlot.start_time, AvailabilitySlot.end_time).filter(
            AvailabilitySlot.reader_id == reader.id,
            AvailabilitySlot.is_booked.is_(False),
            AvailabilitySlot.start_time >= day_start,
            AvailabilitySlot.start_time < day_end,
        ).order_by(AvailabilitySlot.start_time.asc()).all()
    ]
    if not free_slots:
        return []

    earliest_start = now + timedelta(hours=min_advance_hours(reader))
    range_end = day_end + timedelta(minutes=max(BOOKING_DURATIONS))
    blocked = active_booking_intervals(db, reader.id, day_start, range_end, now)
    busy = busy_lookup(reader, day_start, range_end) if busy_lookup else []

    starts = bookable_starts(free_slots, duration_minutes, earliest_start, busy, blocked)
    return [(start, end) for start, end in starts if start <= window_end]


def available_days(
    db: Session,
    reader: User,
    duration_minutes: int,
    now: datetime,
    busy_lookup: BusyLookup | None = None,
) -> list[date]:
    tz = get_zone(reader.timezone)
    first_day = local_today(now, tz)
    last_moment = now + timedelta(hours=max_advance_hours(reader))
    last_day = utc_to_local(last_moment, tz).date()

    days: list[date] = []
    current = first_day
    while current <= last_day:
        if compute_day_starts(db, reader, current, duration_minutes, now, busy_lookup):
            days.append(current)
        current += timedelta(days=1)
    return days


def is_bookable_start(
    db: Session,
    reader: User,
    start: datetime,
    duration_minutes: int,
    now: datetime,
    busy_lookup: BusyLookup | None = None,
) -> bool:
    tz = get_zone(reader.timezone)
    day = utc_to_local(start, tz).date()
    end = start + timedelta(minutes=duration_minutes)
    return (start, end) in compute_day_starts(db, reader, day, duration_minutes, now, busy_lookup)


def reserve_slots(db: Session, booking: Booking) -> int:
    return db.query(AvailabilitySlot).filter(
        AvailabilitySlot.reader_id == booking.reader_id,
        AvailabilitySlot.start_time < booking.end_time,
        AvailabilitySlot.end_time > booking.start_time,
        AvailabilitySlot.is_booked.is_(False),
    ).update({'is_booked': True, 'booking_id': booking.id}, synchronize_session=False)


def release_slots(db: Session, booking: Booking) -> int:
    return db.query(AvailabilitySlot).filter(
        AvailabilitySlot.reader_id == booking.reader_id,
        AvailabilitySlot.booking_id == booking.id,
        AvailabilitySlot.is_booked.is_(True),
    ).update({'is_booked': False, 'booking_id': None}, synchronize_session=False)
