"""Scheduled maintenance jobs run through the /cron endpoints.

Each booking is processed and committed on its own so one failure never
blocks the rest of the batch.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.database import utcnow
from backend.models.booking import STATUS_CONFIRMED, STATUS_EXPIRED, STATUS_PENDING, Booking
from backend.services import email
from backend.services.availability import PENDING_HOLD_MINUTES
from backend.services.cancellation import BookingError, complete_booking

logger = logging.getLogger(__name__)

REMINDER_TOLERANCE = timedelta(minutes=30)

ReminderSender = Callable[[Booking, int], bool]


def reminder_window(now: datetime, hours_before: int) -> tuple[datetime, datetime]:
    target = now + timedelta(hours=hours_before)
    return target - REMINDER_TOLERANCE, target + REMINDER_TOLERANCE


def _send_reminders(
    db: Session,
    now: datetime,
    hours_before: int,
    flag: str,
    send: ReminderSender,
) -> dict:
    window_start, window_end = reminder_window(now, hours_before)
    bookings = db.query(Booking).filter(
        Booking.status == STATUS_CONFIRMED,
        getattr(Booking, flag).is_(False),
        Booking.start_time >= window_start,
        Booking.start_time <= window_end,
    ).all()

    result = {'sent': 0, 'failed': 0}
    for booking in bookings:
        if not send(booking, hours_before):
            logger.warning('%sh reminder for booking %s was not delivered', hours_before, booking.id)
            result['failed'] += 1
            continue
        try:
            setattr(booking, flag, True)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception('Could not mark %sh reminder sent for booking %s', hours_before, booking.id)
            result['failed'] += 1
            continue
        result['sent'] += 1
    return result


def send_reminders(db: Session, now: datetime | None = None, send: ReminderSender | None = None) -> dict:
    now = now or utcnow()
    send = send or email.send_booking_reminder
    return {
        'twenty_four_hour': _send_reminders(db, now, 24, 'reminder_24h_sent', send),
        'one_hour': _send_reminders(db, now, 1, 'reminder_1h_sent', send),
    }


def stale_pending_query(db: Session, now: datetime):
    cutoff = now - timedelta(minutes=PENDING_HOLD_MINUTES)
    return db.query(Booking).filter(
        Booking.status == STATUS_PENDING,
        Booking.created_at < cutoff,
    )


def expire_pending(db: Session, now: datetime | None = None) -> int:
    now = now or utcnow()
    expired = stale_pending_query(db, now).update({'status': STATUS_EXPIRED}, synchronize_session=False)
    db.commit()
    logger.info('Expired %s stale pending bookings', expired)
    return expired


def complete_sessions(db: Session, now: datetime | None = None) -> dict:
    now = now or utcnow()
    bookings = db.query(Booking).filter(
        Booking.status == STATUS_CONFIRMED,
        Booking.end_time <= now,
    ).all()

    result = {'completed': 0, 'failed': 0}
    for booking in bookings:
        try:
            complete_booking(db, booking)
            db.commit()
        except (BookingError, SQLAlchemyError):
            db.rollback()
            logger.exception('Could not complete booking %s', booking.id)
            result['failed'] += 1
            continue
        result['completed'] += 1
    return result
