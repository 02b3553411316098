"""Cancellation, refund and reader reliability rules for bookings."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from backend.database import utcnow
from backend.models.booking import (
    REFUND_COMPLETED,
    REFUND_NONE,
    REFUND_PENDING,
    STATUS_CANCELED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_NO_SHOW,
    Booking,
)
from backend.models.user import User
from backend.services.availability import release_slots
from backend.services.payments import create_refund

logger = logging.getLogger(__name__)

CANCELED_BY_ACTOR = "ACTOR"
CANCELED_BY_READER = "READER"
CANCELED_BY_PLATFORM = "PLATFORM"
CANCELED_BY_SYSTEM = "SYSTEM"
CANCELERS = (CANCELED_BY_ACTOR, CANCELED_BY_READER, CANCELED_BY_PLATFORM, CANCELED_BY_SYSTEM)

ISSUE_TYPES = ("NO_SHOW", "LATE", "TECHNICAL", "CONDUCT", "OTHER")

ACTOR_NOTICE_HOURS = 2
READER_NOTICE_HOURS = 24
PROCESSING_FEE_CENTS = 200
PLATFORM_CREDIT_CENTS = 500
SUSPENSION_CANCEL_THRESHOLD = 3
SUSPENSION_LOOKBACK_DAYS = 30
LATE_CANCEL_SUSPENSION_DAYS = 7
NO_SHOW_SUSPENSION_DAYS = 14

RefundFunc = Callable[[str, int, dict], str]


class BookingError(Exception):
    """A booking operation is not allowed in the booking's current state."""


@dataclass(frozen=True)
class RefundDecision:
    refund_type: str
    refund_cents: int
    processing_fee_cents: int = 0
    platform_credit_cents: int = 0
    reader_penalty: bool = False
    message: str = ""


def calculate_refund(total_cents: int, canceled_by: str, hours_until_session: float) -> RefundDecision:
    """Apply the refund tiers for who cancelled and how much notice they gave."""
    if canceled_by == CANCELED_BY_ACTOR:
        if hours_until_session >= ACTOR_NOTICE_HOURS:
            return RefundDecision(
                refund_type='partial',
                refund_cents=max(0, total_cents - PROCESSING_FEE_CENTS),
                processing_fee_cents=PROCESSING_FEE_CENTS,
                message='Full refund issued minus $2 processing fee.',
            )
        return RefundDecision(
            refund_type='none',
            refund_cents=0,
            message='No refund: canceled with less than 2 hours notice. The reader will be paid.',
        )

    if canceled_by == CANCELED_BY_READER:
        if hours_until_session >= READER_NOTICE_HOURS:
            return RefundDecision(
                refund_type='full',
                refund_cents=total_cents,
                message='Full refund issued. The reader canceled with adequate notice.',
            )
        return RefundDecision(
            refund_type='full',
            refund_cents=total_cents,
            reader_penalty=True,
            message='Full refund issued. The reader will receive a warning for late cancellation.',
        )

    if canceled_by in (CANCELED_BY_PLATFORM, CANCELED_BY_SYSTEM):
        return RefundDecision(
            refund_type='full',
            refund_cents=total_cents,
            platform_credit_cents=PLATFORM_CREDIT_CENTS,
            message='Full refund plus $5 platform credit for the service disruption.',
        )

    raise BookingError(f'Invalid cancellation party "{canceled_by}".')


def reliability_score(reader: User) -> float | None:
    """Score from 0 to 100, or None when the reader has no sessions yet."""
    total = reader.total_sessions or 0
    if total == 0:
        return None

    completion_rate = (reader.completed_sessions or 0) / total * 100
    cancel_penalty = (reader.canceled_sessions or 0) / total * 20
    no_show_penalty = (reader.no_show_sessions or 0) / total * 50
    late_penalty = (reader.late_arrivals or 0) / total * 10
    return max(0.0, min(100.0, completion_rate - cancel_penalty - no_show_penalty - late_penalty))


def update_reader_reliability(reader: User) -> None:
    score = reliability_score(reader)
    if score is not None:
        reader.reliability_score = score


def _recent_reader_cancellations(db: Session, reader_id: int, now: datetime) -> int:
    since = now - timedelta(days=SUSPENSION_LOOKBACK_DAYS)
    return db.query(Booking).filter(
        Booking.reader_id == reader_id,
        Booking.status == STATUS_CANCELED,
        Booking.canceled_by == CANCELED_BY_READER,
        Booking.canceled_at >= since,
    ).count()


def cancel_booking(
    db: Session,
    booking: Booking,
    canceled_by: str,
    now: datetime | None = None,
    reason: str | None = None,
    refund_func: RefundFunc = create_refund,
) -> RefundDecision:
    """Cancel a booking, refunding through Stripe before anything is written.

    A ``PaymentError`` from ``refund_func`` propagates with the session untouched.
    The caller commits.
    """
    now = now or utcnow()
    if booking.status == STATUS_CANCELED:
        raise BookingError('Booking is already canceled.')
    if booking.status == STATUS_COMPLETED:
        raise BookingError('Cannot cancel a completed session.')

    hours_until_session = (booking.start_time - now).total_seconds() / 3600
    decision = calculate_refund(booking.total_cents, canceled_by, hours_until_session)

    refund_id = None
    refunded_cents = 0
    if decision.refund_cents > 0 and booking.stripe_payment_intent_id:
        refund_id = refund_func(
            booking.stripe_payment_intent_id,
            decision.refund_cents,
            {
                'bookingId': str(booking.id),
                'canceledBy': canceled_by,
                'originalAmount': str(booking.total_cents),
                'processingFee': str(decision.processing_fee_cents),
            },
        )
        refunded_cents = decision.refund_cents

    release_slots(db, booking)

    booking.status = STATUS_CANCELED
    booking.canceled_at = now
    booking.canceled_by = canceled_by
    booking.cancel_reason = reason
    booking.refund_status = REFUND_COMPLETED if refunded_cents else REFUND_NONE
    booking.refund_cents = refunded_cents
    booking.refund_issued_at = now if refunded_cents else None
    booking.processing_fee_cents = decision.processing_fee_cents
    booking.platform_credit_cents = decision.platform_credit_cents
    booking.stripe_refund_id = refund_id
    db.flush()

    reader = db.get(User, booking.reader_id)
    if reader is not None:
        if canceled_by == CANCELED_BY_READER:
            reader.canceled_sessions = (reader.canceled_sessions or 0) + 1
            if decision.reader_penalty:
                reader.last_warning_at = now
                recent = _recent_reader_cancellations(db, reader.id, now)
                if recent >= SUSPENSION_CANCEL_THRESHOLD:
                    reader.suspended_until = now + timedelta(days=LATE_CANCEL_SUSPENSION_DAYS)
                    reader.suspension_reason = f'Suspended for {recent} late cancellations in 30 days'
                    logger.warning('Reader %s suspended after %s cancellations', reader.id, recent)
        update_reader_reliability(reader)
        db.flush()

    logger.info(
        'Booking %s canceled by %s (refund %s cents, fee %s, credit %s)',
        booking.id,
        canceled_by,
        refunded_cents,
        decision.processing_fee_cents,
        decision.platform_credit_cents,
    )
    return decision


def report_issue(
    db: Session,
    booking: Booking,
    reported_by: str,
    issue_type: str,
    description: str | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Record an issue on a booking and apply the automatic consequences.

    Returns a human-readable list of the actions taken.
    """
    now = now or utcnow()
    if reported_by not in (CANCELED_BY_ACTOR, CANCELED_BY_READER):
        raise BookingError('Invalid reporter.')
    if issue_type not in ISSUE_TYPES:
        raise BookingError('Invalid issue type.')

    booking.has_issue = True
    booking.issue_type = issue_type
    booking.issue_reported_by = reported_by
    booking.issue_description = description

    reader = db.get(User, booking.reader_id)
    actions: list[str] = []

    if issue_type == 'NO_SHOW':
        booking.status = STATUS_NO_SHOW
        if reported_by == CANCELED_BY_ACTOR:
            booking.refund_status = REFUND_PENDING
            booking.refund_cents = booking.total_cents
            booking.platform_credit_cents = PLATFORM_CREDIT_CENTS
            if reader is not None:
                reader.no_show_sessions = (reader.no_show_sessions or 0) + 1
                reader.total_sessions = (reader.total_sessions or 0) + 1
                reader.last_warning_at = now
                reader.suspended_until = now + timedelta(days=NO_SHOW_SUSPENSION_DAYS)
                reader.suspension_reason = 'Suspended for no-show incident'
            actions.append('Reader marked for no-show penalty')
            actions.append('Full refund + $5 credit will be processed')
        else:
            actions.append('Actor no-show recorded')
            actions.append('Reader will receive full payment')

    elif issue_type == 'LATE' and reported_by == CANCELED_BY_ACTOR:
        if reader is not None:
            reader.late_arrivals = (reader.late_arrivals or 0) + 1
        actions.append('Reader late arrival recorded')

    elif issue_type == 'TECHNICAL':
        text = (description or '').lower()
        if any(word in text for word in ('platform', 'video', 'meeting')):
            actions.append('Platform technical issue reported')
        elif reported_by == CANCELED_BY_ACTOR:
            actions.append('Reader technical issue reported')
        else:
            actions.append('Actor technical issue reported')

    if reader is not None:
        update_reader_reliability(reader)
    db.flush()

    logger.info('Issue %s reported by %s on booking %s', issue_type, reported_by, booking.id)
    return actions


def complete_booking(db: Session, booking: Booking) -> None:
    if booking.status != STATUS_CONFIRMED:
        raise BookingError('Only confirmed bookings can be completed.')

    booking.status = STATUS_COMPLETED
    reader = db.get(User, booking.reader_id)
    if reader is not None:
        reader.completed_sessions = (reader.completed_sessions or 0) + 1
        reader.total_sessions = (reader.total_sessions or 0) + 1
        update_reader_reliability(reader)
    db.flush()
