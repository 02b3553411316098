import logging
from datetime import date, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user
from backend.core import config
from backend.database import get_db, utcnow
from backend.models.booking import STATUS_CONFIRMED, STATUS_PENDING, Booking
from backend.models.user import (
    DEFAULT_RATE_15_CENTS,
    DEFAULT_RATE_30_CENTS,
    DEFAULT_RATE_60_CENTS,
    ROLE_ADMIN,
    User,
)
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.services import availability as availability_service
from backend.services import calendar_sync, email, payments, video
from backend.services.cancellation import (
    CANCELED_BY_ACTOR,
    CANCELED_BY_PLATFORM,
    CANCELED_BY_READER,
    ISSUE_TYPES,
    BookingError,
    cancel_booking,
    complete_booking,
    report_issue,
)

router = APIRouter(tags=['bookings'])

logger = logging.getLogger(__name__)

RESCHEDULE_NOTICE_HOURS = 2
MAX_NOTES_LENGTH = 1000
MAX_DESCRIPTION_LENGTH = 2000


def _clean_optional(value: str | None, max_length: int, label: str) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if len(normalized) > max_length:
        raise ValueError(f'{label} must be {max_length} characters or fewer.')
    return normalized


class CreateBookingRequest(BaseModel):
    reader_id: int
    date: date
    start_minute: int
    duration: int
    timezone: str | None = None
    notes: str | None = None
    sides_url: str | None = None
    sides_link: str | None = None
    sides_file_name: str | None = None

    @field_validator('start_minute')
    @classmethod
    def validate_start_minute(cls, value: int) -> int:
        if not 0 <= value < availability_service.MINUTES_PER_DAY:
            raise ValueError('Start minute must be between 0 and 1439.')
        return value

    @field_validator('duration')
    @classmethod
    def validate_duration(cls, value: int) -> int:
        if value not in availability_service.BOOKING_DURATIONS:
            raise ValueError('Duration must be 15, 30 or 60 minutes.')
        return value

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _clean_optional(value, MAX_NOTES_LENGTH, 'Notes')

    @field_validator('sides_url', 'sides_link', 'sides_file_name')
    @classmethod
    def validate_sides(cls, value: str | None) -> str | None:
        return _clean_optional(value, 2048, 'Sides')


class RescheduleBookingRequest(BaseModel):
    date: date
    start_minute: int
    timezone: str | None = None

    @field_validator('start_minute')
    @classmethod
    def validate_start_minute(cls, value: int) -> int:
        if not 0 <= value < availability_service.MINUTES_PER_DAY:
            raise ValueError('Start minute must be between 0 and 1439.')
        return value


class CancelBookingRequest(BaseModel):
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return _clean_optional(value, MAX_NOTES_LENGTH, 'Reason')


class ReportIssueRequest(BaseModel):
    issue_type: str
    description: str | None = None

    @field_validator('issue_type')
    @classmethod
    def validate_issue_type(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in ISSUE_TYPES:
            raise ValueError('Invalid issue type.')
        return normalized

    @field_validator('description')
    @classmethod
    def validate_description(cls, value: str | None) -> str | None:
        return _clean_optional(value, MAX_DESCRIPTION_LENGTH, 'Description')


class BookingResponse(BaseModel):
    id: int
    actor_id: int
    reader_id: int
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    status: str
    total_cents: int
    reader_earnings_cents: int | None = None
    platform_fee_cents: int | None = None
    meeting_url: str | None = None
    sides_url: str | None = None
    sides_link: str | None = None
    sides_file_name: str | None = None
    notes: str | None = None
    canceled_at: datetime | None = None
    canceled_by: str | None = None
    cancel_reason: str | None = None
    refund_status: str | None = None
    refund_cents: int | None = None
    processing_fee_cents: int | None = None
    platform_credit_cents: int | None = None
    has_issue: bool | None = None
    issue_type: str | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class CreateBookingResponse(BaseModel):
    booking: BookingResponse
    checkout_url: str | None = None
    message: str | None = None


class RefundResponse(BaseModel):
    refund_type: str
    refund_cents: int
    processing_fee_cents: int
    platform_credit_cents: int
    message: str


class CancelBookingResponse(BaseModel):
    booking: BookingResponse
    refund: RefundResponse


class ReportIssueResponse(BaseModel):
    booking_id: int
    issue_type: str
    reported_by: str
    auto_actions: list[str]
    message: str


def price_for_duration(reader: User, duration: int) -> int:
    if duration == 15:
        return reader.rate_per_15_min or DEFAULT_RATE_15_CENTS
    if duration == 30:
        return reader.rate_per_30_min or DEFAULT_RATE_30_CENTS
    return reader.rate_per_60_min or DEFAULT_RATE_60_CENTS


def resolve_timezone(tz_name: str | None, user: User):
    name = (tz_name or user.timezone or config.DEFAULT_TIMEZONE).strip()
    if not availability_service.is_valid_timezone(name):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid timezone.')
    return availability_service.get_zone(name)


def participant_role(booking: Booking, user: User) -> str | None:
    if user.id == booking.actor_id:
        return CANCELED_BY_ACTOR
    if user.id == booking.reader_id:
        return CANCELED_BY_READER
    if user.role == ROLE_ADMIN:
        return CANCELED_BY_PLATFORM
    return None


def get_booking_for_user(booking_id: int, user: User, db: Session) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Booking not found.')
    if participant_role(booking, user) is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='You do not have access to this booking.')
    return booking


def _sync_reader_calendar(db: Session, booking: Booking, remove_existing: bool, create_new: bool) -> None:
    """Best-effort calendar update; the booking change is already committed."""
    try:
        if remove_existing:
            calendar_sync.delete_booking_event(db, booking.reader, booking)
        if create_new:
            calendar_sync.create_booking_event(db, booking.reader, booking)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Calendar sync bookkeeping failed for booking %s', booking.id)


@router.post('', response_model=CreateBookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: CreateBookingRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    actor_tz = resolve_timezone(data.timezone, current_user)
    ensure_database_ready()

    try:
        now = utcnow()
        reader = db.get(User, data.reader_id)
        if reader is None or not reader.is_reader:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Reader not found.')
        if reader.id == current_user.id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='You cannot book yourself.')
        if not reader.stripe_account_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Reader hasn't set up payments yet.")
        if not reader.is_bookable(now):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Reader is not accepting bookings.')

        start_time = availability_service.local_to_utc(data.date, data.start_minute, actor_tz)
        end_time = start_time + timedelta(minutes=data.duration)

        existing = db.query(Booking).filter(
            Booking.actor_id == current_user.id,
            Booking.reader_id == reader.id,
            Booking.start_time == start_time,
            Booking.end_time == end_time,
            Booking.status.in_([STATUS_PENDING, STATUS_CONFIRMED]),
        ).first()
        if existing:
            return CreateBookingResponse(
                booking=BookingResponse.model_validate(existing),
                message='Booking already exists.',
            )

        bookable = availability_service.is_bookable_start(
            db,
            reader,
            start_time,
            data.duration,
            now,
            busy_lookup=calendar_sync.busy_lookup_for(db),
        )
        if not bookable:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='This time is no longer available.',
            )

        booking = Booking(
            actor_id=current_user.id,
            reader_id=reader.id,
            start_time=start_time,
            end_time=end_time,
            duration_minutes=data.duration,
            status=STATUS_PENDING,
            total_cents=price_for_duration(reader, data.duration),
            notes=data.notes,
            sides_url=data.sides_url,
            sides_link=data.sides_link,
            sides_file_name=data.sides_file_name,
        )
        db.add(booking)
        db.flush()

        booking.meeting_url = video.create_meeting_room(booking)

        try:
            session_id, checkout_url = payments.create_booking_checkout(booking, reader, current_user)
        except payments.PaymentError as exc:
            db.rollback()
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail='Could not start checkout. Please try again.',
            ) from exc

        booking.stripe_checkout_session_id = session_id
        db.commit()
        db.refresh(booking)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Booking %s created for reader %s by actor %s', booking.id, reader.id, current_user.id)
    return CreateBookingResponse(booking=BookingResponse.model_validate(booking), checkout_url=checkout_url)


@router.get('', response_model=list[BookingResponse])
def list_my_bookings(
    scope: str = Query(default='future'),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    normalized_scope = scope.strip().lower()
    if normalized_scope not in {'future', 'all'}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Scope must be "future" or "all".')

    ensure_database_ready()

    try:
        query = db.query(Booking).filter(
            or_(Booking.actor_id == current_user.id, Booking.reader_id == current_user.id),
        )
        if normalized_scope == 'future':
            return query.filter(Booking.start_time >= utcnow()).order_by(Booking.start_time.asc()).all()
        return query.order_by(Booking.start_time.desc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{booking_id}', response_model=BookingResponse)
def get_booking(booking_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return get_booking_for_user(booking_id, current_user, db)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{booking_id}/cancel', response_model=CancelBookingResponse)
def cancel_my_booking(
    booking_id: int,
    data: CancelBookingRequest | None = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        booking = get_booking_for_user(booking_id, current_user, db)
        canceled_by = participant_role(booking, current_user)
        had_calendar_event = bool(booking.google_event_id or booking.microsoft_event_id)

        try:
            decision = cancel_booking(
                db,
                booking,
                canceled_by,
                reason=data.reason if data else None,
                refund_func=payments.create_refund,
            )
        except BookingError as exc:
            db.rollback()
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except payments.PaymentError as exc:
            db.rollback()
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

        db.commit()
        db.refresh(booking)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    if had_calendar_event:
        _sync_reader_calendar(db, booking, remove_existing=True, create_new=False)
    email.send_cancellation_emails(booking, decision.message)

    return CancelBookingResponse(
        booking=BookingResponse.model_validate(booking),
        refund=RefundResponse(
            refund_type=decision.refund_type,
            refund_cents=booking.refund_cents or 0,
            processing_fee_cents=decision.processing_fee_cents,
            platform_credit_cents=decision.platform_credit_cents,
            message=decision.message,
        ),
    )


@router.post('/{booking_id}/reschedule', response_model=BookingResponse)
def reschedule_booking(
    booking_id: int,
    data: RescheduleBookingRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        booking = get_booking_for_user(booking_id, current_user, db)
        if booking.status != STATUS_CONFIRMED:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Only confirmed bookings can be rescheduled.',
            )

        now = utcnow()
        if booking.start_time - now < timedelta(hours=RESCHEDULE_NOTICE_HOURS):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Bookings can only be rescheduled at least 2 hours before the session.',
            )

        tz = resolve_timezone(data.timezone, current_user)
        new_start = availability_service.local_to_utc(data.date, data.start_minute, tz)
        new_end = new_start + timedelta(minutes=booking.duration_minutes)
        if new_start <= now:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='The new time must be in the future.',
            )

        conflicts = availability_service.conflicting_bookings(
            db,
            booking.reader_id,
            new_start,
            new_end,
            exclude_booking_id=booking.id,
        )
        if conflicts:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='The reader already has a booking at that time.',
            )

        previous_start = booking.start_time
        availability_service.release_slots(db, booking)
        booking.start_time = new_start
        booking.end_time = new_end
        booking.reminder_24h_sent = False
        booking.reminder_1h_sent = False
        db.flush()
        availability_service.reserve_slots(db, booking)
        db.commit()
        db.refresh(booking)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Booking %s rescheduled from %s to %s', booking.id, previous_start, booking.start_time)
    _sync_reader_calendar(db, booking, remove_existing=True, create_new=True)
    email.send_reschedule_emails(booking, previous_start)
    return booking


@router.post('/{booking_id}/report-issue', response_model=ReportIssueResponse)
def report_booking_issue(
    booking_id: int,
    data: ReportIssueRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        booking = get_booking_for_user(booking_id, current_user, db)
        reported_by = participant_role(booking, current_user)
        if reported_by not in (CANCELED_BY_ACTOR, CANCELED_BY_READER):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Only session participants can report issues.',
            )

        try:
            actions = report_issue(db, booking, reported_by, data.issue_type, data.description)
        except BookingError as exc:
            db.rollback()
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return ReportIssueResponse(
        booking_id=booking.id,
        issue_type=data.issue_type,
        reported_by=reported_by,
        auto_actions=actions,
        message='Issue reported. Our support team will review it within 24 hours.',
    )


@router.post('/{booking_id}/complete', response_model=BookingResponse)
def mark_booking_complete(
    booking_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        booking = get_booking_for_user(booking_id, current_user, db)
        if participant_role(booking, current_user) == CANCELED_BY_ACTOR:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Only the reader can mark a session complete.',
            )
        if booking.start_time > utcnow():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Sessions can only be completed after they start.',
            )

        try:
            complete_booking(db, booking)
        except BookingError as exc:
            db.rollback()
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

        db.commit()
        db.refresh(booking)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return booking
