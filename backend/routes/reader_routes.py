from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import require_reader
from backend.core import config
from backend.database import get_db, utcnow
from backend.models.user import (
    DEFAULT_RATE_15_CENTS,
    DEFAULT_RATE_30_CENTS,
    DEFAULT_RATE_60_CENTS,
    ROLE_ADMIN,
    ROLE_READER,
    User,
)
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.routes.payment_routes import ACTIVE_SUBSCRIPTION_STATUSES
from backend.services import availability as availability_service

router = APIRouter(tags=['readers'])

MIN_RATE_CENTS = 100
MAX_RATE_CENTS = 100_000
MAX_MIN_ADVANCE_HOURS = 72
MAX_ADVANCE_BOOKING_HOURS = availability_service.SLOT_WINDOW_DAYS * 24
MAX_BIO_LENGTH = 2000


class ReaderResponse(BaseModel):
    id: int
    display_name: str
    bio: str | None = None
    timezone: str
    rate_per_15_min: int
    rate_per_30_min: int
    rate_per_60_min: int
    reliability_score: float | None = None
    completed_sessions: int = 0


class ReaderProfileResponse(ReaderResponse):
    min_advance_hours: int
    max_advance_booking_hours: int
    is_bookable: bool


class ReaderSettingsRequest(BaseModel):
    display_name: str | None = None
    bio: str | None = None
    timezone: str | None = None
    rate_per_15_min: int | None = None
    rate_per_30_min: int | None = None
    rate_per_60_min: int | None = None
    min_advance_hours: int | None = None
    max_advance_booking_hours: int | None = None

    @field_validator('display_name')
    @classmethod
    def validate_display_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError('Display name cannot be blank.')
        return normalized

    @field_validator('bio')
    @classmethod
    def validate_bio(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if len(normalized) > MAX_BIO_LENGTH:
            raise ValueError(f'Bio must be {MAX_BIO_LENGTH} characters or fewer.')
        return normalized

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not availability_service.is_valid_timezone(normalized):
            raise ValueError('Invalid timezone.')
        return normalized

    @field_validator('rate_per_15_min', 'rate_per_30_min', 'rate_per_60_min')
    @classmethod
    def validate_rate(cls, value: int | None) -> int | None:
        if value is not None and not MIN_RATE_CENTS <= value <= MAX_RATE_CENTS:
            raise ValueError(f'Rates must be between {MIN_RATE_CENTS} and {MAX_RATE_CENTS} cents.')
        return value

    @field_validator('min_advance_hours')
    @classmethod
    def validate_min_advance(cls, value: int | None) -> int | None:
        if value is not None and not 0 <= value <= MAX_MIN_ADVANCE_HOURS:
            raise ValueError(f'Minimum notice must be between 0 and {MAX_MIN_ADVANCE_HOURS} hours.')
        return value

    @field_validator('max_advance_booking_hours')
    @classmethod
    def validate_max_advance(cls, value: int | None) -> int | None:
        if value is not None and not 1 <= value <= MAX_ADVANCE_BOOKING_HOURS:
            raise ValueError(f'Booking window must be between 1 and {MAX_ADVANCE_BOOKING_HOURS} hours.')
        return value


class ToggleStatusResponse(BaseModel):
    is_active: bool


def to_reader_response(reader: User) -> dict:
    return {
        'id': reader.id,
        'display_name': reader.public_name,
        'bio': reader.bio,
        'timezone': reader.timezone or config.DEFAULT_TIMEZONE,
        'rate_per_15_min': reader.rate_per_15_min or DEFAULT_RATE_15_CENTS,
        'rate_per_30_min': reader.rate_per_30_min or DEFAULT_RATE_30_CENTS,
        'rate_per_60_min': reader.rate_per_60_min or DEFAULT_RATE_60_CENTS,
        'reliability_score': reader.reliability_score,
        'completed_sessions': reader.completed_sessions or 0,
    }


@router.get('', response_model=list[ReaderResponse])
def list_readers(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        now = utcnow()
        readers = db.query(User).filter(
            User.role == ROLE_READER,
            User.is_active.is_(True),
            User.subscription_status.in_(ACTIVE_SUBSCRIPTION_STATUSES),
            or_(User.suspended_until.is_(None), User.suspended_until <= now),
        ).order_by(User.reliability_score.desc(), User.id.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return [ReaderResponse(**to_reader_response(reader)) for reader in readers]


@router.get('/{reader_id}', response_model=ReaderProfileResponse)
def get_reader(reader_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        reader = db.get(User, reader_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if reader is None or reader.role not in (ROLE_READER, ROLE_ADMIN):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Reader not found.')

    return ReaderProfileResponse(
        **to_reader_response(reader),
        min_advance_hours=availability_service.min_advance_hours(reader),
        max_advance_booking_hours=availability_service.max_advance_hours(reader),
        is_bookable=reader.is_bookable(utcnow()),
    )


@router.put('/settings', response_model=ReaderProfileResponse)
def update_reader_settings(
    data: ReaderSettingsRequest,
    current_user: User = Depends(require_reader),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    changes = data.model_dump(exclude_none=True)
    timezone_changed = 'timezone' in changes and changes['timezone'] != current_user.timezone

    try:
        for field, value in changes.items():
            setattr(current_user, field, value)
        db.flush()
        # Templates are wall-clock times in the reader's zone, so slots move with it.
        if timezone_changed:
            availability_service.regenerate_reader_slots(db, current_user)
        db.commit()
        db.refresh(current_user)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return ReaderProfileResponse(
        **to_reader_response(current_user),
        min_advance_hours=availability_service.min_advance_hours(current_user),
        max_advance_booking_hours=availability_service.max_advance_hours(current_user),
        is_bookable=current_user.is_bookable(utcnow()),
    )


@router.post('/toggle-status', response_model=ToggleStatusResponse)
def toggle_reader_status(current_user: User = Depends(require_reader), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        current_user.is_active = not current_user.is_active
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return ToggleStatusResponse(is_active=bool(current_user.is_active))
