from datetime import date, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import require_reader
from backend.core import config
from backend.database import get_db, utcnow
from backend.models.availability import AvailabilitySlot
from backend.models.user import User
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.services import availability as availability_service
from backend.services import calendar_sync

router = APIRouter(tags=['availability'])
schedule_router = APIRouter(tags=['schedule'])

MAX_TEMPLATES = 50


class TemplateRequest(BaseModel):
    day_of_week: int
    start_time: str
    end_time: str

    @field_validator('start_time', 'end_time')
    @classmethod
    def normalize_time(cls, value: str) -> str:
        return availability_service.format_hhmm(availability_service.parse_hhmm(value))


class ReplaceTemplatesRequest(BaseModel):
    templates: list[TemplateRequest]

    @field_validator('templates')
    @classmethod
    def validate_count(cls, value: list[TemplateRequest]) -> list[TemplateRequest]:
        if len(value) > MAX_TEMPLATES:
            raise ValueError(f'At most {MAX_TEMPLATES} availability windows are allowed.')
        return value


class TemplateResponse(BaseModel):
    day_of_week: int
    start_time: str
    end_time: str
    is_active: bool = True


class TemplatesResponse(BaseModel):
    templates: list[TemplateResponse]
    is_default: bool
    timezone: str


class SlotResponse(BaseModel):
    id: int
    start_time: datetime
    end_time: datetime
    is_booked: bool
    booking_id: int | None = None

    class Config:
        from_attributes = True


class RegenerateResponse(BaseModel):
    slots_created: int


class AvailableDaysResponse(BaseModel):
    reader_id: int
    duration: int
    timezone: str
    days: list[date]


class BookableSlotResponse(BaseModel):
    start_time: datetime
    end_time: datetime
    local_date: date
    start_minute: int
    end_minute: int


class AvailableSlotsResponse(BaseModel):
    reader_id: int
    date: date
    duration: int
    timezone: str
    slots: list[BookableSlotResponse]


def validate_duration(duration: int) -> int:
    if duration not in availability_service.BOOKING_DURATIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Duration must be 15, 30 or 60 minutes.',
        )
    return duration


def get_public_reader(reader_id: int, db: Session) -> User:
    reader = db.get(User, reader_id)
    if reader is None or not reader.is_reader:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Reader not found.')
    return reader


@router.get('/templates', response_model=TemplatesResponse)
def get_templates(current_user: User = Depends(require_reader), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        templates = availability_service.list_templates(db, current_user.id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    tz_name = current_user.timezone or config.DEFAULT_TIMEZONE
    if not templates:
        return TemplatesResponse(
            templates=[
                TemplateResponse(
                    day_of_week=window.day_of_week,
                    start_time=window.start_hhmm,
                    end_time=window.end_hhmm,
                )
                for window in availability_service.default_templates()
            ],
            is_default=True,
            timezone=tz_name,
        )

    return TemplatesResponse(
        templates=[
            TemplateResponse(
                day_of_week=template.day_of_week,
                start_time=template.start_time,
                end_time=template.end_time,
                is_active=bool(template.is_active),
            )
            for template in templates
        ],
        is_default=False,
        timezone=tz_name,
    )


@router.put('/templates', response_model=RegenerateResponse)
def replace_templates(
    data: ReplaceTemplatesRequest,
    current_user: User = Depends(require_reader),
    db: Session = Depends(get_db),
):
    try:
        windows = [
            availability_service.validate_template(item.day_of_week, item.start_time, item.end_time)
            for item in data.templates
        ]
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    ensure_database_ready()

    try:
        created = availability_service.replace_templates(db, current_user, windows)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return RegenerateResponse(slots_created=created)


@router.get('/slots', response_model=list[SlotResponse])
def list_my_slots(current_user: User = Depends(require_reader), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return db.query(AvailabilitySlot).filter(
            AvailabilitySlot.reader_id == current_user.id,
            AvailabilitySlot.start_time >= utcnow(),
        ).order_by(AvailabilitySlot.start_time.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/sync', response_model=RegenerateResponse)
def sync_my_slots(current_user: User = Depends(require_reader), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        created = availability_service.regenerate_reader_slots(db, current_user)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return RegenerateResponse(slots_created=created)


@schedule_router.get('/available-days', response_model=AvailableDaysResponse)
def get_available_days(
    reader_id: int = Query(...),
    duration: int = Query(default=30),
    db: Session = Depends(get_db),
):
    validate_duration(duration)
    ensure_database_ready()

    try:
        reader = get_public_reader(reader_id, db)
        now = utcnow()
        days = availability_service.available_days(db, reader, duration, now) if reader.is_bookable(now) else []
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return AvailableDaysResponse(
        reader_id=reader.id,
        duration=duration,
        timezone=reader.timezone or config.DEFAULT_TIMEZONE,
        days=days,
    )


@schedule_router.get('/available-slots', response_model=AvailableSlotsResponse)
def get_available_slots(
    reader_id: int = Query(...),
    date: date = Query(...),
    duration: int = Query(default=30),
    timezone: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    validate_duration(duration)
    actor_tz_name = (timezone or config.DEFAULT_TIMEZONE).strip()
    if not availability_service.is_valid_timezone(actor_tz_name):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid timezone.')
    actor_tz = availability_service.get_zone(actor_tz_name)

    ensure_database_ready()

    try:
        reader = get_public_reader(reader_id, db)
        now = utcnow()
        starts = []
        if reader.is_bookable(now):
            starts = availability_service.compute_day_starts(
                db,
                reader,
                date,
                duration,
                now,
                busy_lookup=calendar_sync.busy_lookup_for(db),
            )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    slots = []
    for start, end in starts:
        local_start = availability_service.utc_to_local(start, actor_tz)
        start_minute = local_start.hour * 60 + local_start.minute
        slots.append(BookableSlotResponse(
            start_time=start,
            end_time=end,
            local_date=local_start.date(),
            start_minute=start_minute,
            end_minute=start_minute + int((end - start) / timedelta(minutes=1)),
        ))

    return AvailableSlotsResponse(
        reader_id=reader.id,
        date=date,
        duration=duration,
        timezone=actor_tz_name,
        slots=slots,
    )
