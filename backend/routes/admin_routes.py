import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import require_admin
from backend.database import get_db, utcnow
from backend.models.user import User
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.services import jobs
from backend.services.availability import regenerate_reader_slots

router = APIRouter(tags=['admin'], dependencies=[Depends(require_admin)])

logger = logging.getLogger(__name__)


class SyncAvailabilityRequest(BaseModel):
    reader_id: int


class SyncAvailabilityResponse(BaseModel):
    reader_id: int
    slots_created: int
    message: str


class ExpirePendingResponse(BaseModel):
    count: int


@router.post('/tools/sync-availability', response_model=SyncAvailabilityResponse)
def sync_reader_availability(data: SyncAvailabilityRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        reader = db.get(User, data.reader_id)
        if reader is None or not reader.is_reader:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Reader not found.')

        created = regenerate_reader_slots(db, reader)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Admin regenerated availability for reader %s', reader.id)
    return SyncAvailabilityResponse(
        reader_id=reader.id,
        slots_created=created,
        message=f'Created {created} slots for the next 30 days',
    )


@router.get('/tools/expire-pending', response_model=ExpirePendingResponse)
def count_stale_pending(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return ExpirePendingResponse(count=jobs.stale_pending_query(db, utcnow()).count())
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/tools/expire-pending', response_model=ExpirePendingResponse)
def expire_stale_pending(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return ExpirePendingResponse(count=jobs.expire_pending(db))
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
