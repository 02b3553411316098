from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import verify_cron_secret
from backend.database import get_db
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.services import jobs

router = APIRouter(tags=['cron'], dependencies=[Depends(verify_cron_secret)])


@router.get('/send-reminders')
def send_reminders(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        results = jobs.send_reminders(db)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return {'success': True, 'results': results}


@router.get('/expire-pending')
def expire_pending(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        expired = jobs.expire_pending(db)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return {'success': True, 'expired': expired}


@router.get('/complete-sessions')
def complete_sessions(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        results = jobs.complete_sessions(db)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return {'success': True, 'results': results}
