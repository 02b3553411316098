import logging
from datetime import datetime
from urllib.parse import urlencode

import jwt
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth import jwt_handler
from backend.auth.dependencies import get_current_user
from backend.core import config
from backend.database import get_db
from backend.models.booking import Booking
from backend.models.calendar import PROVIDER_GOOGLE, PROVIDER_MICROSOFT, CalendarConnection
from backend.models.user import User
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.services import calendar_sync
from backend.services.ical import FEED_LIMIT, build_reader_feed

router = APIRouter(tags=['calendar'])

logger = logging.getLogger(__name__)

RETURN_PATHS = {
    'onboarding': '/onboarding/schedule',
    'dashboard': '/reader/dashboard',
}


class AuthorizationUrlResponse(BaseModel):
    auth_url: str


class ConnectICalRequest(BaseModel):
    url: str


class CalendarConnectionResponse(BaseModel):
    connected: bool
    provider: str | None = None
    ical_url: str | None = None
    connected_at: datetime | None = None


class DisconnectResponse(BaseModel):
    disconnected: bool


def _return_url(return_to: str | None, **params: str) -> str:
    path = RETURN_PATHS.get(return_to or '', RETURN_PATHS['dashboard'])
    return f'{config.PUBLIC_URL}{path}?{urlencode(params)}'


def _start_oauth(provider: str, return_to: str, user: User) -> AuthorizationUrlResponse:
    state = jwt_handler.create_oauth_state(user.id, provider, return_to)
    try:
        if provider == PROVIDER_GOOGLE:
            url = calendar_sync.google_authorization_url(state)
        else:
            url = calendar_sync.microsoft_authorization_url(state)
    except calendar_sync.CalendarError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return AuthorizationUrlResponse(auth_url=url)


def _finish_oauth(provider: str, code: str | None, state: str | None, error: str | None, db: Session):
    if not state:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Missing OAuth state.')
    try:
        payload = jwt_handler.decode_oauth_state(state)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid OAuth state.') from exc
    if payload.get('provider') != provider:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid OAuth state.')

    return_to = payload.get('return_to')
    if error:
        return RedirectResponse(_return_url(return_to, error=error), status_code=status.HTTP_302_FOUND)
    if not code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Missing authorization code.')

    ensure_database_ready()

    try:
        user = db.get(User, int(payload['sub']))
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='User not found.')

        try:
            tokens = calendar_sync.exchange_code(provider, code)
        except calendar_sync.CalendarError as exc:
            logger.warning('%s OAuth exchange failed for user %s: %s', provider, user.id, exc)
            return RedirectResponse(
                _return_url(return_to, error='token_exchange_failed'),
                status_code=status.HTTP_302_FOUND,
            )

        calendar_sync.save_oauth_connection(db, user, provider, tokens)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('%s calendar connected for user %s', provider, user.id)
    return RedirectResponse(_return_url(return_to, calendar=provider.lower()), status_code=status.HTTP_302_FOUND)


@router.get('/google/start', response_model=AuthorizationUrlResponse)
def start_google_oauth(return_to: str = Query(default='dashboard'), current_user: User = Depends(get_current_user)):
    return _start_oauth(PROVIDER_GOOGLE, return_to, current_user)


@router.get('/google/callback')
def google_oauth_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    return _finish_oauth(PROVIDER_GOOGLE, code, state, error, db)


@router.get('/microsoft/start', response_model=AuthorizationUrlResponse)
def start_microsoft_oauth(
    return_to: str = Query(default='dashboard'),
    current_user: User = Depends(get_current_user),
):
    return _start_oauth(PROVIDER_MICROSOFT, return_to, current_user)


@router.get('/microsoft/callback')
def microsoft_oauth_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    return _finish_oauth(PROVIDER_MICROSOFT, code, state, error, db)


@router.post('/ical/connect', response_model=CalendarConnectionResponse)
def connect_ical_feed(
    data: ConnectICalRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        try:
            connection = calendar_sync.connect_ical(db, current_user, data.url)
        except calendar_sync.CalendarError as exc:
            db.rollback()
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        db.commit()
        db.refresh(connection)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return CalendarConnectionResponse(
        connected=True,
        provider=connection.provider,
        ical_url=connection.ical_url,
        connected_at=connection.updated_at,
    )


@router.get('/connection', response_model=CalendarConnectionResponse)
def get_calendar_connection(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        connection = db.query(CalendarConnection).filter(CalendarConnection.user_id == current_user.id).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if connection is None:
        return CalendarConnectionResponse(connected=False)
    return CalendarConnectionResponse(
        connected=True,
        provider=connection.provider,
        ical_url=connection.ical_url,
        connected_at=connection.updated_at,
    )


@router.post('/disconnect', response_model=DisconnectResponse)
def disconnect_calendar(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        removed = calendar_sync.disconnect(db, current_user)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return DisconnectResponse(disconnected=removed)


@router.get('/ical/{reader_id}')
def reader_ical_feed(reader_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        reader = db.get(User, reader_id)
        if reader is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='User not found.')
        bookings = db.query(Booking).filter(
            Booking.reader_id == reader.id,
        ).order_by(Booking.start_time.asc()).limit(FEED_LIMIT).all()
        body = build_reader_feed(reader, bookings)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return Response(
        content=body,
        media_type='text/calendar; charset=utf-8',
        headers={
            'Content-Disposition': f'inline; filename="reader-{reader.id}.ics"',
            'Cache-Control': 'no-store',
        },
    )
