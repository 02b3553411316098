import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth import jwt_handler
from backend.auth.dependencies import get_current_user
from backend.auth.passwords import generate_token, hash_password, validate_password, verify_password
from backend.core import config
from backend.database import get_db, utcnow
from backend.models.content import EmailChangeRequest, EmailVerification
from backend.models.user import ROLE_ACTOR, ROLE_READER, User
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.services import email
from backend.services.availability import is_valid_timezone

router = APIRouter(tags=['auth'])

logger = logging.getLogger(__name__)

VERIFICATION_TTL = timedelta(hours=24)
PASSWORD_RESET_TTL = timedelta(hours=1)
EMAIL_CHANGE_TTL = timedelta(hours=24)
SIGNUP_ROLES = (ROLE_ACTOR, ROLE_READER)


def _normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    local, _, domain = normalized.partition('@')
    if not local or '.' not in domain or ' ' in normalized:
        raise ValueError('Invalid email address.')
    return normalized


class SignupRequest(BaseModel):
    email: str
    password: str
    name: str | None = None
    role: str = ROLE_ACTOR
    timezone: str | None = None

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator('password')
    @classmethod
    def validate_password_length(cls, value: str) -> str:
        return validate_password(value)

    @field_validator('role')
    @classmethod
    def validate_role(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in SIGNUP_ROLES:
            raise ValueError('Role must be ACTOR or READER.')
        return normalized

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not is_valid_timezone(value.strip()):
            raise ValueError('Invalid timezone.')
        return value.strip()


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return value.strip().lower()


class TokenRequest(BaseModel):
    token: str


class EmailRequest(BaseModel):
    email: str

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _normalize_email(value)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str

    @field_validator('new_password')
    @classmethod
    def validate_new_password(cls, value: str) -> str:
        return validate_password(value)


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str

    @field_validator('new_password')
    @classmethod
    def validate_new_password(cls, value: str) -> str:
        return validate_password(value)


class ChangeEmailRequest(BaseModel):
    new_email: str
    password: str

    @field_validator('new_email')
    @classmethod
    def validate_new_email(cls, value: str) -> str:
        return _normalize_email(value)


class UserResponse(BaseModel):
    id: int
    email: str
    name: str | None = None
    display_name: str | None = None
    role: str
    timezone: str | None = None
    email_verified: bool = False
    is_active: bool = True
    subscription_status: str | None = None

    class Config:
        from_attributes = True


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = 'bearer'
    user: UserResponse


class MessageResponse(BaseModel):
    message: str


def _auth_response(user: User) -> AuthResponse:
    return AuthResponse(
        access_token=jwt_handler.create_access_token(user.id, user.role),
        user=UserResponse.model_validate(user),
    )


def _issue_verification(db: Session, user: User) -> str:
    db.query(EmailVerification).filter(EmailVerification.user_id == user.id).delete()
    token = generate_token()
    db.add(EmailVerification(user_id=user.id, token=token, expires_at=utcnow() + VERIFICATION_TTL))
    return token


@router.post('/signup', response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def signup(data: SignupRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        if db.query(User).filter(User.email == data.email).first():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Email already registered.')

        user = User(
            email=data.email,
            hashed_password=hash_password(data.password),
            name=data.name.strip() if data.name else None,
            role=data.role,
            timezone=data.timezone or config.DEFAULT_TIMEZONE,
            email_verified=False,
        )
        db.add(user)
        db.flush()
        token = _issue_verification(db, user)
        db.commit()
        db.refresh(user)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    email.send_verification_email(user, token)
    logger.info('New %s account %s', user.role.lower(), user.id)
    return _auth_response(user)


@router.post('/login', response_model=AuthResponse)
def login(data: LoginRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        user = db.query(User).filter(User.email == data.email).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if user is None or not verify_password(data.password, user.hashed_password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid email or password.')
    return _auth_response(user)


@router.get('/me', response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)):
    return current_user


@router.post('/verify-email', response_model=MessageResponse)
def verify_email(data: TokenRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        verification = db.query(EmailVerification).filter(EmailVerification.token == data.token).first()
        if verification is None or verification.expires_at < utcnow():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid or expired token.')

        user = db.get(User, verification.user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='User not found.')
        user.email_verified = True
        db.delete(verification)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return MessageResponse(message='Email verified.')


@router.post('/resend-verification', response_model=MessageResponse)
def resend_verification(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if current_user.email_verified:
        return MessageResponse(message='Email already verified.')

    ensure_database_ready()
    try:
        token = _issue_verification(db, current_user)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    email.send_verification_email(current_user, token)
    return MessageResponse(message='Verification email sent.')


@router.post('/change-password', response_model=MessageResponse)
def change_password(
    data: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not verify_password(data.current_password, current_user.hashed_password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Current password is incorrect.')

    ensure_database_ready()
    try:
        current_user.hashed_password = hash_password(data.new_password)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return MessageResponse(message='Password updated.')


@router.post('/forgot-password', response_model=MessageResponse)
def forgot_password(data: EmailRequest, db: Session = Depends(get_db)):
    """Always answers the same way so account existence is not revealed."""
    ensure_database_ready()

    token = None
    try:
        user = db.query(User).filter(User.email == data.email).first()
        if user is not None:
            token = generate_token()
            user.reset_token = token
            user.reset_token_expires_at = utcnow() + PASSWORD_RESET_TTL
            db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    if token is not None:
        email.send_password_reset_email(user, token)
    return MessageResponse(message='If that account exists, a reset link has been sent.')


@router.post('/reset-password', response_model=MessageResponse)
def reset_password(data: ResetPasswordRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        user = db.query(User).filter(User.reset_token == data.token).first()
        if user is None or user.reset_token_expires_at is None or user.reset_token_expires_at < utcnow():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid or expired token.')

        user.hashed_password = hash_password(data.new_password)
        user.reset_token = None
        user.reset_token_expires_at = None
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return MessageResponse(message='Password has been reset.')


@router.post('/change-email', response_model=MessageResponse)
def change_email(
    data: ChangeEmailRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not verify_password(data.password, current_user.hashed_password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Password is incorrect.')
    if data.new_email == current_user.email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='That is already your email.')

    ensure_database_ready()
    try:
        if db.query(User).filter(User.email == data.new_email).first():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Email already registered.')

        db.query(EmailChangeRequest).filter(EmailChangeRequest.user_id == current_user.id).delete()
        token = generate_token()
        db.add(EmailChangeRequest(
            user_id=current_user.id,
            new_email=data.new_email,
            token=token,
            expires_at=utcnow() + EMAIL_CHANGE_TTL,
        ))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    email.send_email_change_email(data.new_email, token)
    return MessageResponse(message='Check your new inbox to confirm the change.')


@router.post('/verify-email-change', response_model=UserResponse)
def verify_email_change(data: TokenRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        change = db.query(EmailChangeRequest).filter(EmailChangeRequest.token == data.token).first()
        if change is None or change.expires_at < utcnow():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid or expired token.')

        # The address may have been claimed since the request was made.
        taken = db.query(User).filter(User.email == change.new_email, User.id != change.user_id).first()
        if taken is not None:
            db.delete(change)
            db.commit()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Email already registered.')

        user = db.get(User, change.user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='User not found.')
        user.email = change.new_email
        user.email_verified = True
        db.delete(change)
        db.commit()
        db.refresh(user)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return user
