from datetime import datetime, timedelta, timezone

import jwt

from backend.core import config

OAUTH_STATE_MINUTES = 15


def create_access_token(user_id: int, role: str, expires_minutes: int | None = None) -> str:
    expire_minutes = expires_minutes or config.JWT_EXPIRES_MINUTES
    issued = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "type": "access",
        "exp": issued + timedelta(minutes=expire_minutes),
        "iat": issued,
    }
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    payload = jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError("Not an access token")
    return payload


def create_oauth_state(user_id: int, provider: str, return_to: str) -> str:
    """Signed state carried through a calendar OAuth redirect."""
    issued = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "provider": provider,
        "return_to": return_to,
        "type": "oauth_state",
        "exp": issued + timedelta(minutes=OAUTH_STATE_MINUTES),
        "iat": issued,
    }
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def decode_oauth_state(state: str) -> dict:
    payload = jwt.decode(state, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    if payload.get("type") != "oauth_state":
        raise jwt.InvalidTokenError("Not an OAuth state token")
    return payload
