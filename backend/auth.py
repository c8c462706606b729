from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import ExpiredSignatureError, InvalidTokenError

from app.settings import get_settings

logger = logging.getLogger(__name__)
_bearer_scheme = HTTPBearer(auto_error=False)


class TokenError(ValueError):
    pass


def create_access_token(user_id: int, username: str, expires_in: timedelta = timedelta(days=1)) -> str:
    settings = get_settings()
    payload = {
        "sub": str(user_id),
        "username": username,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_user_token(token: Optional[str]) -> Tuple[int, str]:
    """Return ``(user_id, username)`` from a signed token."""
    if not token:
        raise TokenError("credentials_not_provided")
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except ExpiredSignatureError:
        logger.warning("Token decode failed: expired signature")
        raise TokenError("token_expired")
    except InvalidTokenError:
        logger.warning("Token decode failed: invalid token")
        raise TokenError("invalid_token")

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        logger.warning("Token decode failed: missing subject")
        raise TokenError("invalid_subject")
    return user_id, payload.get("username") or f"player-{user_id}"


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Tuple[int, str]:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="credentials_not_provided")
    try:
        return decode_user_token(credentials.credentials)
    except TokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
