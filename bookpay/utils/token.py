import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlmodel import Session

from bookpay.config import settings
from bookpay.database import get_session
from bookpay.models.user import User

logger = logging.getLogger(__name__)

# tokens are issued by the auth service; this service only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as e:
        logger.debug(f"Rejected access token: {e}")
        return None


def token_user_id(payload: dict) -> Optional[int]:
    """Auth service tokens carry ``user_id``; plain OAuth tokens carry ``sub``."""

    raw = payload.get("user_id") or payload.get("sub")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def get_current_user(
    token: str = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> User:
    payload = decode_access_token(token)
    if payload is None:
        raise _unauthorized("Could not validate credentials")

    user_id = token_user_id(payload)
    if user_id is None:
        raise _unauthorized("Invalid token payload")

    user = session.get(User, user_id)
    if user is None:
        raise _unauthorized("User not found")

    # disabled accounts keep their orders but cannot pay or cancel
    if not user.can_login:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is disabled")

    return user
