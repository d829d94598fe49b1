"""
Security utilities for authentication and authorization

Token issuance lives in the external identity service; this module only
verifies bearer tokens and resolves them to users.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from uuid import UUID
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
import logging

from tourpay.config import settings
from tourpay.core.database import async_session
from tourpay.core.exceptions import RateLimitError
from tourpay.core.redis import redis_manager
from tourpay.models.user import User, UserRole

logger = logging.getLogger(__name__)

# OAuth2 scheme
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_PREFIX}/auth/login")

_credentials_exception = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Could not validate credentials",
    headers={"WWW-Authenticate": "Bearer"},
)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=30))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and verify a JWT access token
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError as e:
        logger.warning(f"JWT decode error: {e}")
        raise _credentials_exception

    if payload.get("type") != "access":
        raise _credentials_exception
    return payload


async def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    """
    Get current user from JWT token
    """
    payload = decode_token(token)
    user_id = payload.get("sub")
    if user_id is None:
        raise _credentials_exception

    # Own short-lived session so the request session stays free for explicit transactions
    async with async_session() as session:
        result = await session.execute(select(User).where(User.id == _as_uuid(user_id)))
        user = result.scalar_one_or_none()

    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """
    Require admin role for endpoint
    """
    if current_user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user


class RateLimiter:
    """
    Per-user rate limiter backed by the shared Redis store
    """

    def __init__(self, scope: str, max_requests: int, window: int = 60):
        self.scope = scope
        self.max_requests = max_requests
        self.window = window

    async def __call__(self, current_user: User = Depends(get_current_user)) -> User:
        if not settings.RATE_LIMIT_ENABLED:
            return current_user

        is_limited, count = await redis_manager.is_rate_limited(
            f"user:{current_user.id}:{self.scope}", self.max_requests, self.window
        )

        if is_limited:
            logger.warning(
                "Rate limit hit",
                extra={"user_id": str(current_user.id), "scope": self.scope, "count": count}
            )
            raise RateLimitError(self.max_requests, self.window)
        return current_user


def _as_uuid(value: str) -> UUID:
    try:
        return UUID(str(value))
    except ValueError:
        raise _credentials_exception
