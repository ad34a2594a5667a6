"""Identity verification for REST requests and socket handshakes.

Tokens are issued by the external identity service; this module only checks
the signature and that the user still exists and is active.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import logging
import time

from utils.jwt_utils import decode_access_token
from database.client import get_supabase
from database.repositories.user_repo import UserRepository

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Simple TTL cache so a burst of requests does not hit the users table each time.
_USER_CACHE: dict[str, tuple[dict, float]] = {}
_USER_CACHE_TTL_S = 60  # seconds
_USER_CACHE_MAX = 5_000


def _get_cached_user(user_id: str) -> Optional[dict]:
    entry = _USER_CACHE.get(user_id)
    if entry is None:
        return None
    user, ts = entry
    if time.time() - ts > _USER_CACHE_TTL_S:
        del _USER_CACHE[user_id]
        return None
    return user


def _set_cached_user(user_id: str, user: dict) -> None:
    if len(_USER_CACHE) >= _USER_CACHE_MAX:
        oldest_key = min(_USER_CACHE, key=lambda k: _USER_CACHE[k][1])
        del _USER_CACHE[oldest_key]
    _USER_CACHE[user_id] = (user, time.time())


def identity_from_token(token: Optional[str]) -> Optional[str]:
    """User id carried by a valid access token, else None.

    Used for the socket handshake, where the identity is trusted as-is.
    """
    if not token:
        return None
    payload = decode_access_token(token)
    if not payload:
        return None
    user_id = payload.get("user_id")
    return str(user_id) if user_id else None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """
    Validate JWT and return current user.

    Raises HTTPException if token is invalid or expired.
    """
    user_id = identity_from_token(credentials.credentials)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = _get_cached_user(user_id)
    if user is None:
        user_repo = UserRepository(get_supabase())
        user = await user_repo.get_by_id(user_id)

        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="User not found"
            )

        _set_cached_user(user_id, user)

    if not user.get('is_active', True):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled"
        )

    return user
