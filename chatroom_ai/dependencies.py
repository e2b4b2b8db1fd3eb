"""
dependencies.py
---------------
FastAPI dependency injection functions for the application context,
authentication and request rate limiting.

Flow:
  1. get_context returns the AppContext the lifespan stored on app.state.
  2. HTTPBearer extracts the token from the Authorization header; tokens are
     issued by the external identity service.
  3. get_current_user decodes the JWT and loads the User row, which carries
     the subscription tier the quota gate needs.
  4. rate_limit counts requests per client in a fixed Redis window.
"""

import time
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatroom_ai.core.context import AppContext
from chatroom_ai.core.logging import get_logger
from chatroom_ai.core.security import decode_access_token
from chatroom_ai.db.session import get_db
from chatroom_ai.models.user import User

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

_CREDENTIALS_EXCEPTION = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Could not validate credentials",
    headers={"WWW-Authenticate": "Bearer"},
)


def get_context(request: Request) -> AppContext:
    return request.app.state.context


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """
    Decode the JWT, then load and return the full User from the database.
    Raises 401 if the token is missing, invalid, or the user no longer exists.
    """
    if credentials is None:
        raise _CREDENTIALS_EXCEPTION
    try:
        payload = decode_access_token(credentials.credentials)
        user_id = int(payload.get("sub") or 0)
    except (JWTError, ValueError) as exc:
        logger.warning("JWT decode failed", error=str(exc))
        raise _CREDENTIALS_EXCEPTION

    if not user_id:
        raise _CREDENTIALS_EXCEPTION

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None:
        logger.warning("User from valid JWT not found in DB", user_id=user_id)
        raise _CREDENTIALS_EXCEPTION

    return user


async def rate_limit(
    request: Request,
    response: Response,
    context: Annotated[AppContext, Depends(get_context)],
) -> None:
    """
    Fixed-window request limiter keyed by client address.
    Fails open: if Redis is down the request is let through.
    """
    settings = context.settings
    window = settings.RATE_LIMIT_WINDOW_SECONDS
    limit = settings.RATE_LIMIT_MAX_REQUESTS
    client_ip = request.client.host if request.client else "unknown"
    key = f"rate_limit:{client_ip}"

    try:
        # EXPIRE NX rides in the same transaction as INCR, so every counter
        # carries a TTL even when an earlier request failed half-way
        async with context.redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window, nx=True)
            pipe.ttl(key)
            current, _, ttl = await pipe.execute()
    except RedisError as exc:
        logger.warning("Rate limiting skipped", error=str(exc))
        return

    retry_after = ttl if ttl > 0 else window
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, limit - current))
    response.headers["X-RateLimit-Reset"] = str(int(time.time()) + retry_after)

    if current > limit:
        logger.warning("Rate limit exceeded", client=client_ip, path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests, please try again later",
            headers={"Retry-After": str(retry_after)},
        )
