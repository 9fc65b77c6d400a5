"""
Rate limit dependency for FastAPI routes.
"""
from fastapi import Depends

from chatrelay.config import settings
from chatrelay.dependencies.auth import get_current_user
from chatrelay.errors import RateLimitExceeded
from chatrelay.models.user import User
from chatrelay.routes.metrics import track_rate_limit_exceeded
from chatrelay.services.rate_limiter import rate_limiter


async def check_rate_limit(user: User = Depends(get_current_user)) -> User:
    """
    Check rate limit for the authenticated owner.

    Raises 429 if limit exceeded.
    """
    if not settings.RATE_LIMIT_ENABLED:
        return user

    allowed, retry_after = await rate_limiter.is_allowed(user.id)

    if not allowed:
        track_rate_limit_exceeded(user.id)
        raise RateLimitExceeded(retry_after)

    return user
