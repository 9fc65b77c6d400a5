"""
Authentication dependencies for FastAPI.

A request authenticates with `Authorization: Bearer <jwt>` or with the
account's API key (`X-API-Key` header or `apiKey` query parameter).
"""
from fastapi import Depends, Header, Query, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.database import get_db
from chatrelay.errors import AuthenticationError
from chatrelay.models.user import User, UserRole
from chatrelay.services.jwt_service import JWTService
from chatrelay.services.user_service import UserService


# Security scheme
security = HTTPBearer(auto_error=False)


async def resolve_user(db: AsyncSession, token: str | None = None, api_key: str | None = None) -> User | None:
    """Look up the active user for a JWT or an API key."""
    user_service = UserService(db)
    if token:
        payload = JWTService().verify_token(token)
        if payload and payload.get("sub"):
            user = await user_service.get_by_id(payload["sub"])
            if user is not None:
                return user
        # a bearer value may also be an API key
        return await user_service.get_by_api_key(token)
    if api_key:
        return await user_service.get_by_api_key(api_key)
    return None


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    api_key: str | None = Query(default=None, alias="apiKey"),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Dependency that requires a valid JWT or API key.

    Returns the active user, raises 401 otherwise.

    Usage:
        @app.get("/protected")
        async def protected_route(user: User = Depends(get_current_user)):
            ...
    """
    token = credentials.credentials if credentials else None
    if not token and not (x_api_key or api_key):
        raise AuthenticationError("Access token or API key required")

    user = await resolve_user(db, token=token, api_key=x_api_key or api_key)
    if user is None:
        raise AuthenticationError("Invalid or expired credentials")

    request.state.user_id = user.id
    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """
    Dependency that requires admin role.

    Usage:
        @app.get("/admin")
        async def admin_route(user: User = Depends(require_admin)):
            ...
    """
    if current_user.role != UserRole.ADMIN:
        raise AuthenticationError("Admin access required")

    return current_user
