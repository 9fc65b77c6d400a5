"""
Account routes.

Register and login hand back a JWT; every account also carries an API key
usable in place of the token.
"""
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.database import get_db
from chatrelay.dependencies.auth import get_current_user
from chatrelay.errors import AlreadyExists, AuthenticationError
from chatrelay.logging_config import get_logger
from chatrelay.models.user import User
from chatrelay.responses import api_response
from chatrelay.services.jwt_service import JWTService
from chatrelay.services.user_service import UserService, hash_password, verify_password

router = APIRouter(prefix="/auth", tags=["Authentication"])
logger = get_logger(component="auth")


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str | None = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ChangePasswordRequest(BaseModel):
    currentPassword: str
    newPassword: str = Field(..., min_length=6)


def _issue_token(user: User) -> str:
    return JWTService().create_token(
        user_id=user.id,
        role=user.role.value,
        email=user.email,
    )


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(request: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """Create an account and return it with a JWT."""
    user_service = UserService(db)
    if await user_service.get_by_email(request.email) is not None:
        raise AlreadyExists("User already exists")

    user = await user_service.create(
        email=request.email,
        password=request.password,
        name=request.name,
    )
    logger.info("user_registered", user_id=user.id)

    return api_response(
        {"user": user.to_dict(), "token": _issue_token(user)},
        message="User registered successfully",
    )


@router.post("/login")
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    user = await UserService(db).authenticate(request.email, request.password)
    if user is None:
        raise AuthenticationError("Invalid credentials")

    logger.info("user_logged_in", user_id=user.id)
    return api_response({"user": user.to_dict(), "token": _issue_token(user)})


@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    return api_response(user.to_dict())


@router.post("/refresh-api-key")
async def refresh_api_key(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Replace the caller's API key. The old key stops working immediately."""
    user = await UserService(db).refresh_api_key(user)
    logger.info("api_key_refreshed", user_id=user.id)
    return api_response({"apiKey": user.api_key}, message="API key refreshed")


@router.post("/change-password")
async def change_password(
    request: ChangePasswordRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not verify_password(request.currentPassword, user.password_hash):
        raise AuthenticationError("Current password is incorrect")

    user.password_hash = hash_password(request.newPassword)
    await db.commit()
    logger.info("password_changed", user_id=user.id)
    return api_response(message="Password changed successfully")
