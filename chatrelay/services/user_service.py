"""
Account management.

Users own sessions and webhooks and authenticate with a password (login
returns a JWT) or with their API key.
"""
import bcrypt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from chatrelay.models.user import User, UserRole, generate_api_key


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for a password."""
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a bcrypt hash."""
    return bcrypt.checkpw(
        plain_password.encode("utf-8"),
        hashed_password.encode("utf-8"),
    )


class UserService:
    """Service for managing user accounts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, user_id: str) -> User | None:
        stmt = select(User).where(User.id == user_id, User.is_active.is_(True))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == email.lower())
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_api_key(self, api_key: str) -> User | None:
        stmt = select(User).where(User.api_key == api_key, User.is_active.is_(True))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        email: str,
        password: str,
        name: str | None = None,
        role: UserRole = UserRole.USER
    ) -> User:
        """
        Create a new account with a fresh API key.

        Args:
            email: Login email, stored lower-cased
            password: Plain password, stored as a bcrypt hash
            name: Display name (optional)
            role: User role (default: USER)

        Returns:
            Newly created User
        """
        user = User(
            email=email.lower(),
            name=name,
            password_hash=hash_password(password),
            api_key=generate_api_key(),
            role=role,
            is_active=True
        )
        self.db.add(user)
        await self.db.commit()
        await self.db.refresh(user)
        return user

    async def authenticate(self, email: str, password: str) -> User | None:
        """Return the active user for these credentials, or None."""
        user = await self.get_by_email(email)
        if user is None or not user.is_active:
            return None
        if not verify_password(password, user.password_hash):
            return None
        return user

    async def refresh_api_key(self, user: User) -> User:
        user.api_key = generate_api_key()
        await self.db.commit()
        await self.db.refresh(user)
        return user
