"""
User model.

Represents an account that owns chat sessions and webhooks.
"""
import enum
import secrets
from sqlalchemy import Boolean, String, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from chatrelay.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


def generate_api_key() -> str:
    return f"cr_{secrets.token_hex(24)}"


class UserRole(str, enum.Enum):
    """User role enum for role-based access control."""
    ADMIN = "admin"
    USER = "user"


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """
    Account that owns sessions and webhooks.

    Authenticates with either a JWT (issued at login) or its API key.
    """
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    api_key: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
        default=generate_api_key
    )
    role: Mapped[UserRole] = mapped_column(
        SQLEnum(UserRole, native_enum=False, length=32),
        nullable=False,
        default=UserRole.USER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "apiKey": self.api_key,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"
