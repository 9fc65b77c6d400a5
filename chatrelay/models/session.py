"""
Session record model.

Durable shadow of a live chat session. The in-memory registry is
authoritative while the session is live.
"""
import enum
from datetime import datetime
from sqlalchemy import Boolean, DateTime, String, Text, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from chatrelay.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class SessionStatus(str, enum.Enum):
    """Session lifecycle states."""
    CONNECTING = "CONNECTING"
    QR_REQUIRED = "QR_REQUIRED"
    PAIRING_REQUIRED = "PAIRING_REQUIRED"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"


class SessionRecord(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "sessions"

    session_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[SessionStatus] = mapped_column(
        SQLEnum(SessionStatus, native_enum=False, length=32),
        nullable=False,
        default=SessionStatus.CONNECTING
    )
    qr_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    pairing_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "ownerId": self.owner_id,
            "status": self.status.value,
            "qrCode": self.qr_code,
            "pairingCode": self.pairing_code,
            "phoneNumber": self.phone_number,
            "displayName": self.display_name,
            "lastSeen": self.last_seen.isoformat() if self.last_seen else None,
            "isActive": self.is_active,
        }

    def __repr__(self):
        return f"<SessionRecord(session_id={self.session_id}, status={self.status})>"
