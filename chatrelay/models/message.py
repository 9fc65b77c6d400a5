"""
Message model.

One row per (session, protocol message id).
"""
import enum
from datetime import datetime
from sqlalchemy import JSON, Boolean, DateTime, String, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from chatrelay.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class MessageType(str, enum.Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    DOCUMENT = "DOCUMENT"
    STICKER = "STICKER"
    LOCATION = "LOCATION"
    CONTACT = "CONTACT"
    POLL = "POLL"
    REACTION = "REACTION"


class Message(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("session_id", "message_id", name="uq_messages_session_message"),
    )

    message_id: Mapped[str] = mapped_column(String(128), nullable=False)
    session_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    chat_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    from_me: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    from_jid: Mapped[str | None] = mapped_column(String(128), nullable=True)
    to_jid: Mapped[str | None] = mapped_column(String(128), nullable=True)
    message_type: Mapped[MessageType] = mapped_column(
        SQLEnum(MessageType, native_enum=False, length=32),
        nullable=False,
        default=MessageType.TEXT
    )
    content: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    quoted_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # "metadata" is reserved on declarative classes
    extra: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "messageId": self.message_id,
            "sessionId": self.session_id,
            "chatId": self.chat_id,
            "fromMe": self.from_me,
            "from": self.from_jid,
            "to": self.to_jid,
            "messageType": self.message_type.value,
            "content": self.content,
            "status": self.status,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "quotedMessageId": self.quoted_message_id,
            "metadata": self.extra,
        }
