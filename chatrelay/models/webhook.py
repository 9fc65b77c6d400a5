"""
Webhook models.

Owner-registered endpoints and the outbound delivery history.
"""
import enum
from datetime import datetime
from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from chatrelay.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


WILDCARD_EVENT = "*"

WEBHOOK_EVENTS = (
    "message.received",
    "message.updated",
    "chat.updated",
    "contact.updated",
    "group.updated",
    "connection.updated",
)


class DeliveryStatus(str, enum.Enum):
    PENDING = "PENDING"
    RETRYING = "RETRYING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.SUCCESS, DeliveryStatus.FAILED)


class Webhook(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Registered endpoint. Soft-deleted via is_active."""
    __tablename__ = "webhooks"

    owner_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    events: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def subscribes_to(self, event_type: str) -> bool:
        events = self.events or []
        return WILDCARD_EVENT in events or event_type in events

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "events": self.events,
            "hasSecret": bool(self.secret),
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "lastError": self.last_error,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class WebhookDelivery(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """One attempt chain for one event occurrence. Retries reuse the row."""
    __tablename__ = "webhook_deliveries"

    webhook_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, native_enum=False, length=32),
        nullable=False,
        default=DeliveryStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    response: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "webhookId": self.webhook_id,
            "event": self.event,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "nextRetryAt": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "response": self.response,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
