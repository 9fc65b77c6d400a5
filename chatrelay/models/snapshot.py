"""
Chat, contact and group snapshots.

Each is keyed by (session_id, jid) and upserted from protocol events.
"""
from sqlalchemy import JSON, Boolean, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from chatrelay.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Chat(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "chats"
    __table_args__ = (UniqueConstraint("session_id", "jid", name="uq_chats_session_jid"),)

    session_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    jid: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_group: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_muted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_message: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    extra: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "jid": self.jid,
            "name": self.name,
            "isGroup": self.is_group,
            "isArchived": self.is_archived,
            "isPinned": self.is_pinned,
            "isMuted": self.is_muted,
            "unreadCount": self.unread_count,
            "lastMessage": self.last_message,
            "metadata": self.extra,
        }


class Contact(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("session_id", "jid", name="uq_contacts_session_jid"),)

    session_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    jid: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    push_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    profile_pic_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    extra: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "jid": self.jid,
            "name": self.name,
            "pushName": self.push_name,
            "profilePicUrl": self.profile_pic_url,
            "isBlocked": self.is_blocked,
            "metadata": self.extra,
        }


class Group(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "groups"
    __table_args__ = (UniqueConstraint("session_id", "jid", name="uq_groups_session_jid"),)

    session_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    jid: Mapped[str] = mapped_column(String(128), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner: Mapped[str | None] = mapped_column(String(128), nullable=True)
    participants: Mapped[list | None] = mapped_column(JSON, nullable=True)
    settings: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    extra: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "jid": self.jid,
            "subject": self.subject,
            "description": self.description,
            "owner": self.owner,
            "participants": self.participants or [],
            "settings": self.settings,
            "metadata": self.extra,
        }
