"""
Event router.

Consumes one session's protocol event stream and drives persistence, live
notification and webhook fan-out. Each session has exactly one consumer, so
events of a session are handled in arrival order. A failing step is logged
and the stream moves on to the next event.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable

from chatrelay.logging_config import get_logger
from chatrelay.models.message import MessageType
from chatrelay.protocol.base import (
    ChatsUpsert,
    ConnectionUpdate,
    ContactsUpsert,
    GroupsUpsert,
    MessagesUpdate,
    MessagesUpsert,
    ProtocolEvent,
)
from chatrelay.routes.metrics import track_event_failed, track_message_received
from chatrelay.sentry_config import capture_exception
from chatrelay.services.notification_hub import NotificationHub
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.webhook_service import WebhookDispatcher

logger = get_logger(component="event_router")

ConnectionCallback = Callable[[ConnectionUpdate], Awaitable[None]]

# payload key -> type, checked in order after the text keys
_TYPED_CONTENT = [
    ("imageMessage", MessageType.IMAGE),
    ("videoMessage", MessageType.VIDEO),
    ("audioMessage", MessageType.AUDIO),
    ("documentMessage", MessageType.DOCUMENT),
    ("stickerMessage", MessageType.STICKER),
    ("locationMessage", MessageType.LOCATION),
    ("contactMessage", MessageType.CONTACT),
    ("pollCreationMessage", MessageType.POLL),
    ("reactionMessage", MessageType.REACTION),
]


def classify_message_type(content: dict[str, Any] | None) -> MessageType:
    if not content:
        return MessageType.TEXT
    if content.get("conversation") or content.get("extendedTextMessage"):
        return MessageType.TEXT
    for key, message_type in _TYPED_CONTENT:
        if content.get(key):
            return message_type
    return MessageType.TEXT


@dataclass(frozen=True)
class DecodedMessage:
    """Inbound message decoded once at ingestion."""
    message_id: str
    chat_id: str
    from_me: bool
    from_jid: str | None
    to_jid: str | None
    message_type: MessageType
    content: dict[str, Any] | None
    timestamp: datetime | None
    quoted_message_id: str | None = None
    push_name: str | None = None
    text: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def persistence_fields(self, upsert_type: str) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "from_me": self.from_me,
            "from_jid": self.from_jid,
            "to_jid": self.to_jid,
            "message_type": self.message_type,
            "content": self.content,
            "timestamp": self.timestamp,
            "quoted_message_id": self.quoted_message_id,
            "extra": {"type": upsert_type, "pushName": self.push_name},
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "messageId": self.message_id,
            "chatId": self.chat_id,
            "fromMe": self.from_me,
            "from": self.from_jid,
            "to": self.to_jid,
            "messageType": self.message_type.value,
            "text": self.text,
            "content": self.content,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "quotedMessageId": self.quoted_message_id,
            "pushName": self.push_name,
        }


def _extract_text(content: dict[str, Any] | None) -> str | None:
    if not content:
        return None
    if content.get("conversation"):
        return content["conversation"]
    extended = content.get("extendedTextMessage") or {}
    if extended.get("text"):
        return extended["text"]
    for key in ("imageMessage", "videoMessage", "documentMessage"):
        caption = (content.get(key) or {}).get("caption")
        if caption:
            return caption
    return None


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def decode_message(raw: dict[str, Any]) -> DecodedMessage:
    """
    Decode a raw protocol message.

    Raises:
        ValueError: the message has no key id or remote jid
    """
    key = raw.get("key") or {}
    message_id = key.get("id")
    chat_id = key.get("remoteJid")
    if not message_id or not chat_id:
        raise ValueError("Message without key id or remoteJid")

    content = raw.get("message")
    context = ((content or {}).get("extendedTextMessage") or {}).get("contextInfo") or {}
    quoted = context.get("stanzaId") if context.get("quotedMessage") else None

    return DecodedMessage(
        message_id=message_id,
        chat_id=chat_id,
        from_me=bool(key.get("fromMe", False)),
        from_jid=key.get("participant") or chat_id,
        to_jid=chat_id,
        message_type=classify_message_type(content),
        content=content,
        timestamp=_parse_timestamp(raw.get("messageTimestamp")),
        quoted_message_id=quoted,
        push_name=raw.get("pushName"),
        text=_extract_text(content),
        raw=raw,
    )


class EventRouter:
    """Routes protocol events into persistence, the notification hub and webhooks."""

    def __init__(
        self,
        persistence: PersistenceGateway,
        hub: NotificationHub,
        dispatcher: WebhookDispatcher,
    ):
        self.persistence = persistence
        self.hub = hub
        self.dispatcher = dispatcher
        self._tasks: set[asyncio.Task] = set()

    async def consume(
        self,
        session_id: str,
        owner_id: str,
        events: AsyncIterator[ProtocolEvent],
        on_connection_update: ConnectionCallback,
    ) -> None:
        """Single consumer of one session's stream. Returns when the stream ends."""
        log = logger.bind(session_id=session_id)
        async for event in events:
            try:
                await self.route(session_id, owner_id, event, on_connection_update)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                track_event_failed(type(event).__name__)
                log.error("event_routing_failed", event=type(event).__name__, error=str(e), exc_info=True)
                capture_exception(session_id=session_id)
        log.info("event_stream_ended")

    async def route(
        self,
        session_id: str,
        owner_id: str,
        event: ProtocolEvent,
        on_connection_update: ConnectionCallback,
    ) -> None:
        if isinstance(event, ConnectionUpdate):
            await on_connection_update(event)
        elif isinstance(event, MessagesUpsert):
            await self._on_messages_upsert(session_id, owner_id, event)
        elif isinstance(event, MessagesUpdate):
            await self._on_messages_update(session_id, owner_id, event)
        elif isinstance(event, ChatsUpsert):
            await self._on_chats_upsert(session_id, owner_id, event)
        elif isinstance(event, ContactsUpsert):
            await self._on_contacts_upsert(session_id, owner_id, event)
        elif isinstance(event, GroupsUpsert):
            await self._on_groups_upsert(session_id, owner_id, event)
        else:
            logger.warning("unknown_event", session_id=session_id, event=type(event).__name__)

    # ------------------------------------------------------------------
    # Fan-out helpers
    # ------------------------------------------------------------------

    def notify(self, owner_id: str, event_type: str, payload: Any) -> asyncio.Task:
        """Fan an event out to webhooks in the background."""
        task = asyncio.create_task(self._fan_out(owner_id, event_type, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _fan_out(self, owner_id: str, event_type: str, payload: Any) -> None:
        try:
            await self.dispatcher.fan_out(owner_id, event_type, payload)
        except Exception as e:
            logger.error("webhook_fan_out_failed", event_type=event_type, error=str(e), exc_info=True)
            capture_exception()

    async def _publish(self, owner_id: str, event: str, payload: Any) -> None:
        try:
            await self.hub.publish(event, payload, owner_id=owner_id)
        except Exception as e:
            logger.error("publish_failed", event=event, error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight webhook fan-out tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _step_failed(self, session_id: str, step: str, error: Exception) -> None:
        track_event_failed(step)
        logger.error(f"{step}_failed", session_id=session_id, error=str(error), exc_info=True)
        capture_exception(session_id=session_id)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_messages_upsert(self, session_id: str, owner_id: str, event: MessagesUpsert) -> None:
        for raw in event.messages:
            try:
                decoded = decode_message(raw)
            except ValueError as e:
                logger.warning("message_decode_failed", session_id=session_id, error=str(e))
                continue

            try:
                await self.persistence.save_message(
                    session_id,
                    decoded.message_id,
                    **decoded.persistence_fields(event.type),
                )
            except Exception as e:
                self._step_failed(session_id, "message_persist", e)

            track_message_received(decoded.message_type.value)
            payload = {"sessionId": session_id, "message": decoded.to_dict(), "type": event.type}
            await self._publish(owner_id, "message", payload)
            self.notify(owner_id, "message.received", payload)

    async def _on_messages_update(self, session_id: str, owner_id: str, event: MessagesUpdate) -> None:
        for item in event.updates:
            key = item.get("key") or {}
            update = item.get("update") or {}
            status = update.get("status")

            if key.get("id") and status is not None:
                try:
                    await self.persistence.update_message_status(session_id, key["id"], str(status))
                except Exception as e:
                    self._step_failed(session_id, "message_status_persist", e)

            payload = {"sessionId": session_id, "key": key, "update": update}
            await self._publish(owner_id, "message.update", payload)
            self.notify(owner_id, "message.updated", payload)

    async def _on_chats_upsert(self, session_id: str, owner_id: str, event: ChatsUpsert) -> None:
        for chat in event.chats:
            jid = chat.get("id")
            if not jid:
                continue
            try:
                await self.persistence.upsert_chat(
                    session_id,
                    jid,
                    name=chat.get("name"),
                    is_group=jid.endswith("@g.us"),
                    is_archived=bool(chat.get("archived", False)),
                    is_pinned=bool(chat.get("pinned", False)),
                    is_muted=bool(chat.get("mute", False)),
                    unread_count=int(chat.get("unreadCount") or 0),
                    last_message=chat.get("lastMessage"),
                    extra=chat,
                )
            except Exception as e:
                self._step_failed(session_id, "chat_persist", e)

            payload = {"sessionId": session_id, "chat": chat}
            await self._publish(owner_id, "chat.update", payload)
            self.notify(owner_id, "chat.updated", payload)

    async def _on_contacts_upsert(self, session_id: str, owner_id: str, event: ContactsUpsert) -> None:
        for contact in event.contacts:
            jid = contact.get("id")
            if not jid:
                continue
            try:
                await self.persistence.upsert_contact(
                    session_id,
                    jid,
                    name=contact.get("name"),
                    push_name=contact.get("notify"),
                    profile_pic_url=contact.get("imgUrl"),
                    is_blocked=bool(contact.get("blocked", False)),
                    extra=contact,
                )
            except Exception as e:
                self._step_failed(session_id, "contact_persist", e)

            payload = {"sessionId": session_id, "contact": contact}
            await self._publish(owner_id, "contact.update", payload)
            self.notify(owner_id, "contact.updated", payload)

    async def _on_groups_upsert(self, session_id: str, owner_id: str, event: GroupsUpsert) -> None:
        for group in event.groups:
            jid = group.get("id")
            if not jid:
                continue
            try:
                await self.persistence.upsert_group(
                    session_id,
                    jid,
                    subject=group.get("subject"),
                    description=group.get("desc"),
                    owner=group.get("owner"),
                    participants=group.get("participants"),
                    settings=group,
                    extra=group,
                )
            except Exception as e:
                self._step_failed(session_id, "group_persist", e)

            payload = {"sessionId": session_id, "group": group}
            await self._publish(owner_id, "group.update", payload)
            self.notify(owner_id, "group.updated", payload)
