"""
Persistence gateway.

CRUD and upsert operations for session records, snapshots, messages and
webhook bookkeeping. Every call opens its own database session so callers on
the event path (session tasks, webhook retries) never share a transaction.

Queries that take an owner id MUST filter by it.
"""
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.errors import AlreadyExists
from chatrelay.models.base import new_id
from chatrelay.models.message import Message
from chatrelay.models.session import SessionRecord, SessionStatus
from chatrelay.models.snapshot import Chat, Contact, Group
from chatrelay.models.webhook import DeliveryStatus, Webhook, WebhookDelivery


_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class PersistenceGateway:
    """Durable store used by the registry, the event router and the dispatcher."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Session records
    # ------------------------------------------------------------------

    async def create_session_record(self, session_id: str, owner_id: str) -> SessionRecord:
        """
        Insert a session record, or reactivate the caller's own inactive one.

        Message history and snapshots are keyed by session id, so an id is
        never handed to a different owner once used.

        Raises:
            AlreadyExists: the id is active, or was used by another owner
        """
        async with self.session_factory() as db:
            stmt = select(SessionRecord).where(SessionRecord.session_id == session_id)
            result = await db.execute(stmt)
            record = result.scalar_one_or_none()

            if record is not None:
                if record.is_active or record.owner_id != owner_id:
                    raise AlreadyExists(f"Session {session_id} already exists")
                record.status = SessionStatus.CONNECTING
                record.qr_code = None
                record.pairing_code = None
                record.phone_number = None
                record.display_name = None
                record.is_active = True
            else:
                record = SessionRecord(
                    session_id=session_id,
                    owner_id=owner_id,
                    status=SessionStatus.CONNECTING,
                    is_active=True,
                )
                db.add(record)

            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise AlreadyExists(f"Session {session_id} already exists")
            await db.refresh(record)
            return record

    async def get_session_record(self, session_id: str, active_only: bool = True) -> SessionRecord | None:
        async with self.session_factory() as db:
            stmt = select(SessionRecord).where(SessionRecord.session_id == session_id)
            if active_only:
                stmt = stmt.where(SessionRecord.is_active.is_(True))
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def get_session_records(self, owner_id: str | None = None) -> list[SessionRecord]:
        """Active records, restricted to `owner_id` when given."""
        async with self.session_factory() as db:
            stmt = select(SessionRecord).where(SessionRecord.is_active.is_(True))
            if owner_id is not None:
                stmt = stmt.where(SessionRecord.owner_id == owner_id)
            stmt = stmt.order_by(SessionRecord.created_at.desc())
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def update_session_record(self, session_id: str, **fields: Any) -> bool:
        """Apply `fields` to the active record. Returns False if there is none."""
        async with self.session_factory() as db:
            stmt = (
                update(SessionRecord)
                .where(SessionRecord.session_id == session_id, SessionRecord.is_active.is_(True))
                .values(**fields)
            )
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount > 0

    async def deactivate_session_record(self, session_id: str) -> bool:
        async with self.session_factory() as db:
            stmt = (
                update(SessionRecord)
                .where(SessionRecord.session_id == session_id)
                .values(
                    is_active=False,
                    status=SessionStatus.DISCONNECTED,
                    qr_code=None,
                    pairing_code=None,
                )
            )
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def save_message(self, session_id: str, message_id: str, **fields: Any) -> Message:
        """Insert a message, or overwrite the stored copy of the same message id."""
        async with self.session_factory() as db:
            stmt = select(Message).where(
                Message.session_id == session_id,
                Message.message_id == message_id,
            )
            result = await db.execute(stmt)
            message = result.scalar_one_or_none()

            if message is None:
                message = Message(session_id=session_id, message_id=message_id, **fields)
                db.add(message)
            else:
                for key, value in fields.items():
                    setattr(message, key, value)

            await db.commit()
            await db.refresh(message)
            return message

    async def update_message_status(self, session_id: str, message_id: str, status: str) -> bool:
        """Set the status of an existing message. No-op if the row is absent."""
        async with self.session_factory() as db:
            stmt = (
                update(Message)
                .where(Message.session_id == session_id, Message.message_id == message_id)
                .values(status=status)
            )
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount > 0

    async def get_messages(
        self,
        session_id: str,
        chat_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Message]:
        async with self.session_factory() as db:
            stmt = select(Message).where(Message.session_id == session_id)
            if chat_id:
                stmt = stmt.where(Message.chat_id == chat_id)
            stmt = stmt.order_by(Message.timestamp.desc()).limit(limit).offset(offset)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Chat / contact / group snapshots
    # ------------------------------------------------------------------

    async def _upsert_snapshot(self, model, session_id: str, jid: str, fields: dict[str, Any]):
        async with self.session_factory() as db:
            stmt = select(model).where(model.session_id == session_id, model.jid == jid)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()

            if row is None:
                row = model(session_id=session_id, jid=jid, **fields)
                db.add(row)
            else:
                for key, value in fields.items():
                    setattr(row, key, value)

            await db.commit()
            await db.refresh(row)
            return row

    async def upsert_chat(self, session_id: str, jid: str, **fields: Any) -> Chat:
        """Create or partially update a chat snapshot. Only the given fields change."""
        return await self._upsert_snapshot(Chat, session_id, jid, fields)

    async def upsert_contact(self, session_id: str, jid: str, **fields: Any) -> Contact:
        """Create or partially update a contact snapshot. Only the given fields change."""
        return await self._upsert_snapshot(Contact, session_id, jid, fields)

    async def upsert_group(self, session_id: str, jid: str, **fields: Any) -> None:
        """
        Upsert a group snapshot with a single INSERT ... ON CONFLICT DO UPDATE.

        Runs as one statement on the datastore so concurrent group events for
        the same jid cannot race between the existence check and the write.
        """
        async with self.session_factory() as db:
            insert = _UPSERT_DIALECTS.get(db.bind.dialect.name)
            if insert is None:
                raise NotImplementedError(f"Group upsert not supported on {db.bind.dialect.name}")

            table = Group.__table__
            # attribute names differ from column names for `extra`
            columns = {Group.__mapper__.columns[key]: value for key, value in fields.items()}
            stmt = insert(table).values({
                table.c.id: new_id(),
                table.c.session_id: session_id,
                table.c.jid: jid,
                **columns,
            })
            set_ = {column: stmt.excluded[column.key] for column in columns}
            set_[table.c.updated_at] = func.now()
            stmt = stmt.on_conflict_do_update(index_elements=["session_id", "jid"], set_=set_)
            await db.execute(stmt)
            await db.commit()

    async def get_chats(self, session_id: str, limit: int = 50, offset: int = 0) -> list[Chat]:
        async with self.session_factory() as db:
            stmt = (
                select(Chat)
                .where(Chat.session_id == session_id)
                .order_by(Chat.updated_at.desc())
                .limit(limit)
                .offset(offset)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_contacts(self, session_id: str, limit: int = 100, offset: int = 0) -> list[Contact]:
        async with self.session_factory() as db:
            stmt = (
                select(Contact)
                .where(Contact.session_id == session_id)
                .order_by(Contact.name)
                .limit(limit)
                .offset(offset)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_group(self, session_id: str, jid: str) -> Group | None:
        async with self.session_factory() as db:
            stmt = select(Group).where(Group.session_id == session_id, Group.jid == jid)
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def create_webhook(
        self,
        owner_id: str,
        url: str,
        events: list[str],
        secret: str | None = None,
        max_retries: int = 3,
    ) -> Webhook:
        async with self.session_factory() as db:
            webhook = Webhook(
                owner_id=owner_id,
                url=url,
                events=list(events),
                secret=secret,
                max_retries=max_retries,
                retry_count=0,
                is_active=True,
            )
            db.add(webhook)
            await db.commit()
            await db.refresh(webhook)
            return webhook

    async def get_webhook(self, webhook_id: str, owner_id: str | None = None) -> Webhook | None:
        """Active webhook by id, restricted to `owner_id` when given."""
        async with self.session_factory() as db:
            stmt = select(Webhook).where(Webhook.id == webhook_id, Webhook.is_active.is_(True))
            if owner_id is not None:
                stmt = stmt.where(Webhook.owner_id == owner_id)
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def get_owner_webhooks(self, owner_id: str) -> list[Webhook]:
        async with self.session_factory() as db:
            stmt = (
                select(Webhook)
                .where(Webhook.owner_id == owner_id, Webhook.is_active.is_(True))
                .order_by(Webhook.created_at.desc())
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_subscribed_webhooks(self, owner_id: str, event_type: str) -> list[Webhook]:
        """Active webhooks of `owner_id` subscribed to `event_type` or the wildcard."""
        webhooks = await self.get_owner_webhooks(owner_id)
        return [webhook for webhook in webhooks if webhook.subscribes_to(event_type)]

    async def update_webhook(self, webhook_id: str, owner_id: str, **fields: Any) -> Webhook | None:
        async with self.session_factory() as db:
            stmt = select(Webhook).where(
                Webhook.id == webhook_id,
                Webhook.owner_id == owner_id,
                Webhook.is_active.is_(True),
            )
            result = await db.execute(stmt)
            webhook = result.scalar_one_or_none()
            if webhook is None:
                return None
            for key, value in fields.items():
                setattr(webhook, key, value)
            await db.commit()
            await db.refresh(webhook)
            return webhook

    async def deactivate_webhook(self, webhook_id: str, owner_id: str) -> bool:
        async with self.session_factory() as db:
            stmt = (
                update(Webhook)
                .where(
                    Webhook.id == webhook_id,
                    Webhook.owner_id == owner_id,
                    Webhook.is_active.is_(True),
                )
                .values(is_active=False)
            )
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount > 0

    async def record_webhook_failure(self, webhook_id: str, error: str) -> tuple[int, int]:
        """
        Bump the consecutive-failure counter.

        Returns:
            (counter before the bump, max_retries)
        """
        async with self.session_factory() as db:
            webhook = await db.get(Webhook, webhook_id)
            if webhook is None:
                return 0, 0
            prior = webhook.retry_count
            webhook.retry_count = prior + 1
            webhook.last_error = error
            await db.commit()
            return prior, webhook.max_retries

    async def reset_webhook_failures(self, webhook_id: str) -> None:
        async with self.session_factory() as db:
            stmt = update(Webhook).where(Webhook.id == webhook_id).values(retry_count=0, last_error=None)
            await db.execute(stmt)
            await db.commit()

    # ------------------------------------------------------------------
    # Deliveries
    # ------------------------------------------------------------------

    async def create_delivery(self, webhook_id: str, event: str, payload: dict) -> WebhookDelivery:
        async with self.session_factory() as db:
            delivery = WebhookDelivery(
                webhook_id=webhook_id,
                event=event,
                payload=payload,
                status=DeliveryStatus.PENDING,
                attempts=0,
            )
            db.add(delivery)
            await db.commit()
            await db.refresh(delivery)
            return delivery

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        async with self.session_factory() as db:
            return await db.get(WebhookDelivery, delivery_id)

    async def increment_delivery_attempts(self, delivery_id: str) -> None:
        async with self.session_factory() as db:
            stmt = (
                update(WebhookDelivery)
                .where(WebhookDelivery.id == delivery_id)
                .values(attempts=WebhookDelivery.attempts + 1)
            )
            await db.execute(stmt)
            await db.commit()

    async def update_delivery(self, delivery_id: str, **fields: Any) -> None:
        async with self.session_factory() as db:
            stmt = update(WebhookDelivery).where(WebhookDelivery.id == delivery_id).values(**fields)
            await db.execute(stmt)
            await db.commit()

    async def get_deliveries(
        self,
        webhook_id: str,
        limit: int = 50,
        offset: int = 0,
        status: DeliveryStatus | None = None,
    ) -> list[WebhookDelivery]:
        async with self.session_factory() as db:
            stmt = select(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook_id)
            if status is not None:
                stmt = stmt.where(WebhookDelivery.status == status)
            stmt = stmt.order_by(WebhookDelivery.created_at.desc()).limit(limit).offset(offset)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def purge_deliveries_before(self, cutoff: datetime) -> int:
        async with self.session_factory() as db:
            stmt = delete(WebhookDelivery).where(WebhookDelivery.created_at < cutoff)
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    async def get_owner_stats(self, owner_id: str) -> dict[str, int]:
        """Row counts across the owner's active sessions."""
        async with self.session_factory() as db:
            session_ids = (
                select(SessionRecord.session_id)
                .where(SessionRecord.owner_id == owner_id, SessionRecord.is_active.is_(True))
            )

            async def count(model) -> int:
                stmt = select(func.count()).select_from(model).where(model.session_id.in_(session_ids))
                return (await db.execute(stmt)).scalar_one()

            webhooks_stmt = select(func.count()).select_from(Webhook).where(
                Webhook.owner_id == owner_id, Webhook.is_active.is_(True)
            )
            recent_stmt = select(func.count()).select_from(Message).where(
                Message.session_id.in_(session_ids),
                Message.timestamp >= datetime.now(timezone.utc) - timedelta(hours=24),
            )
            return {
                "totalMessages": await count(Message),
                "messagesLast24h": (await db.execute(recent_stmt)).scalar_one(),
                "totalChats": await count(Chat),
                "totalContacts": await count(Contact),
                "totalGroups": await count(Group),
                "totalWebhooks": (await db.execute(webhooks_stmt)).scalar_one(),
            }
