"""
Session registry.

Owns the live session map and each session's lifecycle:

    CONNECTING -> QR_REQUIRED | PAIRING_REQUIRED -> CONNECTING -> CONNECTED
    CONNECTED -> CONNECTING (recoverable close) -> CONNECTED | DISCONNECTED | ERROR
    * -> DISCONNECTED on logout (terminal, no reconnect)
    * -> ERROR on initialisation or reconnect failure (manual restart)

Each live entry has its own lock; there is no lock across sessions. Readers
get frozen snapshots and never see the entries themselves.
"""
import asyncio
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from chatrelay.config import settings
from chatrelay.errors import AlreadyExists, ChatRelayError, NotConnected, NotFound, ProtocolError
from chatrelay.logging_config import get_logger
from chatrelay.models.session import SessionStatus
from chatrelay.protocol.base import ClientFactory, ConnectionUpdate, ProtocolClient
from chatrelay.routes.metrics import track_reconnect, track_session_transition, update_session_counts
from chatrelay.sentry_config import capture_exception
from chatrelay.services.event_router import EventRouter
from chatrelay.services.notification_hub import NotificationHub
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.qr import encode_qr_data_url
from chatrelay.services.scheduler import DelayedTaskScheduler

logger = get_logger(component="session_registry")

T = TypeVar("T")

REQUIRED_STATES = (SessionStatus.QR_REQUIRED, SessionStatus.PAIRING_REQUIRED)
# restored as-is at startup, never reconnected automatically
TERMINAL_STATES = (SessionStatus.DISCONNECTED, SessionStatus.ERROR)


@dataclass(frozen=True)
class Session:
    """Point-in-time view of a live session."""
    session_id: str
    owner_id: str
    status: SessionStatus
    use_pairing_code: bool = False
    qr_code: str | None = None
    pairing_code: str | None = None
    phone_number: str | None = None
    display_name: str | None = None
    last_seen: datetime | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "status": self.status.value,
            "usePairingCode": self.use_pairing_code,
            "qrCode": self.qr_code,
            "pairingCode": self.pairing_code,
            "phoneNumber": self.phone_number,
            "displayName": self.display_name,
            "lastSeen": self.last_seen.isoformat() if self.last_seen else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class LiveSession:
    """Mutable registry entry. Only touched by the registry, under `lock`."""

    def __init__(self, session_id: str, owner_id: str, use_pairing_code: bool = False):
        self.session_id = session_id
        self.owner_id = owner_id
        self.use_pairing_code = use_pairing_code
        self.status = SessionStatus.CONNECTING
        self.qr_code: str | None = None
        self.pairing_code: str | None = None
        self.phone_number: str | None = None
        self.display_name: str | None = None
        self.last_seen: datetime | None = None
        self.created_at = datetime.now(timezone.utc)
        self.client: ProtocolClient | None = None
        self.connect_task: asyncio.Task | None = None
        self.event_task: asyncio.Task | None = None
        self.reconnect_attempts = 0
        self.closed = False
        self.lock = asyncio.Lock()

    def snapshot(self) -> Session:
        return Session(
            session_id=self.session_id,
            owner_id=self.owner_id,
            status=self.status,
            use_pairing_code=self.use_pairing_code,
            qr_code=self.qr_code,
            pairing_code=self.pairing_code,
            phone_number=self.phone_number,
            display_name=self.display_name,
            last_seen=self.last_seen,
            created_at=self.created_at,
        )


class SessionRegistry:
    """In-memory map of live sessions and the lifecycle that drives them."""

    def __init__(
        self,
        persistence: PersistenceGateway,
        router: EventRouter,
        hub: NotificationHub,
        client_factory: ClientFactory,
        scheduler: DelayedTaskScheduler | None = None,
        reconnect_delay: float | None = None,
        max_reconnect_attempts: int | None = None,
        auth_sessions_dir: str | None = None,
    ):
        self.persistence = persistence
        self.router = router
        self.hub = hub
        self.client_factory = client_factory
        self.scheduler = scheduler or DelayedTaskScheduler(name="reconnect")
        self.reconnect_delay = (
            reconnect_delay if reconnect_delay is not None else settings.RECONNECT_DELAY_SECONDS
        )
        self.max_reconnect_attempts = (
            max_reconnect_attempts if max_reconnect_attempts is not None else settings.MAX_RECONNECT_ATTEMPTS
        )
        self.auth_sessions_dir = auth_sessions_dir or settings.AUTH_SESSIONS_DIR
        self._sessions: dict[str, LiveSession] = {}
        # ids between the existence check and insertion into _sessions
        self._reserved: set[str] = set()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        """Live-map lookup only. Callers needing the durable record merge it themselves."""
        entry = self._sessions.get(session_id)
        return entry.snapshot() if entry else None

    def list_sessions(self, owner_id: str | None = None) -> list[Session]:
        entries = list(self._sessions.values())
        return [
            entry.snapshot()
            for entry in entries
            if owner_id is None or entry.owner_id == owner_id
        ]

    def stats_snapshot(self, owner_id: str | None = None) -> dict[str, Any]:
        """Counts per status from a point-in-time copy of the map."""
        sessions = self.list_sessions(owner_id)
        by_status = {status.value: 0 for status in SessionStatus}
        for session in sessions:
            by_status[session.status.value] += 1
        if owner_id is None:
            update_session_counts(by_status)
        return {
            "total": len(sessions),
            "connected": by_status[SessionStatus.CONNECTED.value],
            "byStatus": by_status,
        }

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_session(self, session_id: str, owner_id: str, use_pairing_code: bool = False) -> Session:
        """
        Register a new session and start connecting it in the background.

        Raises:
            AlreadyExists: the id is live, being created, or has an active durable record
        """
        if session_id in self._sessions or session_id in self._reserved:
            raise AlreadyExists(f"Session {session_id} already exists")
        self._reserved.add(session_id)
        try:
            await self.persistence.create_session_record(session_id, owner_id)
            entry = LiveSession(session_id, owner_id, use_pairing_code)
            self._sessions[session_id] = entry
        finally:
            self._reserved.discard(session_id)

        logger.info("session_created", session_id=session_id, owner_id=owner_id, use_pairing_code=use_pairing_code)
        track_session_transition(entry.status.value)
        await self._publish(entry)
        entry.connect_task = asyncio.create_task(self._establish(entry), name=f"connect:{session_id}")
        return entry.snapshot()

    async def restore_sessions(self) -> int:
        """
        Bring active durable records back into the registry at startup.

        Sessions left DISCONNECTED (logged out) or in ERROR are loaded with
        their stored status but not connected; they stay that way until the
        owner deletes and recreates them. The rest reconnect, resuming from the
        per-session auth material on disk.

        Returns:
            Number of sessions reconnected
        """
        records = await self.persistence.get_session_records()
        restored = 0
        for record in records:
            if record.session_id in self._sessions or record.session_id in self._reserved:
                continue
            entry = LiveSession(record.session_id, record.owner_id)
            entry.phone_number = record.phone_number
            entry.display_name = record.display_name
            entry.last_seen = record.last_seen
            if record.created_at is not None:
                entry.created_at = record.created_at
            self._sessions[record.session_id] = entry

            if record.status in TERMINAL_STATES:
                entry.status = record.status
                logger.info("session_loaded_without_connect", session_id=record.session_id, status=record.status.value)
                continue

            async with entry.lock:
                await self._transition(entry, SessionStatus.CONNECTING)
            entry.connect_task = asyncio.create_task(self._establish(entry), name=f"connect:{record.session_id}")
            restored += 1
        if restored:
            logger.info("sessions_restored", count=restored)
        return restored

    async def delete_session(self, session_id: str) -> bool:
        """
        Tear down a session. Idempotent.

        Returns:
            True if a live session was removed
        """
        entry = self._sessions.pop(session_id, None)
        if entry is not None:
            entry.closed = True
            self.scheduler.cancel(session_id)
            # wait for an in-flight handler, then stop everything
            async with entry.lock:
                await self._stop_entry(entry)
            await self.hub.publish(
                "session.deleted",
                {"sessionId": session_id},
                owner_id=entry.owner_id,
            )
            logger.info("session_deleted", session_id=session_id)

        await self.persistence.deactivate_session_record(session_id)
        return entry is not None

    async def restart_session(self, session_id: str, owner_id: str) -> Session:
        """Delete and recreate with the same id and pairing mode."""
        current = self.get_session(session_id)
        use_pairing_code = current.use_pairing_code if current else False
        await self.delete_session(session_id)
        return await self.create_session(session_id, owner_id, use_pairing_code)

    async def request_pairing_code(self, session_id: str, phone_number: str) -> str:
        """
        Ask the client for a pairing code and move the session to PAIRING_REQUIRED.

        Raises:
            NotFound: no live session, or its client has not been created yet
            ProtocolError: the client rejected the request
        """
        entry = self._sessions.get(session_id)
        if entry is None or entry.client is None:
            raise NotFound("Session not found or not initialized")

        try:
            code = await entry.client.request_pairing_code(phone_number)
        except ChatRelayError:
            raise
        except Exception as e:
            raise ProtocolError(str(e) or "Failed to request pairing code") from e

        async with entry.lock:
            if entry.closed:
                raise NotFound("Session not found or not initialized")
            await self._transition(
                entry,
                SessionStatus.PAIRING_REQUIRED,
                pairing_code=code,
                phone_number=phone_number,
                qr_code=None,
            )
        logger.info("pairing_code_issued", session_id=session_id)
        return code

    async def send_command(self, session_id: str, command: Callable[[ProtocolClient], Awaitable[T]]) -> T:
        """
        Run `command` against the session's client.

        Raises:
            NotConnected: the session is not live and CONNECTED
            ProtocolError: the client raised
        """
        entry = self._sessions.get(session_id)
        if entry is None or entry.status != SessionStatus.CONNECTED or entry.client is None:
            raise NotConnected()

        try:
            return await command(entry.client)
        except ChatRelayError:
            raise
        except Exception as e:
            logger.warning("protocol_command_failed", session_id=session_id, error=str(e))
            raise ProtocolError(str(e) or e.__class__.__name__) from e

    async def shutdown(self, timeout: float | None = None) -> None:
        """Cancel reconnect timers and session tasks, close every client within `timeout`."""
        timeout = timeout if timeout is not None else settings.SHUTDOWN_TIMEOUT_SECONDS
        self.scheduler.cancel_all()

        entries = list(self._sessions.values())
        self._sessions.clear()
        for entry in entries:
            entry.closed = True

        try:
            await asyncio.wait_for(
                asyncio.gather(*(self._stop_entry(entry) for entry in entries), return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("session_shutdown_timeout", sessions=len(entries), timeout=timeout)
        logger.info("session_registry_shutdown", sessions=len(entries))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _auth_dir(self, session_id: str) -> str:
        return os.path.join(self.auth_sessions_dir, session_id)

    async def _stop_entry(self, entry: LiveSession) -> None:
        current = asyncio.current_task()
        tasks = [
            task for task in (entry.connect_task, entry.event_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._close_client(entry, entry.client)

    async def _close_client(self, entry: LiveSession, client: ProtocolClient | None) -> None:
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            logger.warning("client_close_failed", session_id=entry.session_id, error=str(e))

    def _is_current(self, entry: LiveSession, client: ProtocolClient | None = None) -> bool:
        if entry.closed or self._sessions.get(entry.session_id) is not entry:
            return False
        return client is None or entry.client is client

    async def _establish(self, entry: LiveSession) -> None:
        """Create a client, connect it and start its event consumer."""
        async with entry.lock:
            if not self._is_current(entry):
                return
            client = self.client_factory.create(entry.session_id, self._auth_dir(entry.session_id))
            entry.client = client

        try:
            await client.connect()
        except asyncio.CancelledError:
            await self._close_client(entry, client)
            raise
        except Exception as e:
            logger.error("session_connect_failed", session_id=entry.session_id, error=str(e), exc_info=True)
            capture_exception(session_id=entry.session_id)
            async with entry.lock:
                if self._is_current(entry, client):
                    await self._transition(entry, SessionStatus.ERROR)
            await self._close_client(entry, client)
            return

        async with entry.lock:
            if not self._is_current(entry, client):
                await self._close_client(entry, client)
                return

            async def on_connection_update(update: ConnectionUpdate) -> None:
                await self._on_connection_update(entry, client, update)

            entry.event_task = asyncio.create_task(
                self.router.consume(entry.session_id, entry.owner_id, client.events(), on_connection_update),
                name=f"events:{entry.session_id}",
            )

            if entry.use_pairing_code and not client.is_registered and entry.status == SessionStatus.CONNECTING:
                await self._transition(entry, SessionStatus.PAIRING_REQUIRED)

    async def _on_connection_update(self, entry: LiveSession, client: ProtocolClient, update: ConnectionUpdate) -> None:
        async with entry.lock:
            # events from a replaced or deleted client are dropped
            if not self._is_current(entry, client):
                return

            if update.qr:
                await self._on_qr(entry, update.qr)

            if update.connection == "close":
                await self._on_close(entry, client, update)
            elif update.connection == "open":
                await self._on_open(entry, client)

    async def _on_qr(self, entry: LiveSession, payload: str) -> None:
        if entry.use_pairing_code:
            logger.info("qr_ignored_pairing_mode", session_id=entry.session_id)
            return
        try:
            qr_code = await asyncio.to_thread(encode_qr_data_url, payload)
        except Exception as e:
            logger.error("qr_encode_failed", session_id=entry.session_id, error=str(e))
            return
        await self._transition(entry, SessionStatus.QR_REQUIRED, qr_code=qr_code)

    async def _on_open(self, entry: LiveSession, client: ProtocolClient) -> None:
        if entry.status in REQUIRED_STATES:
            await self._transition(entry, SessionStatus.CONNECTING)

        identity = client.identity
        fields: dict[str, Any] = {
            "qr_code": None,
            "pairing_code": None,
            "last_seen": datetime.now(timezone.utc),
        }
        if identity is not None:
            fields["phone_number"] = identity.phone_number
            fields["display_name"] = identity.name

        entry.reconnect_attempts = 0
        await self._transition(entry, SessionStatus.CONNECTED, **fields)
        logger.info("session_connected", session_id=entry.session_id, phone_number=entry.phone_number)

    async def _on_close(self, entry: LiveSession, client: ProtocolClient, update: ConnectionUpdate) -> None:
        if update.is_logged_out:
            await self._transition(entry, SessionStatus.DISCONNECTED, qr_code=None, pairing_code=None)
            await self._close_client(entry, client)
            logger.info("session_logged_out", session_id=entry.session_id)
            return

        await self._transition(entry, SessionStatus.CONNECTING, qr_code=None)
        await self._close_client(entry, client)

        entry.reconnect_attempts += 1
        if entry.reconnect_attempts > self.max_reconnect_attempts:
            logger.error(
                "session_reconnect_exhausted",
                session_id=entry.session_id,
                attempts=entry.reconnect_attempts - 1,
            )
            await self._transition(entry, SessionStatus.ERROR)
            return

        logger.info(
            "session_reconnect_scheduled",
            session_id=entry.session_id,
            attempt=entry.reconnect_attempts,
            reason=update.disconnect_reason,
            delay_seconds=self.reconnect_delay,
        )
        track_reconnect()
        self.scheduler.schedule(entry.session_id, self.reconnect_delay, lambda: self._reconnect(entry))

    async def _reconnect(self, entry: LiveSession) -> None:
        if not self._is_current(entry):
            return
        entry.connect_task = asyncio.current_task()
        await self._establish(entry)

    async def _transition(self, entry: LiveSession, status: SessionStatus, **fields: Any) -> None:
        """
        Apply a status change. Caller holds `entry.lock`.

        Persists the durable shadow best-effort, then publishes the new state
        and fans out `connection.updated`.
        """
        previous = entry.status
        entry.status = status
        for key, value in fields.items():
            setattr(entry, key, value)

        track_session_transition(status.value)
        logger.info(
            "session_status_changed",
            session_id=entry.session_id,
            previous=previous.value,
            status=status.value,
        )

        try:
            await self.persistence.update_session_record(
                entry.session_id,
                status=status,
                qr_code=entry.qr_code,
                pairing_code=entry.pairing_code,
                phone_number=entry.phone_number,
                display_name=entry.display_name,
                last_seen=entry.last_seen,
            )
        except Exception as e:
            logger.error("session_persist_failed", session_id=entry.session_id, error=str(e))
            capture_exception(session_id=entry.session_id)

        await self._publish(entry)
        self.router.notify(entry.owner_id, "connection.updated", entry.snapshot().to_dict())

    async def _publish(self, entry: LiveSession) -> None:
        try:
            await self.hub.publish("session.update", entry.snapshot().to_dict(), owner_id=entry.owner_id)
        except Exception as e:
            logger.error("session_publish_failed", session_id=entry.session_id, error=str(e))
