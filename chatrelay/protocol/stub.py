"""
Stub protocol client.

Development client that records outbound commands and lets callers inject
inbound events. Useful for local development and testing.
"""
import asyncio
from typing import Any, AsyncIterator
from uuid import uuid4

from chatrelay.logging_config import get_logger
from chatrelay.protocol.base import (
    ChatsUpsert,
    ClientFactory,
    ClientIdentity,
    ConnectionUpdate,
    ContactsUpsert,
    DisconnectReason,
    GroupsUpsert,
    MessagesUpdate,
    MessagesUpsert,
    ProtocolClient,
    ProtocolEvent,
)

logger = get_logger(component="stub_protocol")

_CLOSED = object()


class StubProtocolClient(ProtocolClient):
    """
    In-memory client.

    - Events are injected with `emit()` or the `emit_*` helpers
    - Outbound commands are appended to `commands`
    - Setting `fail_with` makes every command raise it
    - A `connect_error` is raised by `connect()`
    """

    def __init__(
        self,
        session_id: str,
        auth_dir: str = "",
        registered: bool = False,
        connect_error: Exception | None = None,
    ):
        self.session_id = session_id
        self.auth_dir = auth_dir
        self.registered = registered
        self.connected = False
        self.closed = False
        self.fail_with: Exception | None = None
        self.connect_error = connect_error
        self.commands: list[tuple[str, dict[str, Any]]] = []
        self._identity: ClientIdentity | None = None
        self._queue: asyncio.Queue = asyncio.Queue()

    @property
    def identity(self) -> ClientIdentity | None:
        return self._identity

    @property
    def is_registered(self) -> bool:
        return self.registered

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        logger.info("stub_connect", session_id=self.session_id)

    async def events(self) -> AsyncIterator[ProtocolEvent]:
        while True:
            event = await self._queue.get()
            if event is _CLOSED:
                return
            yield event

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.connected = False
        self._queue.put_nowait(_CLOSED)

    # Event injection

    def emit(self, event: ProtocolEvent) -> None:
        self._queue.put_nowait(event)

    def emit_qr(self, payload: str) -> None:
        self.emit(ConnectionUpdate(qr=payload))

    def emit_open(self, identity_id: str, name: str | None = None) -> None:
        self._identity = ClientIdentity(id=identity_id, name=name)
        self.registered = True
        self.emit(ConnectionUpdate(connection="open"))

    def emit_close(self, reason: int = DisconnectReason.CONNECTION_LOST, error: str | None = None) -> None:
        self.emit(ConnectionUpdate(connection="close", disconnect_reason=int(reason), error=error))

    def emit_messages(self, messages: list[dict[str, Any]], type: str = "notify") -> None:
        self.emit(MessagesUpsert(messages=messages, type=type))

    def emit_message_updates(self, updates: list[dict[str, Any]]) -> None:
        self.emit(MessagesUpdate(updates=updates))

    def emit_chats(self, chats: list[dict[str, Any]]) -> None:
        self.emit(ChatsUpsert(chats=chats))

    def emit_contacts(self, contacts: list[dict[str, Any]]) -> None:
        self.emit(ContactsUpsert(contacts=contacts))

    def emit_groups(self, groups: list[dict[str, Any]]) -> None:
        self.emit(GroupsUpsert(groups=groups))

    # Commands

    def _record(self, name: str, **kwargs) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.commands.append((name, kwargs))
        logger.info("stub_command", session_id=self.session_id, command=name)

    async def request_pairing_code(self, phone_number: str) -> str:
        self._record("request_pairing_code", phone_number=phone_number)
        return uuid4().hex[:8].upper()

    async def send_message(self, to: str, content: dict[str, Any]) -> dict[str, Any]:
        self._record("send_message", to=to, content=content)
        return {
            "key": {"id": f"stub_{uuid4().hex[:16]}", "remoteJid": to, "fromMe": True},
            "status": "PENDING",
        }

    async def chat_modify(self, jid: str, modification: dict[str, Any]) -> None:
        self._record("chat_modify", jid=jid, modification=modification)

    async def update_block_status(self, jid: str, action: str) -> None:
        self._record("update_block_status", jid=jid, action=action)

    async def presence_subscribe(self, jid: str) -> None:
        self._record("presence_subscribe", jid=jid)

    async def profile_picture_url(self, jid: str) -> str | None:
        self._record("profile_picture_url", jid=jid)
        return f"https://stub.invalid/pp/{jid}.jpg"

    async def group_create(self, subject: str, participants: list[str]) -> dict[str, Any]:
        self._record("group_create", subject=subject, participants=participants)
        return {
            "id": f"{uuid4().int % 10**18}@g.us",
            "subject": subject,
            "participants": [{"id": p, "admin": None} for p in participants],
        }

    async def group_metadata(self, jid: str) -> dict[str, Any]:
        self._record("group_metadata", jid=jid)
        return {"id": jid, "subject": "Stub group", "participants": []}

    async def group_participants_update(
        self, jid: str, participants: list[str], action: str
    ) -> list[dict[str, Any]]:
        self._record("group_participants_update", jid=jid, participants=participants, action=action)
        return [{"jid": p, "status": "200"} for p in participants]

    async def group_update_subject(self, jid: str, subject: str) -> None:
        self._record("group_update_subject", jid=jid, subject=subject)

    async def group_update_description(self, jid: str, description: str) -> None:
        self._record("group_update_description", jid=jid, description=description)

    async def group_leave(self, jid: str) -> None:
        self._record("group_leave", jid=jid)


class StubClientFactory(ClientFactory):
    """
    Creates StubProtocolClient instances and keeps them for inspection.

    `clients[session_id]` lists every client built for the session, newest
    last. Set `connect_error` to make the next clients fail on connect.
    """

    def __init__(self, registered: bool = False):
        self.registered = registered
        self.connect_error: Exception | None = None
        self.clients: dict[str, list[StubProtocolClient]] = {}

    def create(self, session_id: str, auth_dir: str) -> StubProtocolClient:
        client = StubProtocolClient(
            session_id,
            auth_dir,
            registered=self.registered,
            connect_error=self.connect_error,
        )
        self.clients.setdefault(session_id, []).append(client)
        return client

    def latest(self, session_id: str) -> StubProtocolClient:
        return self.clients[session_id][-1]
