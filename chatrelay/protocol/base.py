"""
Chat protocol client interface.

The wire protocol (handshake, encryption, framing) lives behind this
interface. A client owns one connection for one session, exposes its inbound
traffic as an async event stream and accepts outbound commands.

Implementations: Stub (development and tests). Production deployments point
PROTOCOL_CLIENT_FACTORY at their own ClientFactory.
"""
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator


class DisconnectReason(enum.IntEnum):
    """Close reasons reported with a `close` connection update."""
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


@dataclass(frozen=True)
class ClientIdentity:
    """Account the client is logged in as, e.g. id="15551234567:12@s.whatsapp.net"."""
    id: str
    name: str | None = None

    @property
    def phone_number(self) -> str:
        # strip server suffix and device index
        return self.id.split("@")[0].split(":")[0]


@dataclass
class ConnectionUpdate:
    """
    Connection state change.

    `connection` is one of "connecting", "open", "close" or None when the
    update only carries a QR payload.
    """
    connection: str | None = None
    qr: str | None = None
    disconnect_reason: int | None = None
    error: str | None = None

    @property
    def is_logged_out(self) -> bool:
        return self.disconnect_reason == DisconnectReason.LOGGED_OUT


@dataclass
class MessagesUpsert:
    """New messages. Each item is the raw protocol message dict."""
    messages: list[dict[str, Any]] = field(default_factory=list)
    type: str = "notify"


@dataclass
class MessagesUpdate:
    """Status updates, each `{"key": {...}, "update": {"status": ...}}`."""
    updates: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ChatsUpsert:
    chats: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ContactsUpsert:
    contacts: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class GroupsUpsert:
    groups: list[dict[str, Any]] = field(default_factory=list)


ProtocolEvent = ConnectionUpdate | MessagesUpsert | MessagesUpdate | ChatsUpsert | ContactsUpsert | GroupsUpsert


class ProtocolClient(ABC):
    """
    One connection for one session.

    Implementations must handle:
    - Connecting with the auth material stored for the session
    - Yielding events in arrival order from `events()`
    - Ending the `events()` iterator once `close()` has been called
    """

    @property
    @abstractmethod
    def identity(self) -> ClientIdentity | None:
        """Logged-in identity, None until the connection opens."""
        ...

    @property
    @abstractmethod
    def is_registered(self) -> bool:
        """Whether the stored credentials are already paired."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Start the connection. Progress is reported through `events()`."""
        ...

    @abstractmethod
    def events(self) -> AsyncIterator[ProtocolEvent]:
        """Async iterator over inbound events."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def request_pairing_code(self, phone_number: str) -> str:
        ...

    @abstractmethod
    async def send_message(self, to: str, content: dict[str, Any]) -> dict[str, Any]:
        """
        Send a message.

        Args:
            to: Recipient jid
            content: Message content, e.g. {"text": ...}, {"image": bytes, "caption": ...},
                {"location": {...}} or {"react": {...}}

        Returns:
            The sent message as the protocol reports it (includes its key)
        """
        ...

    @abstractmethod
    async def chat_modify(self, jid: str, modification: dict[str, Any]) -> None:
        """Archive, pin, delete or mark a chat read, e.g. {"archive": True}."""
        ...

    @abstractmethod
    async def update_block_status(self, jid: str, action: str) -> None:
        """`action` is "block" or "unblock"."""
        ...

    @abstractmethod
    async def presence_subscribe(self, jid: str) -> None:
        ...

    @abstractmethod
    async def profile_picture_url(self, jid: str) -> str | None:
        ...

    @abstractmethod
    async def group_create(self, subject: str, participants: list[str]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def group_metadata(self, jid: str) -> dict[str, Any]:
        ...

    @abstractmethod
    async def group_participants_update(
        self, jid: str, participants: list[str], action: str
    ) -> list[dict[str, Any]]:
        """`action` is one of add, remove, promote, demote."""
        ...

    @abstractmethod
    async def group_update_subject(self, jid: str, subject: str) -> None:
        ...

    @abstractmethod
    async def group_update_description(self, jid: str, description: str) -> None:
        ...

    @abstractmethod
    async def group_leave(self, jid: str) -> None:
        ...


class ClientFactory(ABC):
    """Builds a ProtocolClient for a session."""

    @abstractmethod
    def create(self, session_id: str, auth_dir: str) -> ProtocolClient:
        """
        Args:
            session_id: Session the client will serve
            auth_dir: Directory holding the session's persisted auth material
        """
        ...
