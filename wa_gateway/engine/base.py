"""Protocol engine boundary.

The protocol engine owns the chat-network wire protocol. The gateway only
sees it through two interfaces:

- ``ProtocolEngine.open(tenant_id, credentials)`` returns a
  ``ConnectionHandle`` seeded with the stored credential blob.
- The handle yields connection events in emission order and accepts
  ``send``, ``logout`` and ``close`` calls.

Connection events:
- ``CredentialsUpdated``: new credential material to persist
- ``ScanCodeIssued``: a scan code the user must approve out-of-band
- ``ConnectionOpened``: handshake completed, carries the resolved phone
- ``ConnectionClosed``: the connection ended, carries a ``CloseReason``
- ``MessagesReceived``: protocol messages upserted into the chat
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Optional, Union


class ProtocolError(Exception):
    """The protocol engine rejected an open or send."""
    pass


class CloseReason(str, Enum):
    """Why a connection closed."""
    LOGGED_OUT = "logged_out"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_CLOSED = "connection_closed"
    CONNECTION_REPLACED = "connection_replaced"
    TIMED_OUT = "timed_out"
    BAD_SESSION = "bad_session"
    RESTART_REQUIRED = "restart_required"
    UNKNOWN = "unknown"

    @classmethod
    def from_status_code(cls, code: Optional[int]) -> "CloseReason":
        """Map an engine disconnect status code to a reason."""
        return _STATUS_CODES.get(code, cls.UNKNOWN) if code is not None else cls.UNKNOWN


_STATUS_CODES = {
    401: CloseReason.LOGGED_OUT,
    408: CloseReason.CONNECTION_LOST,
    428: CloseReason.CONNECTION_CLOSED,
    440: CloseReason.CONNECTION_REPLACED,
    500: CloseReason.BAD_SESSION,
    515: CloseReason.RESTART_REQUIRED,
}


@dataclass
class ProtocolMessage:
    """A chat message as delivered by the engine.

    ``content`` is the engine's raw message body, e.g.
    ``{"conversation": "hola"}`` or
    ``{"extendedTextMessage": {"text": "hola"}}``.
    """
    remote_jid: str
    from_me: bool = False
    content: Optional[dict[str, Any]] = None
    timestamp: Optional[int] = None
    """Epoch seconds"""
    push_name: Optional[str] = None
    message_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ProtocolMessage":
        """Create from the engine's message shape ({key, message, ...})."""
        key = data.get("key") or {}
        raw_ts = data.get("messageTimestamp")
        try:
            timestamp = int(raw_ts) if raw_ts is not None else None
        except (TypeError, ValueError):
            timestamp = None
        return cls(
            remote_jid=key.get("remoteJid", ""),
            from_me=bool(key.get("fromMe", False)),
            content=data.get("message"),
            timestamp=timestamp,
            push_name=data.get("pushName"),
            message_id=key.get("id"),
        )


@dataclass
class CredentialsUpdated:
    credentials: dict[str, Any]


@dataclass
class ScanCodeIssued:
    code: str


@dataclass
class ConnectionOpened:
    phone: str


@dataclass
class ConnectionClosed:
    reason: CloseReason = CloseReason.UNKNOWN
    detail: str = ""

    @property
    def is_logout(self) -> bool:
        return self.reason is CloseReason.LOGGED_OUT


@dataclass
class MessagesReceived:
    messages: list[ProtocolMessage] = field(default_factory=list)


ConnectionEvent = Union[
    CredentialsUpdated,
    ScanCodeIssued,
    ConnectionOpened,
    ConnectionClosed,
    MessagesReceived,
]


class ConnectionHandle(ABC):
    """One live engine connection for a tenant.

    Owned exclusively by the lifecycle controller that opened it.
    """

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id

    @abstractmethod
    def events(self) -> AsyncIterator[ConnectionEvent]:
        """Yield connection events in emission order.

        The iterator ends after a ``ConnectionClosed`` event.
        """
        pass

    @abstractmethod
    async def send(self, recipient: str, text: str) -> Optional[str]:
        """Send a text message to a fully qualified recipient address.

        Returns:
            The engine's message id, when it reports one.

        Raises:
            ProtocolError: The engine rejected the send.
        """
        pass

    @abstractmethod
    async def logout(self) -> None:
        """Log the device out, invalidating its credentials."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Tear down the network connection without logging out."""
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} tenant={self.tenant_id}>"


class ProtocolEngine(ABC):
    """Factory for connection handles."""

    name: str = "base"

    @abstractmethod
    async def open(
        self,
        tenant_id: str,
        credentials: Optional[dict[str, Any]],
    ) -> ConnectionHandle:
        """Open a connection seeded with the stored credential blob.

        Args:
            tenant_id: Tenant the connection belongs to.
            credentials: Stored blob, or None for a fresh login.

        Raises:
            ProtocolError: The connection could not be opened.
        """
        pass
