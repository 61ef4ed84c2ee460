"""Event types delivered through the event bus.

Every event belongs to one tenant. ``to_dict()`` produces the JSON payload
pushed to frontend subscribers; ``type`` uses the wire names the frontend
already understands.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GatewayEvent:
    """Base class for all bus events."""

    type: ClassVar[str] = "EVENT"

    tenant_id: str
    created_at: datetime = field(default_factory=_utcnow, kw_only=True)

    def payload(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        data = {"type": self.type, "tenantId": self.tenant_id}
        data.update(self.payload())
        return data


@dataclass
class ScanCodeReady(GatewayEvent):
    """A new scan code is ready to be shown to the advisor."""

    type: ClassVar[str] = "QR_GENERATED"

    image: str = ""

    def payload(self) -> dict[str, Any]:
        return {"qr": self.image}


@dataclass
class SessionConnected(GatewayEvent):
    """The handshake completed; the session can exchange messages."""

    type: ClassVar[str] = "SESSION_CONNECTED"

    phone: str = ""

    def payload(self) -> dict[str, Any]:
        return {"phone": self.phone}


@dataclass
class SessionClosed(GatewayEvent):
    """The session ended and will not reconnect on its own."""

    type: ClassVar[str] = "SESSION_CLOSED"


@dataclass
class MessageReceived(GatewayEvent):
    """An inbound chat message was received."""

    type: ClassVar[str] = "MESSAGE_RECEIVED"

    sender: str = ""
    text: str = ""
    timestamp: datetime = field(default_factory=_utcnow)

    def payload(self) -> dict[str, Any]:
        return {
            "phone": self.sender,
            "message": self.text,
            "timestamp": self.timestamp.isoformat(),
        }
