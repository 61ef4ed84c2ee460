"""Record store boundary.

The gateway persists four kinds of records against an external keyed
store:

- session status, keyed by tenant id
- credential blobs, keyed by tenant id
- an append-only message log, keyed by (tenant id, counterparty, timestamp)
- CRM leads, keyed by (tenant id, phone)

Backends implement ``RecordStore`` and report every failure as
``PersistenceError``. Callers in the gateway treat persistence as
best-effort: they log the error and carry on with in-memory state.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class PersistenceError(Exception):
    """A read or write against the record store failed."""
    pass


class Direction(str, Enum):
    """Message direction relative to the tenant."""
    INCOMING = "incoming"
    OUTGOING = "outgoing"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    """Parse an ISO string or epoch seconds into an aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return _utcnow()


@dataclass
class MessageRecord:
    """One entry of the message log."""

    tenant_id: str
    counterparty: str
    """Bare counterparty identifier (phone number, no domain suffix)"""

    direction: Direction
    text: str
    timestamp: datetime = field(default_factory=_utcnow)
    delivery_status: str = "received"
    message_id: str = field(default_factory=lambda: str(uuid.uuid4())[:12])

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.message_id,
            "asesor_id": self.tenant_id,
            "phone": self.counterparty,
            "message": self.text,
            "direction": self.direction.value,
            "timestamp": self.timestamp.isoformat(),
            "status": self.delivery_status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MessageRecord":
        """Create from dictionary."""
        return cls(
            tenant_id=data["asesor_id"],
            counterparty=data["phone"],
            direction=Direction(data.get("direction", Direction.INCOMING.value)),
            text=data.get("message") or "",
            timestamp=_parse_timestamp(data.get("timestamp")),
            delivery_status=data.get("status", "received"),
            message_id=str(data.get("id") or uuid.uuid4())[:36],
        )


@dataclass
class ConversationSummary:
    """Latest message and unread count for one counterparty."""

    counterparty: str
    last_message: str
    last_timestamp: datetime
    last_direction: Direction
    unread: int = 0

    def to_dict(self) -> dict:
        return {
            "phone": self.counterparty,
            "lastMessage": self.last_message,
            "lastTimestamp": self.last_timestamp.isoformat(),
            "lastDirection": self.last_direction.value,
            "unread": self.unread,
        }


def summarize_conversations(messages: list[MessageRecord]) -> list[ConversationSummary]:
    """Group a tenant's messages by counterparty.

    ``unread`` counts the incoming messages received after the last
    outgoing message to that counterparty. Summaries are ordered newest
    first.
    """
    by_counterparty: dict[str, list[MessageRecord]] = {}
    for msg in sorted(messages, key=lambda m: m.timestamp):
        by_counterparty.setdefault(msg.counterparty, []).append(msg)

    summaries = []
    for counterparty, thread in by_counterparty.items():
        last = thread[-1]
        unread = 0
        for msg in reversed(thread):
            if msg.direction is Direction.OUTGOING:
                break
            unread += 1
        summaries.append(ConversationSummary(
            counterparty=counterparty,
            last_message=last.text,
            last_timestamp=last.timestamp,
            last_direction=last.direction,
            unread=unread,
        ))

    summaries.sort(key=lambda s: s.last_timestamp, reverse=True)
    return summaries


class RecordStore(ABC):
    """Abstract async record store.

    All methods raise ``PersistenceError`` on backend failure.
    """

    name: str = "base"

    # -- credentials ---------------------------------------------------------

    @abstractmethod
    async def get_credentials(self, tenant_id: str) -> Optional[dict[str, Any]]:
        """Return the stored credential blob, or None when absent."""
        pass

    @abstractmethod
    async def put_credentials(self, tenant_id: str, blob: dict[str, Any]) -> None:
        """Upsert the credential blob for a tenant."""
        pass

    @abstractmethod
    async def delete_credentials(self, tenant_id: str) -> None:
        """Remove the credential blob, if any."""
        pass

    # -- session status ------------------------------------------------------

    @abstractmethod
    async def upsert_session(
        self,
        tenant_id: str,
        status: str,
        phone: Optional[str] = None,
    ) -> None:
        """Upsert the session status row for a tenant.

        A None phone leaves any previously stored phone untouched.
        """
        pass

    @abstractmethod
    async def get_session(self, tenant_id: str) -> Optional[dict[str, Any]]:
        """Return the stored session row (status, phone, last_activity)."""
        pass

    @abstractmethod
    async def list_sessions(self) -> list[dict[str, Any]]:
        """Return all stored session rows."""
        pass

    # -- messages ------------------------------------------------------------

    @abstractmethod
    async def append_message(self, record: MessageRecord) -> None:
        """Append a record to the message log."""
        pass

    @abstractmethod
    async def list_messages(self, tenant_id: str, counterparty: str) -> list[MessageRecord]:
        """Messages exchanged with one counterparty, oldest first."""
        pass

    @abstractmethod
    async def list_tenant_messages(self, tenant_id: str) -> list[MessageRecord]:
        """All messages of a tenant, newest first."""
        pass

    # -- leads ---------------------------------------------------------------

    @abstractmethod
    async def ensure_lead(
        self,
        tenant_id: str,
        phone: str,
        name: str,
        source: str = "whatsapp",
        status: str = "prospecto",
    ) -> bool:
        """Create a lead for (tenant, phone) unless one exists.

        Returns:
            True if a new lead was created.
        """
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name}>"
