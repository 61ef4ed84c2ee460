"""Message relay.

Outbound: resolve the tenant's connected handle, normalize the recipient,
send, then log the message.
Inbound: turn engine messages into message-log records, make sure a CRM
lead exists for the sender, and notify subscribers.

Persistence is best-effort on both paths: a store outage is logged and
never blocks delivery or receipt.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from loguru import logger

from wa_gateway.bus.events import MessageReceived
from wa_gateway.bus.queue import EventBus
from wa_gateway.config.schema import RelayConfig
from wa_gateway.engine.base import ProtocolError, ProtocolMessage
from wa_gateway.session.registry import SessionRegistry
from wa_gateway.store.base import Direction, MessageRecord, PersistenceError, RecordStore


class NoActiveSessionError(Exception):
    """A send was attempted for a tenant without a connected session."""

    def __init__(self, tenant_id: str):
        super().__init__(f"no active session for {tenant_id}")
        self.tenant_id = tenant_id


def normalize_recipient(recipient: str, domain: str = "s.whatsapp.net") -> str:
    """Turn a bare identifier into the engine's address form.

    Example:
        >>> normalize_recipient("5215550001")
        '5215550001@s.whatsapp.net'
    """
    recipient = recipient.strip()
    if "@" in recipient:
        return recipient
    return f"{recipient}@{domain}"


def bare_identifier(address: str) -> str:
    """Strip the domain suffix from an engine address."""
    return address.split("@", 1)[0]


def extract_text(content: Optional[dict[str, Any]]) -> str:
    """Plain text of an engine message body.

    Prefers the primary text field, falls back to the extended-text
    variant, else returns an empty string.
    """
    if not content:
        return ""
    text = content.get("conversation")
    if text:
        return str(text)
    extended = content.get("extendedTextMessage") or {}
    if isinstance(extended, dict) and extended.get("text"):
        return str(extended["text"])
    return ""


class MessageRelay:
    """Relays messages between the CRM and tenants' connections."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: RecordStore,
        bus: EventBus,
        config: Optional[RelayConfig] = None,
    ):
        self.registry = registry
        self.store = store
        self.bus = bus
        self.config = config or RelayConfig()

    async def send(self, tenant_id: str, recipient: str, text: str) -> MessageRecord:
        """Send a text message on behalf of a tenant.

        Args:
            tenant_id: Sending tenant.
            recipient: Bare phone number or full engine address.
            text: Message body.

        Returns:
            The outgoing message record (persisted when the store allows).

        Raises:
            NoActiveSessionError: The tenant has no connected session.
            ProtocolError: The engine rejected the send.
        """
        handle = self.registry.active_handle(tenant_id)
        if handle is None:
            raise NoActiveSessionError(tenant_id)

        jid = normalize_recipient(recipient, self.config.default_domain)
        try:
            message_id = await handle.send(jid, text)
        except ProtocolError:
            raise
        except Exception as e:
            raise ProtocolError(f"send to {jid} failed: {e}") from e

        logger.info(f"[{tenant_id}] Message sent to {jid}")

        record = MessageRecord(
            tenant_id=tenant_id,
            counterparty=bare_identifier(jid),
            direction=Direction.OUTGOING,
            text=text,
            delivery_status="sent",
        )
        if message_id:
            record.message_id = message_id

        try:
            await self.store.append_message(record)
        except PersistenceError as e:
            logger.error(f"[{tenant_id}] Failed to store outgoing message: {e}")

        return record

    async def handle_inbound(self, tenant_id: str, message: ProtocolMessage) -> Optional[MessageRecord]:
        """Process one engine message.

        Messages authored by the tenant itself, or without a body, are
        skipped.

        Returns:
            The incoming message record, or None when skipped.
        """
        if message.from_me or not message.content:
            return None

        phone = bare_identifier(message.remote_jid)
        text = extract_text(message.content)
        if message.timestamp:
            timestamp = datetime.fromtimestamp(message.timestamp, tz=timezone.utc)
        else:
            timestamp = datetime.now(timezone.utc)

        record = MessageRecord(
            tenant_id=tenant_id,
            counterparty=phone,
            direction=Direction.INCOMING,
            text=text,
            timestamp=timestamp,
            delivery_status="received",
        )
        if message.message_id:
            record.message_id = message.message_id

        try:
            await self.store.append_message(record)
        except PersistenceError as e:
            logger.error(f"[{tenant_id}] Failed to store incoming message from {phone}: {e}")

        if self.config.create_leads:
            await self._ensure_lead(tenant_id, phone, message.push_name)

        await self.bus.publish(tenant_id, MessageReceived(
            tenant_id,
            sender=phone,
            text=text,
            timestamp=timestamp,
        ))
        logger.debug(f"[{tenant_id}] Inbound message from {phone} relayed")
        return record

    async def _ensure_lead(self, tenant_id: str, phone: str, push_name: Optional[str]) -> None:
        try:
            created = await self.store.ensure_lead(
                tenant_id,
                phone,
                name=push_name or self.config.default_lead_name,
                source=self.config.lead_source,
                status=self.config.lead_status,
            )
        except PersistenceError as e:
            logger.error(f"[{tenant_id}] Failed to ensure lead for {phone}: {e}")
            return

        if created:
            logger.info(f"[{tenant_id}] Created lead for {phone}")
