"""Session manager for wa-gateway.

Facade over the registry, the per-tenant lifecycle controllers, the message
relay and the record store. This is the surface a thin HTTP layer (or the
CLI) calls; it owns no state of its own beyond the controller map.
"""

from typing import Optional

from loguru import logger

from wa_gateway.bus.queue import EventBus, Listener, Subscription
from wa_gateway.config.schema import Config
from wa_gateway.engine import ProtocolEngine, create_engine
from wa_gateway.lifecycle.controller import LifecycleController, ScanCodeRenderer
from wa_gateway.relay.relay import MessageRelay
from wa_gateway.session.models import SessionState, SessionStatus
from wa_gateway.session.registry import SessionRegistry
from wa_gateway.store import (
    ConversationSummary,
    CredentialStore,
    MessageRecord,
    PersistenceError,
    RecordStore,
    create_store,
    summarize_conversations,
)


class SessionManager:
    """Per-tenant session lifecycle manager.

    Example:
        >>> manager = SessionManager(config)
        >>> await manager.start_session("advisor-1")
        >>> sub = manager.subscribe("advisor-1")
        >>> event = await sub.get()   # ScanCodeReady
        >>> await manager.send_message("advisor-1", "5215550001", "hola")
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        engine: Optional[ProtocolEngine] = None,
        store: Optional[RecordStore] = None,
        bus: Optional[EventBus] = None,
        render_scan_code: Optional[ScanCodeRenderer] = None,
    ):
        """Initialize the manager.

        Args:
            config: Gateway configuration (defaults apply when omitted).
            engine: Protocol engine; the configured one is created if omitted.
            store: Record store; the configured backend is created if omitted.
            bus: Event bus shared with notification transports.
            render_scan_code: Turns raw scan codes into the image handed to
                              the frontend.
        """
        self.config = config or Config()

        if engine is None:
            engine = create_engine(self.config.engine)
        if store is None:
            store = create_store(self.config)
            self._owns_store = True
        else:
            self._owns_store = False

        self.engine = engine
        self.store = store
        self.bus = bus or EventBus(max_queue_size=self.config.notify.queue_size)
        self.render_scan_code = render_scan_code

        self.registry = SessionRegistry()
        self.credentials = CredentialStore(store)
        self.relay = MessageRelay(self.registry, store, self.bus, self.config.relay)
        self._controllers: dict[str, LifecycleController] = {}

    def controller(self, tenant_id: str) -> LifecycleController:
        """Get or lazily create the tenant's lifecycle controller."""
        controller = self._controllers.get(tenant_id)
        if controller is None:
            controller = LifecycleController(
                tenant_id,
                registry=self.registry,
                engine=self.engine,
                credentials=self.credentials,
                store=self.store,
                bus=self.bus,
                relay=self.relay,
                config=self.config.lifecycle,
                render_scan_code=self.render_scan_code,
            )
            self._controllers[tenant_id] = controller
        return controller

    # ========================================================================
    # Commands
    # ========================================================================

    async def start_session(self, tenant_id: str) -> None:
        """Start a tenant's session.

        Raises:
            AlreadyActiveError: The tenant is already initializing or connected.
            ProtocolError: The engine failed to open a connection.
        """
        await self.controller(tenant_id).start()

    async def send_message(self, tenant_id: str, recipient: str, text: str) -> MessageRecord:
        """Send a text message.

        Raises:
            NoActiveSessionError: The tenant has no connected session.
            ProtocolError: The engine rejected the send.
        """
        return await self.relay.send(tenant_id, recipient, text)

    async def disconnect(self, tenant_id: str) -> None:
        """Log the tenant out. No automatic reconnection follows."""
        await self.controller(tenant_id).disconnect()

    async def shutdown(self) -> None:
        """Close every connection without logging out, then release resources."""
        for controller in list(self._controllers.values()):
            try:
                await controller.shutdown()
            except Exception as e:
                logger.error(f"[{controller.tenant_id}] Error during shutdown: {e}")

        self.bus.clear()
        if self._owns_store:
            await self.store.close()
        logger.info("Session manager stopped")

    # ========================================================================
    # Queries
    # ========================================================================

    def get_scan_code(self, tenant_id: str) -> Optional[str]:
        """The current rendered scan code, or None when none is pending."""
        record = self.registry.get(tenant_id)
        if record is None or not record.has_qr:
            return None
        return record.last_qr_image

    async def get_status(self, tenant_id: str) -> SessionStatus:
        """Report a tenant's status. Never raises.

        The live session record wins; otherwise the last stored status is
        reported; otherwise ``disconnected``.
        """
        record = self.registry.get(tenant_id)
        if record is not None and record.state is not SessionState.UNINITIALIZED:
            return SessionStatus(
                state=record.state.value,
                phone=record.phone,
                has_qr=record.has_qr,
                is_active=record.is_active,
                is_initializing=record.state in (SessionState.INITIALIZING, SessionState.AWAITING_SCAN),
            )

        try:
            row = await self.store.get_session(tenant_id)
        except PersistenceError as e:
            logger.warning(f"[{tenant_id}] Could not read stored status: {e}")
            row = None

        if row:
            return SessionStatus(
                state=row.get("status") or SessionState.DISCONNECTED.value,
                phone=row.get("phone"),
            )
        return SessionStatus()

    async def get_messages(self, tenant_id: str, counterparty: str) -> list[MessageRecord]:
        """Message history with one counterparty, oldest first."""
        try:
            return await self.store.list_messages(tenant_id, counterparty)
        except PersistenceError as e:
            logger.error(f"[{tenant_id}] Failed to load messages with {counterparty}: {e}")
            return []

    async def get_conversations(self, tenant_id: str) -> list[ConversationSummary]:
        """Latest message and unread count per counterparty, newest first."""
        try:
            messages = await self.store.list_tenant_messages(tenant_id)
        except PersistenceError as e:
            logger.error(f"[{tenant_id}] Failed to load conversations: {e}")
            return []
        return summarize_conversations(messages)

    def tenants(self) -> list[str]:
        return self.registry.tenants()

    # ========================================================================
    # Notifications
    # ========================================================================

    def subscribe(self, tenant_id: str, listener: Optional[Listener] = None) -> Subscription:
        return self.bus.subscribe(tenant_id, listener)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.bus.unsubscribe(subscription)

    def __repr__(self) -> str:
        return f"<SessionManager tenants={len(self.registry)} store={self.store.name}>"
