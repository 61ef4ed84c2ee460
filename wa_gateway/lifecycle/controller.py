"""Lifecycle controller - per-tenant session state machine.

Drives one tenant through:

    uninitialized -> initializing -> awaiting_scan -> connected
                           |               |             |
                           +-------> disconnected <------+
                                   (retry | terminal)

Each connection attempt gets a generation number. The pump task of an
attempt feeds the handle's events through ``_dispatch`` one at a time under
the controller lock, and drops events once its generation is superseded
(disconnect, shutdown, or a newer attempt).
"""

import asyncio
from typing import Callable, Optional

from loguru import logger

from wa_gateway.bus.events import ScanCodeReady, SessionClosed, SessionConnected
from wa_gateway.bus.queue import EventBus
from wa_gateway.config.schema import LifecycleConfig
from wa_gateway.engine.base import (
    CloseReason,
    ConnectionClosed,
    ConnectionEvent,
    ConnectionHandle,
    ConnectionOpened,
    CredentialsUpdated,
    MessagesReceived,
    ProtocolEngine,
    ProtocolError,
    ScanCodeIssued,
)
from wa_gateway.lifecycle.policy import CloseDecision, decide_on_close, retries_exhausted, retry_delay
from wa_gateway.relay.relay import MessageRelay
from wa_gateway.session.models import SessionRecord, SessionState
from wa_gateway.session.registry import AlreadyActiveError, SessionRegistry
from wa_gateway.store.base import PersistenceError, RecordStore
from wa_gateway.store.credentials import CredentialStore


ScanCodeRenderer = Callable[[str], str]


def passthrough_renderer(code: str) -> str:
    """Default renderer: hand the raw scan code to the frontend."""
    return code


class LifecycleController:
    """Owns one tenant's connection and session record."""

    def __init__(
        self,
        tenant_id: str,
        registry: SessionRegistry,
        engine: ProtocolEngine,
        credentials: CredentialStore,
        store: RecordStore,
        bus: EventBus,
        relay: MessageRelay,
        config: Optional[LifecycleConfig] = None,
        render_scan_code: Optional[ScanCodeRenderer] = None,
    ):
        self.tenant_id = tenant_id
        self.registry = registry
        self.engine = engine
        self.credentials = credentials
        self.store = store
        self.bus = bus
        self.relay = relay
        self.config = config or LifecycleConfig()
        self.render_scan_code = render_scan_code or passthrough_renderer

        self._lock = asyncio.Lock()
        self._generation = 0
        self._handle: Optional[ConnectionHandle] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._scan_code_shown = False
        self._retry_attempt = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def record(self) -> Optional[SessionRecord]:
        return self.registry.get(self.tenant_id)

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    @property
    def retry_attempt(self) -> int:
        return self._retry_attempt

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start a session on explicit request.

        Raises:
            AlreadyActiveError: The tenant is initializing or connected.
            ProtocolError: The engine could not open a connection.
        """
        if not self.registry.try_begin(self.tenant_id):
            raise AlreadyActiveError(self.tenant_id)

        # An explicit start supersedes a scheduled reconnect
        self._cancel_retry()
        self._retry_attempt = 0

        async with self._lock:
            try:
                await self._open_attempt()
            except ProtocolError as e:
                logger.error(f"[{self.tenant_id}] Failed to start session: {e}")
                await self._fail_attempt()
                raise
            except Exception as e:
                logger.exception(f"[{self.tenant_id}] Unexpected error starting session")
                await self._fail_attempt()
                raise ProtocolError(f"session start failed: {e}") from e

    async def disconnect(self) -> None:
        """Log out and tear down the session. No reconnect follows."""
        async with self._lock:
            # A reconnect is either sleeping or waiting for the lock here
            self._cancel_retry()
            self._generation += 1
            record = self.record

            if record is not None and record.is_active and record.state is not SessionState.DISCONNECTING:
                record.transition(SessionState.DISCONNECTING)

            handle = self._handle
            if handle is not None:
                try:
                    await handle.logout()
                except Exception as e:
                    logger.warning(f"[{self.tenant_id}] Logout failed, closing anyway: {e}")

            await self._release_handle()
            self._stop_pump()
            self._retry_attempt = 0

            if record is not None and record.can_transition(SessionState.DISCONNECTED):
                record.transition(SessionState.DISCONNECTED)
            self.registry.complete(self.tenant_id)

            # A start queued behind the lock must not load the old identity
            await self._clear_credentials()
            await self._persist_status(SessionState.DISCONNECTED)

        logger.info(f"[{self.tenant_id}] Session disconnected on request")
        await self.bus.publish(self.tenant_id, SessionClosed(self.tenant_id))

    async def shutdown(self) -> None:
        """Close the connection without logging out.

        Stored credentials stay valid, so the session can resume after a
        restart without a new scan.
        """
        async with self._lock:
            self._cancel_retry()
            self._generation += 1
            record = self.record
            was_active = record is not None and record.is_active

            await self._release_handle()
            self._stop_pump()

            if record is not None and record.can_transition(SessionState.DISCONNECTED):
                record.transition(SessionState.DISCONNECTED)
            self.registry.complete(self.tenant_id)

        if was_active:
            await self._persist_status(SessionState.DISCONNECTED)
        logger.debug(f"[{self.tenant_id}] Controller shut down")

    # ------------------------------------------------------------------
    # Connection attempts
    # ------------------------------------------------------------------

    async def _open_attempt(self) -> None:
        """Open a new connection. Caller holds the lock and the registry claim."""
        record = self.record
        if record is None:
            raise ProtocolError(f"no session record for {self.tenant_id}")

        self._generation += 1
        generation = self._generation
        self._scan_code_shown = False
        record.transition(SessionState.INITIALIZING)
        logger.info(f"[{self.tenant_id}] Initializing session (attempt {generation})")

        credentials = await self.credentials.load(self.tenant_id)

        try:
            handle = await self.engine.open(self.tenant_id, credentials)
        except ProtocolError:
            raise
        except Exception as e:
            raise ProtocolError(f"engine open failed: {e}") from e

        replaced = self.registry.attach(self.tenant_id, handle)
        if replaced is not None:
            await self._close_quietly(replaced)

        self._handle = handle
        self._pump_task = asyncio.create_task(self._pump(handle, generation))

    async def _fail_attempt(self) -> None:
        """Mark the attempt failed and release the claim."""
        await self._release_handle()
        self._stop_pump()
        record = self.record
        if record is not None and record.can_transition(SessionState.FAILED):
            record.transition(SessionState.FAILED)
        self.registry.complete(self.tenant_id)

    async def _pump(self, handle: ConnectionHandle, generation: int) -> None:
        """Feed one handle's events through the state machine, in order."""
        closed = False
        try:
            async for event in handle.events():
                async with self._lock:
                    if generation != self._generation:
                        logger.debug(f"[{self.tenant_id}] Dropping event from superseded connection")
                        break
                    try:
                        await self._dispatch(event)
                    except Exception:
                        logger.exception(f"[{self.tenant_id}] Error processing {type(event).__name__}")
                if isinstance(event, ConnectionClosed):
                    closed = True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.tenant_id}] Connection event stream failed: {e}")

        if closed:
            return

        async with self._lock:
            if generation != self._generation:
                return
            try:
                await self._on_closed(ConnectionClosed(
                    reason=CloseReason.CONNECTION_LOST,
                    detail="event stream ended without close",
                ))
            except Exception:
                logger.exception(f"[{self.tenant_id}] Error handling lost connection")

    async def _dispatch(self, event: ConnectionEvent) -> None:
        if isinstance(event, CredentialsUpdated):
            await self.credentials.save(self.tenant_id, event.credentials)
        elif isinstance(event, ScanCodeIssued):
            await self._on_scan_code(event)
        elif isinstance(event, ConnectionOpened):
            await self._on_opened(event)
        elif isinstance(event, ConnectionClosed):
            await self._on_closed(event)
        elif isinstance(event, MessagesReceived):
            for message in event.messages:
                try:
                    await self.relay.handle_inbound(self.tenant_id, message)
                except Exception:
                    logger.exception(f"[{self.tenant_id}] Failed to relay inbound message")
        else:
            logger.warning(f"[{self.tenant_id}] Unknown connection event: {event!r}")

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_scan_code(self, event: ScanCodeIssued) -> None:
        image = self.render_scan_code(event.code)
        self.record.show_scan_code(image)
        self._scan_code_shown = True
        logger.info(f"[{self.tenant_id}] Scan code ready")
        await self.bus.publish(self.tenant_id, ScanCodeReady(self.tenant_id, image=image))

    async def _on_opened(self, event: ConnectionOpened) -> None:
        self.record.mark_connected(event.phone)
        self._retry_attempt = 0
        self.registry.complete(self.tenant_id)
        logger.info(f"[{self.tenant_id}] WhatsApp connected as {event.phone}")

        await self._persist_status(SessionState.CONNECTED, phone=event.phone)
        await self.bus.publish(self.tenant_id, SessionConnected(self.tenant_id, phone=event.phone))

    async def _on_closed(self, event: ConnectionClosed) -> None:
        record = self.record
        decision = decide_on_close(
            event.reason,
            record.ever_completed_handshake,
            self._scan_code_shown,
        )
        attempt = self._retry_attempt + 1
        if decision is CloseDecision.RETRY and retries_exhausted(self.config, attempt):
            logger.warning(f"[{self.tenant_id}] Giving up after {self._retry_attempt} reconnect attempts")
            decision = CloseDecision.TERMINAL

        await self._release_handle()

        if decision is CloseDecision.RETRY:
            record.transition(SessionState.DISCONNECTED)
            self._retry_attempt = attempt
            delay = retry_delay(self.config, record.ever_completed_handshake, attempt)
            self._schedule_retry(delay)
            self.registry.complete(self.tenant_id)
            logger.info(
                f"[{self.tenant_id}] Connection closed ({event.reason.value}), "
                f"reconnecting in {delay:.1f}s (attempt {attempt})"
            )
            return

        logger.info(f"[{self.tenant_id}] Connection closed ({event.reason.value}), not reconnecting")
        await self._terminate(clear_credentials=event.is_logout)

    async def _terminate(self, clear_credentials: bool = False) -> None:
        """Enter the terminal disconnected state."""
        record = self.record
        if record.state is not SessionState.DISCONNECTED:
            record.transition(SessionState.DISCONNECTED)
        self._retry_attempt = 0
        self.registry.complete(self.tenant_id)

        if clear_credentials:
            await self._clear_credentials()
        await self._persist_status(SessionState.DISCONNECTED)
        await self.bus.publish(self.tenant_id, SessionClosed(self.tenant_id))

    # ------------------------------------------------------------------
    # Reconnection timer
    # ------------------------------------------------------------------

    def _schedule_retry(self, delay: float) -> None:
        self._retry_task = asyncio.create_task(self._retry_after(delay))

    def _cancel_retry(self) -> None:
        task = self._retry_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._retry_task = None

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)

        async with self._lock:
            if not self.registry.try_begin(self.tenant_id):
                logger.debug(f"[{self.tenant_id}] Session already active, skipping reconnect")
                return

            try:
                await self._open_attempt()
            except ProtocolError as e:
                logger.warning(f"[{self.tenant_id}] Reconnect failed: {e}")
            except Exception:
                logger.exception(f"[{self.tenant_id}] Unexpected error while reconnecting")
            else:
                return

            await self._fail_attempt()

            attempt = self._retry_attempt + 1
            if retries_exhausted(self.config, attempt):
                logger.warning(f"[{self.tenant_id}] Giving up after {self._retry_attempt} reconnect attempts")
                await self._terminate()
                return

            self._retry_attempt = attempt
            record = self.record
            self._schedule_retry(retry_delay(self.config, record.ever_completed_handshake, attempt))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _release_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        self.registry.detach(self.tenant_id, handle)
        await self._close_quietly(handle)

    async def _close_quietly(self, handle: ConnectionHandle) -> None:
        try:
            await handle.close()
        except Exception as e:
            logger.warning(f"[{self.tenant_id}] Error closing connection: {e}")

    def _stop_pump(self) -> None:
        task, self._pump_task = self._pump_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _persist_status(self, state: SessionState, phone: Optional[str] = None) -> None:
        try:
            await self.store.upsert_session(self.tenant_id, state.value, phone=phone)
        except PersistenceError as e:
            logger.error(f"[{self.tenant_id}] Failed to persist status {state.value}: {e}")

    async def _clear_credentials(self) -> None:
        await self.credentials.clear(self.tenant_id)

    def __repr__(self) -> str:
        record = self.record
        state = record.state.value if record else "none"
        return f"<LifecycleController tenant={self.tenant_id} state={state} generation={self._generation}>"
