"""WebSocket notification server.

Frontends connect to ``ws://host:port/?tenant=<id>`` and receive the
tenant's gateway events as JSON frames:

    {"type": "QR_GENERATED", "tenantId": "advisor-1", "qr": "data:image/png;base64,..."}
    {"type": "SESSION_CONNECTED", "tenantId": "advisor-1", "phone": "5215550001"}
    {"type": "MESSAGE_RECEIVED", "tenantId": "advisor-1", "phone": "...", "message": "hola", ...}
    {"type": "SESSION_CLOSED", "tenantId": "advisor-1"}

The legacy ``userId`` query parameter is accepted as an alias for ``tenant``.
"""

import json
from typing import Optional
from urllib.parse import parse_qs, urlsplit

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from wa_gateway.bus.events import GatewayEvent
from wa_gateway.bus.queue import EventBus
from wa_gateway.config.schema import NotifyConfig


# RFC 6455 policy violation
CLOSE_POLICY_VIOLATION = 1008


def tenant_from_path(path: str) -> Optional[str]:
    """Extract the tenant id from a request path's query string."""
    query = parse_qs(urlsplit(path).query)
    for key in ("tenant", "userId"):
        values = query.get(key)
        if values and values[0].strip():
            return values[0].strip()
    return None


class NotificationServer:
    """Pushes per-tenant events to connected WebSocket clients."""

    def __init__(self, bus: EventBus, config: Optional[NotifyConfig] = None):
        self.bus = bus
        self.config = config or NotifyConfig()
        self._server: Optional[Server] = None
        self._clients: dict[int, str] = {}

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def port(self) -> Optional[int]:
        """The bound port (differs from the configured one when that is 0)."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await serve(self._handle, self.config.host, self.config.port)
        logger.info(f"Notification server listening on ws://{self.config.host}:{self.config.port}")

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self._clients.clear()
        logger.info("Notification server stopped")

    async def _handle(self, ws: ServerConnection) -> None:
        tenant_id = tenant_from_path(ws.request.path if ws.request else "")
        if not tenant_id:
            logger.warning(f"Rejecting notification client {ws.remote_address}: no tenant id")
            await ws.close(code=CLOSE_POLICY_VIOLATION, reason="tenant required")
            return

        async def forward(event: GatewayEvent) -> None:
            await ws.send(encode_event(event))

        sub = self.bus.subscribe(tenant_id, listener=forward)
        self._clients[id(ws)] = tenant_id
        logger.info(f"[{tenant_id}] Notification client connected")

        try:
            # Clients only listen; anything they send is ignored
            async for _ in ws:
                pass
        except ConnectionClosed:
            pass
        finally:
            self.bus.unsubscribe(sub)
            self._clients.pop(id(ws), None)
            logger.info(f"[{tenant_id}] Notification client disconnected")


def encode_event(event: GatewayEvent) -> str:
    return json.dumps(event.to_dict(), ensure_ascii=False)
