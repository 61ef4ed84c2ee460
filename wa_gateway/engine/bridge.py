"""WhatsApp protocol engine reached through a Node.js bridge.

The bridge runs @whiskeysockets/baileys and speaks JSON over WebSocket.
Each tenant gets its own WebSocket connection, opened with
``?tenant=<id>`` so the bridge can keep one protocol socket per tenant.

Gateway -> bridge frames:
- {"type": "auth", "token": "..."}
- {"type": "init", "tenant": "...", "creds": {...} | null, "browser": [...]}
- {"type": "send", "ref": "...", "to": "<jid>", "text": "..."}
- {"type": "logout"}

Bridge -> gateway frames:
- {"type": "creds", "creds": {...}}
- {"type": "qr", "qr": "..."}
- {"type": "status", "status": "connected", "phone": "..."}
- {"type": "close", "statusCode": 401, "reason": "..."}
- {"type": "message", "messages": [{"key": {...}, "message": {...}, ...}]}
- {"type": "sent", "ref": "...", "id": "..."}
- {"type": "error", "ref": "...", "error": "..."}
"""

import asyncio
import json
import uuid
from typing import Any, AsyncIterator, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from loguru import logger

from wa_gateway.config.schema import EngineConfig
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
    ProtocolMessage,
    ScanCodeIssued,
)


SEND_ACK_TIMEOUT_S = 30.0


def tenant_url(bridge_url: str, tenant_id: str) -> str:
    """Append the tenant query parameter to the bridge URL."""
    parts = urlsplit(bridge_url)
    query = dict(parse_qsl(parts.query))
    query["tenant"] = tenant_id
    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", urlencode(query), parts.fragment))


def parse_bridge_frame(data: dict[str, Any]) -> Optional[ConnectionEvent]:
    """Translate a lifecycle or message frame into a connection event.

    Returns None for frames that are not connection events (acks, errors,
    informational statuses).
    """
    msg_type = data.get("type")

    if msg_type == "creds":
        creds = data.get("creds")
        if isinstance(creds, dict):
            return CredentialsUpdated(credentials=creds)
        return None

    if msg_type == "qr":
        code = data.get("qr")
        return ScanCodeIssued(code=code) if code else None

    if msg_type == "status":
        if data.get("status") == "connected":
            return ConnectionOpened(phone=data.get("phone") or "")
        return None

    if msg_type == "close":
        reason = data.get("reason")
        code = data.get("statusCode")
        try:
            close_reason = CloseReason(reason)
        except ValueError:
            close_reason = CloseReason.from_status_code(code)
        return ConnectionClosed(reason=close_reason, detail=str(data.get("error") or reason or ""))

    if msg_type == "message":
        raw = data.get("messages")
        if raw is None:
            raw = [data]
        messages = [ProtocolMessage.from_dict(m) for m in raw if isinstance(m, dict)]
        return MessagesReceived(messages=messages) if messages else None

    return None


class BridgeConnection(ConnectionHandle):
    """A tenant's connection to the bridge."""

    def __init__(self, tenant_id: str, ws: Any):
        super().__init__(tenant_id)
        self._ws = ws
        self._queue: asyncio.Queue[ConnectionEvent] = asyncio.Queue()
        self._pending_sends: dict[str, asyncio.Future] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False
        self._close_emitted = False

    def start(self) -> None:
        self._reader_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    self._handle_frame(raw)
                except Exception as e:
                    logger.error(f"[{self.tenant_id}] Error handling bridge frame: {e}")
                if self._close_emitted:
                    break
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.warning(f"[{self.tenant_id}] Bridge connection error: {e}")

        self._fail_pending_sends("bridge connection closed")
        if not self._closing and not self._close_emitted:
            self._emit(ConnectionClosed(reason=CloseReason.CONNECTION_LOST, detail="bridge socket closed"))

    def _handle_frame(self, raw: Any) -> None:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"[{self.tenant_id}] Invalid JSON from bridge: {str(raw)[:100]}")
            return

        msg_type = data.get("type")

        if msg_type == "sent":
            future = self._pending_sends.pop(data.get("ref", ""), None)
            if future and not future.done():
                future.set_result(data.get("id"))
            return

        if msg_type == "error":
            future = self._pending_sends.pop(data.get("ref", ""), None)
            if future and not future.done():
                future.set_exception(ProtocolError(data.get("error") or "send failed"))
            else:
                logger.error(f"[{self.tenant_id}] WhatsApp bridge error: {data.get('error')}")
            return

        event = parse_bridge_frame(data)
        if event is None:
            logger.debug(f"[{self.tenant_id}] Ignoring bridge frame: {msg_type}")
            return
        self._emit(event)

    def _emit(self, event: ConnectionEvent) -> None:
        if self._close_emitted:
            return
        if isinstance(event, ConnectionClosed):
            self._close_emitted = True
        self._queue.put_nowait(event)

    def _fail_pending_sends(self, reason: str) -> None:
        for future in self._pending_sends.values():
            if not future.done():
                future.set_exception(ProtocolError(reason))
        self._pending_sends.clear()

    async def events(self) -> AsyncIterator[ConnectionEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, ConnectionClosed):
                return

    async def send(self, recipient: str, text: str) -> Optional[str]:
        if self._closing or self._close_emitted:
            raise ProtocolError("connection is closed")

        ref = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_sends[ref] = future
        try:
            await self._ws.send(json.dumps(
                {"type": "send", "ref": ref, "to": recipient, "text": text},
                ensure_ascii=False,
            ))
            return await asyncio.wait_for(future, timeout=SEND_ACK_TIMEOUT_S)
        except asyncio.TimeoutError as e:
            raise ProtocolError(f"no acknowledgement for message to {recipient}") from e
        except websockets.exceptions.WebSocketException as e:
            raise ProtocolError(f"bridge send failed: {e}") from e
        finally:
            self._pending_sends.pop(ref, None)

    async def logout(self) -> None:
        try:
            await self._ws.send(json.dumps({"type": "logout"}))
        except websockets.exceptions.WebSocketException as e:
            raise ProtocolError(f"bridge logout failed: {e}") from e

    async def close(self) -> None:
        self._closing = True
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
        self._fail_pending_sends("connection closed")
        try:
            await self._ws.close()
        except Exception as e:
            logger.debug(f"[{self.tenant_id}] Error closing bridge socket: {e}")


class BridgeEngine(ProtocolEngine):
    """Opens one bridge WebSocket per tenant."""

    name = "bridge"

    def __init__(self, config: EngineConfig):
        self.config = config

    async def open(
        self,
        tenant_id: str,
        credentials: Optional[dict[str, Any]],
    ) -> ConnectionHandle:
        url = tenant_url(self.config.bridge_url, tenant_id)
        logger.info(f"[{tenant_id}] Connecting to WhatsApp bridge at {self.config.bridge_url}...")

        try:
            ws = await websockets.connect(url, open_timeout=self.config.connect_timeout_s)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise ProtocolError(f"cannot reach bridge: {e}") from e

        try:
            if self.config.bridge_token:
                await ws.send(json.dumps({"type": "auth", "token": self.config.bridge_token}))
            await ws.send(json.dumps({
                "type": "init",
                "tenant": tenant_id,
                "creds": credentials,
                "browser": self.config.browser,
            }, ensure_ascii=False))
        except websockets.exceptions.WebSocketException as e:
            await ws.close()
            raise ProtocolError(f"bridge rejected init: {e}") from e

        connection = BridgeConnection(tenant_id, ws)
        connection.start()
        logger.info(f"[{tenant_id}] Connected to WhatsApp bridge")
        return connection
