"""Tests for the bridge protocol engine."""

import asyncio
import json

import pytest

from wa_gateway.config.schema import EngineConfig
from wa_gateway.engine.base import (
    CloseReason,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    MessagesReceived,
    ProtocolError,
    ProtocolMessage,
    ScanCodeIssued,
)
from wa_gateway.engine.bridge import BridgeConnection, BridgeEngine, parse_bridge_frame, tenant_url


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.outgoing: list[dict] = []
        self.closed = False
        self.on_send = None

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def send(self, data):
        frame = json.loads(data)
        self.outgoing.append(frame)
        if self.on_send:
            self.on_send(frame)

    async def close(self):
        self.closed = True

    def feed(self, frame: dict):
        self.incoming.put_nowait(json.dumps(frame))

    def hang_up(self):
        self.incoming.put_nowait(None)


async def collect(connection: BridgeConnection) -> list:
    return [event async for event in connection.events()]


class TestHelpers:
    def test_tenant_url(self):
        assert tenant_url("ws://localhost:3002", "advisor-1") == "ws://localhost:3002/?tenant=advisor-1"
        assert tenant_url("wss://bridge/ws?v=2", "a b") == "wss://bridge/ws?v=2&tenant=a+b"

    @pytest.mark.parametrize("code,reason", [
        (401, CloseReason.LOGGED_OUT),
        (408, CloseReason.CONNECTION_LOST),
        (428, CloseReason.CONNECTION_CLOSED),
        (440, CloseReason.CONNECTION_REPLACED),
        (500, CloseReason.BAD_SESSION),
        (515, CloseReason.RESTART_REQUIRED),
        (999, CloseReason.UNKNOWN),
        (None, CloseReason.UNKNOWN),
    ])
    def test_status_codes(self, code, reason):
        assert CloseReason.from_status_code(code) is reason

    def test_protocol_message_from_dict(self):
        msg = ProtocolMessage.from_dict({
            "key": {"remoteJid": "521@s.whatsapp.net", "fromMe": False, "id": "ABC"},
            "message": {"conversation": "hola"},
            "messageTimestamp": "1700000000",
            "pushName": "Ana",
        })
        assert msg.remote_jid == "521@s.whatsapp.net"
        assert msg.from_me is False
        assert msg.content == {"conversation": "hola"}
        assert msg.timestamp == 1700000000
        assert msg.push_name == "Ana"
        assert msg.message_id == "ABC"


class TestParseFrame:
    def test_creds(self):
        event = parse_bridge_frame({"type": "creds", "creds": {"me": {"id": "1"}}})
        assert event == CredentialsUpdated(credentials={"me": {"id": "1"}})

    def test_qr(self):
        assert parse_bridge_frame({"type": "qr", "qr": "2@xyz"}) == ScanCodeIssued(code="2@xyz")
        assert parse_bridge_frame({"type": "qr", "qr": ""}) is None

    def test_connected_status(self):
        event = parse_bridge_frame({"type": "status", "status": "connected", "phone": "555"})
        assert event == ConnectionOpened(phone="555")
        assert parse_bridge_frame({"type": "status", "status": "connecting"}) is None

    def test_close_by_status_code(self):
        event = parse_bridge_frame({"type": "close", "statusCode": 401})
        assert isinstance(event, ConnectionClosed)
        assert event.is_logout

    def test_close_by_reason_name(self):
        event = parse_bridge_frame({"type": "close", "reason": "restart_required", "statusCode": 401})
        assert event.reason is CloseReason.RESTART_REQUIRED

    def test_message_list_and_single(self):
        raw = {"key": {"remoteJid": "521@s.whatsapp.net"}, "message": {"conversation": "hola"}}
        batch = parse_bridge_frame({"type": "message", "messages": [raw, raw]})
        assert isinstance(batch, MessagesReceived)
        assert len(batch.messages) == 2

        single = parse_bridge_frame(dict(raw, type="message"))
        assert len(single.messages) == 1
        assert single.messages[0].remote_jid == "521@s.whatsapp.net"

    def test_unknown_frame(self):
        assert parse_bridge_frame({"type": "presence"}) is None


class TestBridgeConnection:
    def test_events_in_arrival_order(self):
        async def run():
            sock = FakeSocket()
            connection = BridgeConnection("a", sock)
            connection.start()

            sock.feed({"type": "creds", "creds": {"v": 1}})
            sock.feed({"type": "qr", "qr": "code"})
            sock.feed({"type": "status", "status": "connected", "phone": "555"})
            sock.feed({"type": "close", "statusCode": 428})
            sock.feed({"type": "qr", "qr": "after-close"})

            return await asyncio.wait_for(collect(connection), timeout=1)

        events = asyncio.run(run())
        assert [type(e) for e in events] == [
            CredentialsUpdated, ScanCodeIssued, ConnectionOpened, ConnectionClosed,
        ]
        assert events[-1].reason is CloseReason.CONNECTION_CLOSED

    def test_dropped_socket_reports_connection_lost(self):
        async def run():
            sock = FakeSocket()
            connection = BridgeConnection("a", sock)
            connection.start()
            sock.hang_up()
            return await asyncio.wait_for(collect(connection), timeout=1)

        events = asyncio.run(run())
        assert len(events) == 1
        assert events[0].reason is CloseReason.CONNECTION_LOST

    def test_invalid_json_is_skipped(self):
        async def run():
            sock = FakeSocket()
            connection = BridgeConnection("a", sock)
            connection.start()
            sock.incoming.put_nowait("not json")
            sock.feed({"type": "close", "statusCode": 401})
            return await asyncio.wait_for(collect(connection), timeout=1)

        events = asyncio.run(run())
        assert len(events) == 1
        assert events[0].is_logout

    def test_send_waits_for_ack(self):
        async def run():
            sock = FakeSocket()
            sock.on_send = lambda frame: sock.feed({"type": "sent", "ref": frame["ref"], "id": "MSG1"})
            connection = BridgeConnection("a", sock)
            connection.start()

            message_id = await asyncio.wait_for(connection.send("521@s.whatsapp.net", "hola"), timeout=1)
            await connection.close()
            return message_id, sock.outgoing

        message_id, outgoing = asyncio.run(run())
        assert message_id == "MSG1"
        assert outgoing[0]["type"] == "send"
        assert outgoing[0]["to"] == "521@s.whatsapp.net"
        assert outgoing[0]["text"] == "hola"

    def test_send_error_frame(self):
        async def run():
            sock = FakeSocket()
            sock.on_send = lambda frame: sock.feed({"type": "error", "ref": frame["ref"], "error": "not on whatsapp"})
            connection = BridgeConnection("a", sock)
            connection.start()

            with pytest.raises(ProtocolError, match="not on whatsapp"):
                await asyncio.wait_for(connection.send("521@s.whatsapp.net", "hola"), timeout=1)
            await connection.close()

        asyncio.run(run())

    def test_send_after_close(self):
        async def run():
            sock = FakeSocket()
            connection = BridgeConnection("a", sock)
            connection.start()
            await connection.close()

            assert sock.closed
            with pytest.raises(ProtocolError):
                await connection.send("521@s.whatsapp.net", "hola")

        asyncio.run(run())

    def test_logout_frame(self):
        async def run():
            sock = FakeSocket()
            connection = BridgeConnection("a", sock)
            await connection.logout()
            return sock.outgoing

        assert asyncio.run(run()) == [{"type": "logout"}]


class TestBridgeEngine:
    def test_unreachable_bridge_raises_protocol_error(self):
        async def run():
            engine = BridgeEngine(EngineConfig(bridge_url="ws://127.0.0.1:1", connect_timeout_s=2))
            with pytest.raises(ProtocolError):
                await engine.open("a", None)

        asyncio.run(run())
