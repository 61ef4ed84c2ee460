"""Tests for the message relay."""

import asyncio

import pytest

from conftest import FakeHandle
from wa_gateway.bus.events import MessageReceived
from wa_gateway.bus.queue import EventBus
from wa_gateway.config.schema import RelayConfig
from wa_gateway.engine.base import ProtocolError, ProtocolMessage
from wa_gateway.relay.relay import (
    MessageRelay,
    NoActiveSessionError,
    bare_identifier,
    extract_text,
    normalize_recipient,
)
from wa_gateway.session.models import SessionState
from wa_gateway.session.registry import SessionRegistry
from wa_gateway.store.base import Direction, PersistenceError
from wa_gateway.store.memory import MemoryStore


TENANT = "advisor-1"


class BrokenStore(MemoryStore):
    async def append_message(self, record):
        raise PersistenceError("store offline")

    async def ensure_lead(self, *args, **kwargs):
        raise PersistenceError("store offline")


def connected_registry(handle) -> SessionRegistry:
    registry = SessionRegistry()
    registry.try_begin(TENANT)
    registry.attach(TENANT, handle)
    record = registry.get(TENANT)
    record.transition(SessionState.INITIALIZING)
    record.mark_connected("555")
    registry.complete(TENANT)
    return registry


class TestHelpers:
    def test_normalize_bare_identifier(self):
        assert normalize_recipient("5215550001") == "5215550001@s.whatsapp.net"

    def test_normalize_keeps_full_address(self):
        assert normalize_recipient("12036304@g.us") == "12036304@g.us"

    def test_normalize_strips_and_uses_custom_domain(self):
        assert normalize_recipient(" 521 ", "c.us") == "521@c.us"

    def test_bare_identifier(self):
        assert bare_identifier("5215550001@s.whatsapp.net") == "5215550001"
        assert bare_identifier("5215550001") == "5215550001"

    def test_extract_primary_text(self):
        assert extract_text({"conversation": "hola"}) == "hola"

    def test_extract_extended_text(self):
        assert extract_text({"extendedTextMessage": {"text": "link https://x"}}) == "link https://x"

    def test_extract_prefers_primary(self):
        content = {"conversation": "a", "extendedTextMessage": {"text": "b"}}
        assert extract_text(content) == "a"

    def test_extract_other_content_is_empty(self):
        assert extract_text({"imageMessage": {"url": "..."}}) == ""
        assert extract_text(None) == ""


class TestSend:
    def test_send_normalizes_and_persists(self):
        async def run():
            handle = FakeHandle(TENANT, None)
            store = MemoryStore()
            relay = MessageRelay(connected_registry(handle), store, EventBus())

            record = await relay.send(TENANT, "5215550001", "hola")

            assert handle.sent == [("5215550001@s.whatsapp.net", "hola")]
            assert record.direction is Direction.OUTGOING
            assert record.counterparty == "5215550001"
            assert record.delivery_status == "sent"
            assert record.message_id == "wamid-1"
            assert store.messages == [record]

        asyncio.run(run())

    def test_send_without_session(self):
        async def run():
            store = MemoryStore()
            relay = MessageRelay(SessionRegistry(), store, EventBus())
            with pytest.raises(NoActiveSessionError):
                await relay.send(TENANT, "521", "hola")
            assert store.messages == []

        asyncio.run(run())

    def test_send_while_not_connected(self):
        async def run():
            registry = SessionRegistry()
            registry.try_begin(TENANT)
            registry.attach(TENANT, FakeHandle(TENANT, None))
            registry.get(TENANT).transition(SessionState.INITIALIZING)
            store = MemoryStore()
            relay = MessageRelay(registry, store, EventBus())

            with pytest.raises(NoActiveSessionError):
                await relay.send(TENANT, "521", "hola")
            assert store.messages == []

        asyncio.run(run())

    def test_engine_failure_surfaces(self):
        async def run():
            handle = FakeHandle(TENANT, None)
            handle.send_error = RuntimeError("socket gone")
            store = MemoryStore()
            relay = MessageRelay(connected_registry(handle), store, EventBus())

            with pytest.raises(ProtocolError):
                await relay.send(TENANT, "521", "hola")
            assert store.messages == []

        asyncio.run(run())

    def test_store_failure_does_not_block_send(self):
        async def run():
            handle = FakeHandle(TENANT, None)
            relay = MessageRelay(connected_registry(handle), BrokenStore(), EventBus())

            record = await relay.send(TENANT, "521", "hola")
            assert record.text == "hola"
            assert handle.sent == [("521@s.whatsapp.net", "hola")]

        asyncio.run(run())


class TestInbound:
    def make_message(self, **overrides) -> ProtocolMessage:
        values = {
            "remote_jid": "521555@s.whatsapp.net",
            "content": {"conversation": "hola"},
            "timestamp": 1700000000,
            "push_name": "Ana",
            "message_id": "ABC",
        }
        values.update(overrides)
        return ProtocolMessage(**values)

    def test_inbound_persists_creates_lead_and_publishes(self):
        async def run():
            store = MemoryStore()
            bus = EventBus()
            sub = bus.subscribe(TENANT)
            relay = MessageRelay(SessionRegistry(), store, bus)

            record = await relay.handle_inbound(TENANT, self.make_message())

            assert record.direction is Direction.INCOMING
            assert record.counterparty == "521555"
            assert record.text == "hola"
            assert record.message_id == "ABC"
            assert record.timestamp.timestamp() == 1700000000
            assert store.messages == [record]
            assert store.leads[(TENANT, "521555")]["name"] == "Ana"
            assert store.leads[(TENANT, "521555")]["status"] == "prospecto"

            event = sub.get_nowait()
            assert isinstance(event, MessageReceived)
            assert event.to_dict()["message"] == "hola"
            assert event.to_dict()["phone"] == "521555"

        asyncio.run(run())

    def test_own_messages_skipped(self):
        async def run():
            store = MemoryStore()
            relay = MessageRelay(SessionRegistry(), store, EventBus())
            assert await relay.handle_inbound(TENANT, self.make_message(from_me=True)) is None
            assert store.messages == []

        asyncio.run(run())

    def test_messages_without_content_skipped(self):
        async def run():
            store = MemoryStore()
            relay = MessageRelay(SessionRegistry(), store, EventBus())
            assert await relay.handle_inbound(TENANT, self.make_message(content=None)) is None
            assert store.messages == []

        asyncio.run(run())

    def test_lead_created_once_with_default_name(self):
        async def run():
            store = MemoryStore()
            relay = MessageRelay(SessionRegistry(), store, EventBus())
            await relay.handle_inbound(TENANT, self.make_message(push_name=None))
            await relay.handle_inbound(TENANT, self.make_message(push_name="Later"))
            assert len(store.leads) == 1
            assert store.leads[(TENANT, "521555")]["name"] == "Contacto"

        asyncio.run(run())

    def test_lead_creation_can_be_disabled(self):
        async def run():
            store = MemoryStore()
            relay = MessageRelay(SessionRegistry(), store, EventBus(), RelayConfig(create_leads=False))
            await relay.handle_inbound(TENANT, self.make_message())
            assert store.leads == {}

        asyncio.run(run())

    def test_store_failure_still_publishes(self):
        async def run():
            bus = EventBus()
            sub = bus.subscribe(TENANT)
            relay = MessageRelay(SessionRegistry(), BrokenStore(), bus)

            record = await relay.handle_inbound(TENANT, self.make_message())
            assert record is not None
            assert isinstance(sub.get_nowait(), MessageReceived)

        asyncio.run(run())
