"""Tests for the per-tenant event bus."""

import asyncio

from wa_gateway.bus.events import MessageReceived, ScanCodeReady, SessionClosed, SessionConnected
from wa_gateway.bus.queue import EventBus


class TestEvents:
    def test_wire_payloads(self):
        assert ScanCodeReady("a", image="img").to_dict() == {
            "type": "QR_GENERATED", "tenantId": "a", "qr": "img",
        }
        assert SessionConnected("a", phone="555").to_dict() == {
            "type": "SESSION_CONNECTED", "tenantId": "a", "phone": "555",
        }
        assert SessionClosed("a").to_dict() == {"type": "SESSION_CLOSED", "tenantId": "a"}

        data = MessageReceived("a", sender="521", text="hola").to_dict()
        assert data["type"] == "MESSAGE_RECEIVED"
        assert data["phone"] == "521"
        assert data["message"] == "hola"
        assert isinstance(data["timestamp"], str)


class TestPublish:
    def test_publish_without_subscribers_is_noop(self):
        async def run():
            bus = EventBus()
            assert await bus.publish("a", SessionClosed("a")) == 0

        asyncio.run(run())

    def test_events_delivered_in_order_per_tenant(self):
        async def run():
            bus = EventBus()
            sub = bus.subscribe("a")
            other = bus.subscribe("b")

            await bus.publish("a", ScanCodeReady("a", image="1"))
            await bus.publish("a", SessionConnected("a", phone="555"))

            assert isinstance(await sub.get(timeout=1), ScanCodeReady)
            assert isinstance(await sub.get(timeout=1), SessionConnected)
            assert other.get_nowait() is None

        asyncio.run(run())

    def test_every_subscriber_receives(self):
        async def run():
            bus = EventBus()
            subs = [bus.subscribe("a") for _ in range(3)]
            assert await bus.publish("a", SessionClosed("a")) == 3
            for sub in subs:
                assert isinstance(sub.get_nowait(), SessionClosed)

        asyncio.run(run())

    def test_full_queue_drops_for_slow_subscriber_only(self):
        async def run():
            bus = EventBus(max_queue_size=1)
            slow = bus.subscribe("a")
            fast = bus.subscribe("a")

            assert await bus.publish("a", ScanCodeReady("a", image="1")) == 2
            fast.get_nowait()
            assert await bus.publish("a", ScanCodeReady("a", image="2")) == 1

            assert slow.get_nowait().image == "1"
            assert fast.get_nowait().image == "2"

        asyncio.run(run())


class TestSubscriptions:
    def test_unsubscribe_stops_delivery(self):
        async def run():
            bus = EventBus()
            sub = bus.subscribe("a")
            bus.unsubscribe(sub)

            assert bus.subscriber_count("a") == 0
            assert await bus.publish("a", SessionClosed("a")) == 0
            assert sub.closed
            assert await sub.get() is None

        asyncio.run(run())

    def test_unsubscribe_twice_is_harmless(self):
        async def run():
            bus = EventBus()
            sub = bus.subscribe("a")
            bus.unsubscribe(sub)
            bus.unsubscribe(sub)

        asyncio.run(run())

    def test_listener_receives_events(self):
        async def run():
            bus = EventBus()
            received = []

            async def listener(event):
                received.append(event.type)

            sub = bus.subscribe("a", listener=listener)
            await bus.publish("a", ScanCodeReady("a", image="1"))
            await bus.publish("a", SessionClosed("a"))
            await asyncio.sleep(0.02)

            assert received == ["QR_GENERATED", "SESSION_CLOSED"]
            bus.unsubscribe(sub)

        asyncio.run(run())

    def test_failing_listener_keeps_receiving(self):
        async def run():
            bus = EventBus()
            received = []

            async def listener(event):
                received.append(event.type)
                if len(received) == 1:
                    raise RuntimeError("socket closed")

            bus.subscribe("a", listener=listener)
            await bus.publish("a", SessionClosed("a"))
            await bus.publish("a", SessionClosed("a"))
            await asyncio.sleep(0.02)

            assert len(received) == 2
            bus.clear()

        asyncio.run(run())

    def test_unsubscribe_drains_queued_events_into_listener(self):
        async def run():
            bus = EventBus()
            received = []

            async def listener(event):
                received.append(event.type)

            sub = bus.subscribe("a", listener=listener)
            await bus.publish("a", ScanCodeReady("a", image="1"))
            await bus.publish("a", SessionConnected("a", phone="555"))
            await bus.publish("a", SessionClosed("a"))
            bus.unsubscribe(sub)
            await asyncio.wait_for(sub._task, timeout=1)

            assert received == ["QR_GENERATED", "SESSION_CONNECTED", "SESSION_CLOSED"]
            assert await bus.publish("a", SessionClosed("a")) == 0

        asyncio.run(run())

    def test_async_iteration_ends_on_close(self):
        async def run():
            bus = EventBus()
            sub = bus.subscribe("a")
            await bus.publish("a", SessionClosed("a"))
            bus.unsubscribe(sub)

            events = [event async for event in sub]
            assert [e.type for e in events] == ["SESSION_CLOSED"]

        asyncio.run(run())
