"""Shared fixtures: a scripted protocol engine and fast lifecycle settings."""

import asyncio
from typing import Any, Optional

import pytest

from wa_gateway.config.schema import Config, LifecycleConfig
from wa_gateway.engine.base import (
    ConnectionClosed,
    ConnectionEvent,
    ConnectionHandle,
    ProtocolEngine,
    ProtocolError,
)
from wa_gateway.store.memory import MemoryStore


class FakeHandle(ConnectionHandle):
    """A connection whose events are pushed by the test.

    ``emit`` returns once the consumer has finished processing the event
    and asked for the next one.
    """

    def __init__(self, tenant_id: str, credentials: Optional[dict[str, Any]]):
        super().__init__(tenant_id)
        self.credentials = credentials
        self.sent: list[tuple[str, str]] = []
        self.send_error: Optional[Exception] = None
        self.logged_out = False
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def emit(self, event: ConnectionEvent) -> None:
        await self._queue.put(event)
        await asyncio.wait_for(self._queue.join(), timeout=2.0)

    def push(self, event: ConnectionEvent) -> None:
        """Queue an event without waiting for it to be processed."""
        self._queue.put_nowait(event)

    async def events(self):
        while True:
            event = await self._queue.get()
            try:
                yield event
            finally:
                self._queue.task_done()
            if isinstance(event, ConnectionClosed):
                return

    async def send(self, recipient: str, text: str) -> Optional[str]:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((recipient, text))
        return f"wamid-{len(self.sent)}"

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True


class FakeEngine(ProtocolEngine):
    """Records every open call and hands out FakeHandles."""

    name = "fake"

    def __init__(self):
        self.handles: list[FakeHandle] = []
        self.open_calls: list[tuple[str, Optional[dict[str, Any]]]] = []
        self.fail_opens = 0

    async def open(self, tenant_id: str, credentials: Optional[dict[str, Any]]) -> ConnectionHandle:
        self.open_calls.append((tenant_id, credentials))
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise ProtocolError("engine unavailable")
        handle = FakeHandle(tenant_id, credentials)
        self.handles.append(handle)
        return handle

    @property
    def last(self) -> FakeHandle:
        return self.handles[-1]

    async def wait_for_opens(self, count: int, timeout: float = 2.0) -> None:
        """Wait until ``open`` has been called ``count`` times in total."""
        async def poll():
            while len(self.open_calls) < count:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(poll(), timeout=timeout)


def fast_lifecycle(**overrides) -> LifecycleConfig:
    values = {
        "reconnect_delay_s": 0.01,
        "stalled_retry_delay_s": 0.02,
        "backoff_factor": 1.0,
        "max_reconnect_delay_s": 0.05,
    }
    values.update(overrides)
    return LifecycleConfig(**values)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def config() -> Config:
    cfg = Config()
    cfg.store.backend = "memory"
    cfg.lifecycle = fast_lifecycle()
    return cfg
