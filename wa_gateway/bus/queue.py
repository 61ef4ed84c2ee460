"""Per-tenant event bus."""

import asyncio
import itertools
from typing import Awaitable, Callable, Optional

from loguru import logger

from wa_gateway.bus.events import GatewayEvent


Listener = Callable[[GatewayEvent], Awaitable[None]]

_CLOSED = object()


class Subscription:
    """
    A delivery target registered under one tenant id.

    Each subscription owns a bounded queue. Consume it either as an async
    iterator or by passing a listener to ``EventBus.subscribe``, in which
    case the bus drains the queue into the listener in a background task.

    Usage:
        sub = bus.subscribe("advisor-1")
        async for event in sub:
            ...
    """

    def __init__(self, subscription_id: int, tenant_id: str, max_size: int = 100):
        self.id = subscription_id
        self.tenant_id = tenant_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_size)
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    def offer(self, event: GatewayEvent) -> bool:
        """Enqueue an event without waiting. Returns False if dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.warning(
                f"[{self.tenant_id}] Subscription {self.id} queue full, dropping {event.type}"
            )
            return False

    async def get(self, timeout: Optional[float] = None) -> Optional[GatewayEvent]:
        """
        Wait for the next event.

        Args:
            timeout: Optional timeout in seconds.

        Returns:
            The next event, or None once the subscription is closed.

        Raises:
            asyncio.TimeoutError: If timeout is reached.
        """
        if self._closed and self._queue.empty():
            return None
        if timeout is not None:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        else:
            item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def get_nowait(self) -> Optional[GatewayEvent]:
        """Return a queued event, or None when nothing is pending."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return None if item is _CLOSED else item

    def close(self) -> None:
        """Stop accepting events and wake up any waiting consumer.

        Events queued before the close are still handed out, so a listener
        task drains them and exits when it reaches the end marker.
        """
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # Consumer is behind; drop one pending event to make room for the sentinel
            self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> GatewayEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def __repr__(self) -> str:
        status = "closed" if self._closed else "open"
        return f"<Subscription id={self.id} tenant={self.tenant_id} status={status}>"


class EventBus:
    """
    In-process publish/subscribe keyed by tenant id.

    Delivery is best-effort and at most once per live subscriber. Publishing
    to a tenant with no subscribers is a no-op. Publishing never waits on a
    slow subscriber: when its queue is full the event is dropped for that
    subscriber only.

    Usage:
        bus = EventBus()

        # Frontend transport subscribes
        sub = bus.subscribe("advisor-1", listener=push_to_socket)

        # Lifecycle controller publishes
        await bus.publish("advisor-1", SessionConnected("advisor-1", phone="555"))

        bus.unsubscribe(sub)
    """

    def __init__(self, max_queue_size: int = 100):
        """
        Initialize the event bus.

        Args:
            max_queue_size: Maximum pending events per subscription.
        """
        self.max_queue_size = max_queue_size
        self._subscribers: dict[str, dict[int, Subscription]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, tenant_id: str, listener: Optional[Listener] = None) -> Subscription:
        """
        Register a delivery target for a tenant.

        The subscription may be created before any session exists for the
        tenant; it simply receives nothing until one starts.

        Args:
            tenant_id: Tenant to listen to.
            listener: Optional async callback. When given, a background task
                      invokes it for every event in emission order.

        Returns:
            The subscription handle, also used to unsubscribe.
        """
        sub = Subscription(next(self._ids), tenant_id, max_size=self.max_queue_size)
        self._subscribers.setdefault(tenant_id, {})[sub.id] = sub

        if listener is not None:
            sub._task = asyncio.create_task(self._deliver(sub, listener))

        logger.debug(f"[{tenant_id}] Subscription {sub.id} added")
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription. Unknown or already removed handles are ignored."""
        tenant_subs = self._subscribers.get(subscription.tenant_id)
        if tenant_subs and tenant_subs.pop(subscription.id, None) is not None:
            logger.debug(f"[{subscription.tenant_id}] Subscription {subscription.id} removed")
            if not tenant_subs:
                del self._subscribers[subscription.tenant_id]
        subscription.close()

    async def publish(self, tenant_id: str, event: GatewayEvent) -> int:
        """
        Publish an event to every subscriber of a tenant.

        Args:
            tenant_id: Target tenant.
            event: The event to deliver.

        Returns:
            Number of subscribers that accepted the event.
        """
        tenant_subs = self._subscribers.get(tenant_id)
        if not tenant_subs:
            return 0

        delivered = 0
        for sub in list(tenant_subs.values()):
            if sub.offer(event):
                delivered += 1

        logger.debug(f"[{tenant_id}] Published {event.type} to {delivered} subscriber(s)")
        return delivered

    async def _deliver(self, sub: Subscription, listener: Listener) -> None:
        """Drain a subscription into its listener."""
        try:
            async for event in sub:
                try:
                    await listener(event)
                except Exception as e:
                    logger.error(
                        f"[{sub.tenant_id}] Listener of subscription {sub.id} failed on {event.type}: {e}"
                    )
        except asyncio.CancelledError:
            pass

    def subscriber_count(self, tenant_id: str) -> int:
        return len(self._subscribers.get(tenant_id, {}))

    def clear(self) -> None:
        """Close every subscription."""
        for tenant_subs in list(self._subscribers.values()):
            for sub in list(tenant_subs.values()):
                self.unsubscribe(sub)
        logger.info("Event bus cleared")
