"""Event bus module."""

from wa_gateway.bus.events import (
    GatewayEvent,
    MessageReceived,
    ScanCodeReady,
    SessionClosed,
    SessionConnected,
)
from wa_gateway.bus.queue import EventBus, Subscription

__all__ = [
    "EventBus",
    "GatewayEvent",
    "MessageReceived",
    "ScanCodeReady",
    "SessionClosed",
    "SessionConnected",
    "Subscription",
]
