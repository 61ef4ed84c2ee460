"""Engine module - protocol engine boundary and the bridge engine."""

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
from wa_gateway.engine.bridge import BridgeConnection, BridgeEngine


def create_engine(config: EngineConfig) -> ProtocolEngine:
    """Create the protocol engine selected by ``engine.mode``."""
    return BridgeEngine(config)


__all__ = [
    "BridgeConnection",
    "BridgeEngine",
    "CloseReason",
    "ConnectionClosed",
    "ConnectionEvent",
    "ConnectionHandle",
    "ConnectionOpened",
    "CredentialsUpdated",
    "MessagesReceived",
    "ProtocolEngine",
    "ProtocolError",
    "ProtocolMessage",
    "ScanCodeIssued",
    "create_engine",
]
