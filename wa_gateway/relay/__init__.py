"""Message relay module."""

from wa_gateway.relay.relay import (
    MessageRelay,
    NoActiveSessionError,
    bare_identifier,
    extract_text,
    normalize_recipient,
)

__all__ = [
    "MessageRelay",
    "NoActiveSessionError",
    "bare_identifier",
    "extract_text",
    "normalize_recipient",
]
