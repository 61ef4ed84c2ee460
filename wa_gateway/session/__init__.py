"""Session module - records, registry and the manager facade.

``SessionManager`` lives in ``wa_gateway.session.manager``; it is not
re-exported here because the lifecycle package imports the registry.
"""

from wa_gateway.session.models import (
    ACTIVE_STATES,
    InvalidTransitionError,
    SessionRecord,
    SessionState,
    SessionStatus,
)
from wa_gateway.session.registry import AlreadyActiveError, RegistryEntry, SessionRegistry

__all__ = [
    "ACTIVE_STATES",
    "AlreadyActiveError",
    "InvalidTransitionError",
    "RegistryEntry",
    "SessionRecord",
    "SessionRegistry",
    "SessionState",
    "SessionStatus",
]
