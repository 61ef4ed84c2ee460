"""Session record and state types."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class SessionState(str, Enum):
    """Lifecycle state of a tenant's session."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AWAITING_SCAN = "awaiting_scan"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


# States in which a start request must be rejected
ACTIVE_STATES = frozenset({
    SessionState.INITIALIZING,
    SessionState.AWAITING_SCAN,
    SessionState.CONNECTED,
    SessionState.DISCONNECTING,
})

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.UNINITIALIZED: frozenset({SessionState.INITIALIZING}),
    SessionState.INITIALIZING: frozenset({
        SessionState.AWAITING_SCAN,
        SessionState.CONNECTED,
        SessionState.DISCONNECTING,
        SessionState.DISCONNECTED,
        SessionState.FAILED,
    }),
    # Scan codes rotate while waiting
    SessionState.AWAITING_SCAN: frozenset({
        SessionState.AWAITING_SCAN,
        SessionState.CONNECTED,
        SessionState.DISCONNECTING,
        SessionState.DISCONNECTED,
    }),
    SessionState.CONNECTED: frozenset({
        SessionState.DISCONNECTING,
        SessionState.DISCONNECTED,
    }),
    SessionState.DISCONNECTING: frozenset({SessionState.DISCONNECTED}),
    SessionState.DISCONNECTED: frozenset({SessionState.INITIALIZING}),
    SessionState.FAILED: frozenset({SessionState.INITIALIZING, SessionState.DISCONNECTED}),
}


class InvalidTransitionError(Exception):
    """A state change not allowed by the lifecycle state machine."""

    def __init__(self, tenant_id: str, current: SessionState, target: SessionState):
        super().__init__(f"[{tenant_id}] invalid transition {current.value} -> {target.value}")
        self.tenant_id = tenant_id
        self.current = current
        self.target = target


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionRecord:
    """In-memory descriptor of a tenant's current session."""

    tenant_id: str
    state: SessionState = SessionState.UNINITIALIZED
    phone: Optional[str] = None
    """Resolved account identifier, set only while connected"""

    last_qr_image: Optional[str] = None
    """Most recent rendered scan code, present only while awaiting scan"""

    ever_completed_handshake: bool = False
    """True once any connected transition happened for this record"""

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def can_transition(self, target: SessionState) -> bool:
        return target in _TRANSITIONS[self.state]

    def transition(self, target: SessionState) -> None:
        """Move to ``target``, enforcing the state machine.

        Leaving ``awaiting_scan`` always clears the scan code, and the phone
        is only kept while connected.

        Raises:
            InvalidTransitionError: The transition is not allowed.
        """
        if not self.can_transition(target):
            raise InvalidTransitionError(self.tenant_id, self.state, target)

        self.state = target
        if target is not SessionState.AWAITING_SCAN:
            self.last_qr_image = None
        if target is not SessionState.CONNECTED:
            self.phone = None
        self.updated_at = _utcnow()

    def show_scan_code(self, image: str) -> None:
        self.transition(SessionState.AWAITING_SCAN)
        self.last_qr_image = image

    def mark_connected(self, phone: str) -> None:
        self.transition(SessionState.CONNECTED)
        self.phone = phone
        self.ever_completed_handshake = True

    @property
    def has_qr(self) -> bool:
        return bool(self.last_qr_image)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "tenantId": self.tenant_id,
            "state": self.state.value,
            "phone": self.phone,
            "hasQR": self.has_qr,
            "everCompletedHandshake": self.ever_completed_handshake,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class SessionStatus:
    """Status report served to the frontend."""

    state: str = SessionState.DISCONNECTED.value
    phone: Optional[str] = None
    has_qr: bool = False
    is_active: bool = False
    is_initializing: bool = False

    def to_dict(self) -> dict:
        return {
            "status": self.state,
            "phone": self.phone,
            "hasQR": self.has_qr,
            "isActive": self.is_active,
            "isInitializing": self.is_initializing,
        }
