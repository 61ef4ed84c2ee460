"""Session registry.

Authoritative mapping from tenant id to its session record and connection
handle. All mutation goes through ``try_begin``, ``complete``, ``attach``,
``detach`` and ``remove``; every operation runs under one lock so status
reads from other threads never see a half-applied change.
"""

import threading
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from wa_gateway.engine.base import ConnectionHandle
from wa_gateway.session.models import SessionRecord, SessionState


class AlreadyActiveError(Exception):
    """A start request was rejected because the tenant already has a live session."""

    def __init__(self, tenant_id: str):
        super().__init__(f"session already active for {tenant_id}")
        self.tenant_id = tenant_id


@dataclass
class RegistryEntry:
    record: SessionRecord
    handle: Optional[ConnectionHandle] = None


class SessionRegistry:
    """Tenant id -> (SessionRecord, ConnectionHandle).

    A tenant is *claimed* from an accepted ``try_begin`` until ``complete``
    is called (handshake finished, terminal disconnect, or retry
    scheduled). ``try_begin`` also refuses tenants whose record is in an
    active state, so a connected tenant cannot be started twice.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, RegistryEntry] = {}
        self._claimed: set[str] = set()

    def try_begin(self, tenant_id: str) -> bool:
        """Atomically claim a tenant for initialization.

        Returns:
            True if accepted. False (AlreadyActive) leaves the registry
            untouched.
        """
        with self._lock:
            if tenant_id in self._claimed:
                return False
            entry = self._entries.get(tenant_id)
            if entry is not None and entry.record.is_active:
                return False

            self._claimed.add(tenant_id)
            if entry is None:
                self._entries[tenant_id] = RegistryEntry(record=SessionRecord(tenant_id=tenant_id))
            return True

    def complete(self, tenant_id: str) -> None:
        """Release the initialization claim."""
        with self._lock:
            self._claimed.discard(tenant_id)

    def is_claimed(self, tenant_id: str) -> bool:
        with self._lock:
            return tenant_id in self._claimed

    def get(self, tenant_id: str) -> Optional[SessionRecord]:
        with self._lock:
            entry = self._entries.get(tenant_id)
            return entry.record if entry else None

    def attach(self, tenant_id: str, handle: ConnectionHandle) -> Optional[ConnectionHandle]:
        """Install the tenant's handle.

        Returns:
            The handle it replaced, which the caller must tear down.
        """
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is None:
                raise KeyError(tenant_id)
            previous, entry.handle = entry.handle, handle
        if previous is not None and previous is not handle:
            logger.warning(f"[{tenant_id}] Replacing an existing connection handle")
        return previous if previous is not handle else None

    def detach(self, tenant_id: str, handle: Optional[ConnectionHandle] = None) -> Optional[ConnectionHandle]:
        """Drop the tenant's handle (only if it is ``handle``, when given)."""
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is None or entry.handle is None:
                return None
            if handle is not None and entry.handle is not handle:
                return None
            detached, entry.handle = entry.handle, None
            return detached

    def handle(self, tenant_id: str) -> Optional[ConnectionHandle]:
        with self._lock:
            entry = self._entries.get(tenant_id)
            return entry.handle if entry else None

    def active_handle(self, tenant_id: str) -> Optional[ConnectionHandle]:
        """The tenant's handle, only while its session is connected."""
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is None or entry.record.state is not SessionState.CONNECTED:
                return None
            return entry.handle

    def remove(self, tenant_id: str) -> Optional[RegistryEntry]:
        with self._lock:
            self._claimed.discard(tenant_id)
            return self._entries.pop(tenant_id, None)

    def tenants(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __repr__(self) -> str:
        with self._lock:
            states = {tid: e.record.state.value for tid, e in self._entries.items()}
        return f"<SessionRegistry sessions={states}>"
