"""Credential store adapter.

Loads and saves the opaque per-tenant credential blob emitted by the
protocol engine. The blob is never interpreted here.

Failures never propagate: a failed load means "log in again", a failed
save is recovered by the next credential update, which the engine emits
periodically.
"""

from typing import Any, Optional

from loguru import logger

from wa_gateway.store.base import PersistenceError, RecordStore


class CredentialStore:
    """Load/save credential blobs keyed by tenant id."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def load(self, tenant_id: str) -> Optional[dict[str, Any]]:
        """Load the credential blob for a tenant.

        Returns:
            The blob, or None when there is no prior identity (or the store
            could not be read).
        """
        try:
            blob = await self.store.get_credentials(tenant_id)
        except PersistenceError as e:
            logger.error(f"[{tenant_id}] Failed to load credentials, starting fresh: {e}")
            return None

        if blob is None:
            logger.info(f"[{tenant_id}] No stored credentials, new login required")
        return blob

    async def save(self, tenant_id: str, blob: dict[str, Any]) -> bool:
        """Persist the credential blob.

        Returns:
            True if the write succeeded.
        """
        try:
            await self.store.put_credentials(tenant_id, blob)
        except PersistenceError as e:
            logger.error(f"[{tenant_id}] Failed to save credentials: {e}")
            return False

        logger.debug(f"[{tenant_id}] Credentials saved")
        return True

    async def clear(self, tenant_id: str) -> bool:
        """Forget the tenant's identity after a logout.

        Returns:
            True if the blob was removed.
        """
        try:
            await self.store.delete_credentials(tenant_id)
        except PersistenceError as e:
            logger.error(f"[{tenant_id}] Failed to clear credentials: {e}")
            return False

        logger.info(f"[{tenant_id}] Credentials cleared")
        return True
