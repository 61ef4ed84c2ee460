"""In-process record store."""

import copy
from datetime import datetime, timezone
from typing import Any, Optional

from wa_gateway.store.base import MessageRecord, RecordStore


class MemoryStore(RecordStore):
    """Keeps every record in dictionaries. Nothing survives a restart."""

    name = "memory"

    def __init__(self):
        self.credentials: dict[str, dict[str, Any]] = {}
        self.sessions: dict[str, dict[str, Any]] = {}
        self.messages: list[MessageRecord] = []
        self.leads: dict[tuple[str, str], dict[str, Any]] = {}

    async def get_credentials(self, tenant_id: str) -> Optional[dict[str, Any]]:
        blob = self.credentials.get(tenant_id)
        return copy.deepcopy(blob) if blob is not None else None

    async def put_credentials(self, tenant_id: str, blob: dict[str, Any]) -> None:
        self.credentials[tenant_id] = copy.deepcopy(blob)

    async def delete_credentials(self, tenant_id: str) -> None:
        self.credentials.pop(tenant_id, None)

    async def upsert_session(
        self,
        tenant_id: str,
        status: str,
        phone: Optional[str] = None,
    ) -> None:
        row = self.sessions.setdefault(tenant_id, {"asesor_id": tenant_id, "phone": None})
        row["status"] = status
        if phone is not None:
            row["phone"] = phone
        row["last_activity"] = datetime.now(timezone.utc).isoformat()

    async def get_session(self, tenant_id: str) -> Optional[dict[str, Any]]:
        row = self.sessions.get(tenant_id)
        return dict(row) if row else None

    async def list_sessions(self) -> list[dict[str, Any]]:
        return [dict(row) for row in self.sessions.values()]

    async def append_message(self, record: MessageRecord) -> None:
        self.messages.append(record)

    async def list_messages(self, tenant_id: str, counterparty: str) -> list[MessageRecord]:
        found = [
            m for m in self.messages
            if m.tenant_id == tenant_id and m.counterparty == counterparty
        ]
        return sorted(found, key=lambda m: m.timestamp)

    async def list_tenant_messages(self, tenant_id: str) -> list[MessageRecord]:
        found = [m for m in self.messages if m.tenant_id == tenant_id]
        return sorted(found, key=lambda m: m.timestamp, reverse=True)

    async def ensure_lead(
        self,
        tenant_id: str,
        phone: str,
        name: str,
        source: str = "whatsapp",
        status: str = "prospecto",
    ) -> bool:
        key = (tenant_id, phone)
        if key in self.leads:
            return False
        self.leads[key] = {
            "asesor_id": tenant_id,
            "phone": phone,
            "name": name,
            "source": source,
            "status": status,
        }
        return True
