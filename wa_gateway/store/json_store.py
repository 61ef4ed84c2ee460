"""JSON file record store.

Directory structure:
    {data_dir}/credentials/{tenant_id}.json
    {data_dir}/sessions/{tenant_id}.json
    {data_dir}/messages/{tenant_id}/{counterparty}.json
    {data_dir}/leads/{tenant_id}.json

Each message file contains:
{
    "asesor_id": "advisor-1",
    "phone": "5215550001",
    "messages": [
        {
            "id": "msg_xxx",
            "asesor_id": "advisor-1",
            "phone": "5215550001",
            "message": "hola",
            "direction": "incoming",
            "timestamp": "2026-02-26T10:30:00+00:00",
            "status": "received"
        }
    ]
}
"""

import asyncio
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar
from urllib.parse import quote

from loguru import logger

from wa_gateway.store.base import MessageRecord, PersistenceError, RecordStore


T = TypeVar("T")

def _safe_name(value: str) -> str:
    """Percent-encode an identifier into a file name.

    The encoding is reversible, so distinct ids never share a file. Dots are
    encoded as well, which keeps "." and ".." from naming a directory.
    """
    if not value:
        raise ValueError("empty identifier")
    return quote(value, safe="@+-_").replace(".", "%2E")


class JsonFileStore(RecordStore):
    """Stores records as JSON files under a data directory.

    Blocking file I/O runs in a worker thread so other tenants' events keep
    flowing while a write is in progress.
    """

    name = "json"

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    def _dir(self, *parts: str) -> Path:
        dir_path = self.data_dir.joinpath(*parts)
        dir_path.mkdir(parents=True, exist_ok=True)
        return dir_path

    def _credentials_file(self, tenant_id: str) -> Path:
        return self._dir("credentials") / f"{_safe_name(tenant_id)}.json"

    def _session_file(self, tenant_id: str) -> Path:
        return self._dir("sessions") / f"{_safe_name(tenant_id)}.json"

    def _messages_file(self, tenant_id: str, counterparty: str) -> Path:
        return self._dir("messages", _safe_name(tenant_id)) / f"{_safe_name(counterparty)}.json"

    def _leads_file(self, tenant_id: str) -> Path:
        return self._dir("leads") / f"{_safe_name(tenant_id)}.json"

    @staticmethod
    def _read(file_path: Path) -> Optional[Any]:
        if not file_path.exists():
            return None
        with open(file_path, "r", encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _write(file_path: Path, data: Any) -> None:
        tmp_path = file_path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        tmp_path.replace(file_path)

    async def _run(self, func: Callable[[], T]) -> T:
        """Run a blocking file operation in a thread, mapping I/O errors."""
        def locked() -> T:
            with self._lock:
                return func()

        try:
            return await asyncio.to_thread(locked)
        except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"[JsonFileStore] I/O failure under {self.data_dir}: {e}")
            raise PersistenceError(str(e)) from e

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def get_credentials(self, tenant_id: str) -> Optional[dict[str, Any]]:
        return await self._run(lambda: self._read(self._credentials_file(tenant_id)))

    async def put_credentials(self, tenant_id: str, blob: dict[str, Any]) -> None:
        await self._run(lambda: self._write(self._credentials_file(tenant_id), blob))

    async def delete_credentials(self, tenant_id: str) -> None:
        await self._run(lambda: self._credentials_file(tenant_id).unlink(missing_ok=True))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def upsert_session(
        self,
        tenant_id: str,
        status: str,
        phone: Optional[str] = None,
    ) -> None:
        def upsert() -> None:
            file_path = self._session_file(tenant_id)
            row = self._read(file_path) or {"asesor_id": tenant_id, "phone": None}
            row["status"] = status
            if phone is not None:
                row["phone"] = phone
            row["last_activity"] = datetime.now(timezone.utc).isoformat()
            self._write(file_path, row)

        await self._run(upsert)

    async def get_session(self, tenant_id: str) -> Optional[dict[str, Any]]:
        return await self._run(lambda: self._read(self._session_file(tenant_id)))

    async def list_sessions(self) -> list[dict[str, Any]]:
        def list_all() -> list[dict[str, Any]]:
            rows = []
            for file_path in sorted(self._dir("sessions").glob("*.json")):
                try:
                    rows.append(self._read(file_path))
                except json.JSONDecodeError:
                    # Skip corrupt session files
                    continue
            return rows

        return await self._run(list_all)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(self, record: MessageRecord) -> None:
        def append() -> None:
            file_path = self._messages_file(record.tenant_id, record.counterparty)
            data = self._read(file_path) or {
                "asesor_id": record.tenant_id,
                "phone": record.counterparty,
                "messages": [],
            }
            data["messages"].append(record.to_dict())
            self._write(file_path, data)

        await self._run(append)

    async def list_messages(self, tenant_id: str, counterparty: str) -> list[MessageRecord]:
        def load() -> list[MessageRecord]:
            data = self._read(self._messages_file(tenant_id, counterparty)) or {}
            return [MessageRecord.from_dict(m) for m in data.get("messages", [])]

        messages = await self._run(load)
        return sorted(messages, key=lambda m: m.timestamp)

    async def list_tenant_messages(self, tenant_id: str) -> list[MessageRecord]:
        def load_all() -> list[MessageRecord]:
            messages = []
            for file_path in self._dir("messages", _safe_name(tenant_id)).glob("*.json"):
                data = self._read(file_path) or {}
                messages.extend(MessageRecord.from_dict(m) for m in data.get("messages", []))
            return messages

        messages = await self._run(load_all)
        return sorted(messages, key=lambda m: m.timestamp, reverse=True)

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    async def ensure_lead(
        self,
        tenant_id: str,
        phone: str,
        name: str,
        source: str = "whatsapp",
        status: str = "prospecto",
    ) -> bool:
        def ensure() -> bool:
            file_path = self._leads_file(tenant_id)
            data = self._read(file_path) or {"asesor_id": tenant_id, "leads": {}}
            if phone in data["leads"]:
                return False
            data["leads"][phone] = {
                "phone": phone,
                "name": name,
                "source": source,
                "status": status,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            self._write(file_path, data)
            return True

        return await self._run(ensure)
