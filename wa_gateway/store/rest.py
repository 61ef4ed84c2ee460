"""PostgREST record store (Supabase compatible).

Tables (columns):
- whatsapp_sessions: asesor_id (unique), status, phone, last_activity
- whatsapp_credentials: asesor_id (unique), creds (jsonb), updated_at
- whatsapp_messages: id, asesor_id, phone, message, direction, timestamp, status
- leads: id, asesor_id, phone, name, source, status
"""

from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from loguru import logger

from wa_gateway.config.schema import StoreConfig
from wa_gateway.store.base import MessageRecord, PersistenceError, RecordStore


class RestStore(RecordStore):
    """Record store backed by a PostgREST HTTP API."""

    name = "rest"

    def __init__(self, config: StoreConfig, client: Optional[httpx.AsyncClient] = None):
        if not config.rest_url:
            raise ValueError("store.rest_url is not configured")
        self.config = config
        self.base_url = config.rest_url.rstrip("/") + "/rest/v1"
        self._http = client

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.config.timeout_s,
                headers={
                    "apikey": self.config.rest_key,
                    "Authorization": f"Bearer {self.config.rest_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._http

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[dict[str, str]] = None,
        json_body: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client().request(
                method,
                f"/{table}",
                params=params,
                json=json_body,
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"[RestStore] {method} {table} failed: {e}")
            raise PersistenceError(f"{method} {table}: {e}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.warning(f"[RestStore] {method} {table} returned a non-JSON body: {e}")
            raise PersistenceError(f"{method} {table}: invalid JSON response") from e

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # -- credentials ---------------------------------------------------------

    async def get_credentials(self, tenant_id: str) -> Optional[dict[str, Any]]:
        rows = await self._request(
            "GET",
            self.config.credentials_table,
            params={"asesor_id": f"eq.{tenant_id}", "select": "creds"},
        )
        if not rows:
            return None
        return rows[0].get("creds")

    async def put_credentials(self, tenant_id: str, blob: dict[str, Any]) -> None:
        await self._request(
            "POST",
            self.config.credentials_table,
            params={"on_conflict": "asesor_id"},
            json_body={
                "asesor_id": tenant_id,
                "creds": blob,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def delete_credentials(self, tenant_id: str) -> None:
        await self._request(
            "DELETE",
            self.config.credentials_table,
            params={"asesor_id": f"eq.{tenant_id}"},
            prefer="return=minimal",
        )

    # -- session status ------------------------------------------------------

    async def upsert_session(
        self,
        tenant_id: str,
        status: str,
        phone: Optional[str] = None,
    ) -> None:
        row: dict[str, Any] = {
            "asesor_id": tenant_id,
            "status": status,
            "last_activity": datetime.now(timezone.utc).isoformat(),
        }
        if phone is not None:
            row["phone"] = phone
        await self._request(
            "POST",
            self.config.sessions_table,
            params={"on_conflict": "asesor_id"},
            json_body=row,
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def get_session(self, tenant_id: str) -> Optional[dict[str, Any]]:
        rows = await self._request(
            "GET",
            self.config.sessions_table,
            params={"asesor_id": f"eq.{tenant_id}", "select": "*"},
        )
        return rows[0] if rows else None

    async def list_sessions(self) -> list[dict[str, Any]]:
        rows = await self._request(
            "GET",
            self.config.sessions_table,
            params={"select": "*", "order": "last_activity.desc"},
        )
        return rows or []

    # -- messages ------------------------------------------------------------

    async def append_message(self, record: MessageRecord) -> None:
        row = record.to_dict()
        row.pop("id", None)
        await self._request(
            "POST",
            self.config.messages_table,
            json_body=row,
            prefer="return=minimal",
        )

    async def list_messages(self, tenant_id: str, counterparty: str) -> list[MessageRecord]:
        rows = await self._request(
            "GET",
            self.config.messages_table,
            params={
                "asesor_id": f"eq.{tenant_id}",
                "phone": f"eq.{counterparty}",
                "select": "*",
                "order": "timestamp.asc",
            },
        )
        return [MessageRecord.from_dict(row) for row in rows or []]

    async def list_tenant_messages(self, tenant_id: str) -> list[MessageRecord]:
        rows = await self._request(
            "GET",
            self.config.messages_table,
            params={
                "asesor_id": f"eq.{tenant_id}",
                "select": "*",
                "order": "timestamp.desc",
            },
        )
        return [MessageRecord.from_dict(row) for row in rows or []]

    # -- leads ---------------------------------------------------------------

    async def ensure_lead(
        self,
        tenant_id: str,
        phone: str,
        name: str,
        source: str = "whatsapp",
        status: str = "prospecto",
    ) -> bool:
        rows = await self._request(
            "GET",
            self.config.leads_table,
            params={
                "asesor_id": f"eq.{tenant_id}",
                "phone": f"eq.{phone}",
                "select": "id",
                "limit": "1",
            },
        )
        if rows:
            return False

        await self._request(
            "POST",
            self.config.leads_table,
            json_body={
                "asesor_id": tenant_id,
                "phone": phone,
                "name": name,
                "source": source,
                "status": status,
            },
            prefer="return=minimal",
        )
        return True
