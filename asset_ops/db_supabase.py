"""Supabase client for the asset inventory (records table, config table, realtime feed)."""
from typing import Any, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, Client, acreate_client, create_client

from .change_feed import ChangeEvent, EventCallback, RemoteBackend, RemoteSyncError

ASSETS_TABLE = "assets"
CONFIG_TABLE = "app_config"

SETUP_SQL = """
-- 1. Create Assets Table
create table if not exists assets (
  id text primary key,
  data jsonb not null,
  created_at timestamp with time zone default timezone('utc'::text, now()) not null
);

-- 2. Create Config Table
create table if not exists app_config (
  key text primary key,
  value jsonb not null
);

-- 3. Enable RLS but allow Public Access (Simplest for this app)
alter table assets enable row level security;
alter table app_config enable row level security;

-- 4. Policies to allow ALL operations (Select, Insert, Update, Delete)
create policy "Public Assets Access" on assets for all using (true) with check (true);
create policy "Public Config Access" on app_config for all using (true) with check (true);

-- 5. Enable Realtime (Vital for instant updates!)
alter publication supabase_realtime add table assets;
alter publication supabase_realtime add table app_config;
"""


class SupabaseBackend(RemoteBackend):
    """Synchronous table access plus an async realtime subscription."""

    def __init__(self, url: str, key: str) -> None:
        self.url = url.rstrip("/")
        self.key = key
        try:
            self.client: Client = create_client(self.url, self.key)
        except Exception as e:
            raise RemoteSyncError(f"Cannot create Supabase client: {e}") from e
        self._async_client: Optional[AsyncClient] = None
        self._channel = None
        print(f"✅ Supabase backend initialized: {self.url}")

    def _run(self, what: str, builder) -> Any:
        try:
            return builder.execute()
        except (APIError, httpx.HTTPError) as e:
            message = getattr(e, "message", None) or str(e)
            print(f"❌ Supabase {what} failed: {message}")
            raise RemoteSyncError(f"{what} failed: {message}") from e

    # ========== RECORDS ==========

    def fetch_records(self) -> List[Dict[str, Any]]:
        response = self._run("Assets Sync", self.client.table(ASSETS_TABLE).select("*"))
        rows = response.data or []
        # Map the jsonb 'data' column back to a flat record
        return [{**(row.get("data") or {}), "id": str(row["id"])} for row in rows]

    def upsert_record(self, identity: str, data: Dict[str, Any]) -> None:
        self._run("Asset save", self.client.table(ASSETS_TABLE).upsert({"id": str(identity), "data": data}))

    def delete_record(self, identity: str) -> None:
        self._run("Asset delete", self.client.table(ASSETS_TABLE).delete().eq("id", str(identity)))

    # ========== CONFIG ==========

    def fetch_config(self) -> Dict[str, Any]:
        response = self._run("Config Sync", self.client.table(CONFIG_TABLE).select("*"))
        return {row["key"]: row.get("value") for row in (response.data or [])}

    def upsert_config(self, key: str, value: Any) -> None:
        self._run(f"Config save ({key})", self.client.table(CONFIG_TABLE).upsert({"key": key, "value": value}))

    # ========== REALTIME ==========

    async def subscribe(self, on_event: EventCallback) -> None:
        """Subscribe to every change on the assets table."""

        def handle(payload: Dict[str, Any]) -> None:
            try:
                event = ChangeEvent.from_payload(payload)
            except ValueError as e:
                print(f"⚠️  Ignoring malformed realtime payload: {e}")
                return
            on_event(event)

        def on_status(status, err=None) -> None:
            state = getattr(status, "value", status)
            if state == "SUBSCRIBED":
                print("✅ Realtime subscription active")
            elif err:
                print(f"❌ Realtime subscription error: {err}")

        try:
            self._async_client = await acreate_client(self.url, self.key)
            self._channel = self._async_client.channel(f"public:{ASSETS_TABLE}")
            self._channel.on_postgres_changes("*", schema="public", table=ASSETS_TABLE, callback=handle)
            await self._channel.subscribe(on_status)
        except Exception as e:
            self._channel = None
            raise RemoteSyncError(f"Realtime subscription failed: {e}") from e

    async def unsubscribe(self) -> None:
        if self._async_client and self._channel:
            await self._async_client.remove_channel(self._channel)
            print("🔌 Realtime subscription closed")
        self._channel = None
        self._async_client = None
