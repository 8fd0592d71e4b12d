"""Application state: one object owning the store, schema, users, sessions and backend link."""
from __future__ import annotations

import asyncio
import secrets
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from . import analytics
from .assistant import Assistant
from .auth import GRANTED, AuthorizationResult, User, UserDirectory, invalid, require_admin, require_editor
from .change_feed import ChangeEvent, RemoteBackend, RemoteSyncError
from .config import EXPORTS_DIR, GEMINI_API_KEY, SUPABASE_KEY, SUPABASE_URL
from .db_supabase import SupabaseBackend
from .csv_io import (
    ImportFormatError,
    decode_upload,
    export_csv_text,
    export_excel,
    export_filename,
    read_delimited_rows,
    read_excel_rows,
)
from .local_cache import (
    API_KEY_KEY,
    COLUMNS_KEY,
    DB_CONFIG_KEY,
    INVENTORY_KEY,
    SESSION_KEY,
    USERS_KEY,
    LocalCache,
)
from .notifications import NotificationFeed
from .reconciler import Dispatcher, Reconciler, run_inline
from .record_store import Record, RecordStore
from .schema import SchemaRegistry, default_fields

COLUMNS_CONFIG = "columns"
USERS_CONFIG = "users_list"

DEFAULT_RECORDS = (
    {"id": "1", "date": "2025-11-20", "assetId": "1", "materialType": "BMU", "modelVariant": "11kV DC", "nos": 2,
     "circle": "HIMMATANAGAR", "division": "AGIYOL", "substation": "", "status": "Installed",
     "assignedTo": "HARDIK THAKOR", "plannedDate": "2025-11-20", "replacementDate": "",
     "remarks": "REQUESTED TO SEND TO AKASH VAIRAGI", "lastUpdatedBy": "ADITYA"},
    {"id": "2", "date": "2025-11-20", "assetId": "2", "materialType": "BMU", "modelVariant": "11kV DC", "nos": 1,
     "circle": "HIMMATANAGAR", "division": "DHANSURA", "substation": "", "status": "Spare",
     "assignedTo": "PIYUSH", "plannedDate": "", "replacementDate": "", "remarks": "11KV RDSS",
     "lastUpdatedBy": "ADITYA"},
    {"id": "3", "date": "2025-11-20", "assetId": "3", "materialType": "BMU", "modelVariant": "11kV DC", "nos": 1,
     "circle": "HIMMATANAGAR", "division": "AGIYOL", "substation": "RAYGADH", "status": "Installed",
     "assignedTo": "HARSVARDHAN", "plannedDate": "2025-11-20", "replacementDate": "", "remarks": "",
     "lastUpdatedBy": "ADITYA"},
    {"id": "4", "date": "2025-11-20", "assetId": "4", "materialType": "BMU", "modelVariant": "66kV", "nos": 1,
     "circle": "HIMMATANAGAR", "division": "IDAR", "substation": "", "status": "Spare", "assignedTo": "DAKSH",
     "plannedDate": "", "replacementDate": "", "remarks": "", "lastUpdatedBy": "ADITYA"},
    {"id": "5", "date": "2025-11-20", "assetId": "5", "materialType": "BMU", "modelVariant": "11kV DC", "nos": 1,
     "circle": "HIMMATANAGAR", "division": "IDAR", "substation": "HINGATIYA", "status": "Installed",
     "assignedTo": "DAKSH", "plannedDate": "2025-11-20", "replacementDate": "", "remarks": "11kV PANCHMAHUDA",
     "lastUpdatedBy": "ADITYA"},
)

BackendFactory = Callable[[str, str], RemoteBackend]


class AppState:
    """Everything a request handler needs, with all mutation routed through the reconciler.

    Operations that depend on who is asking take the acting ``User``; the
    HTTP layer resolves it from the caller's session token.
    """

    def __init__(
        self,
        cache: Optional[LocalCache] = None,
        backend_factory: BackendFactory = SupabaseBackend,
        dispatch: Dispatcher = run_inline,
        assistant: Optional[Assistant] = None,
    ) -> None:
        self.cache = cache if cache is not None else LocalCache()
        self.backend_factory = backend_factory
        self.feed = NotificationFeed()
        self.assistant = assistant or Assistant()

        self.store = RecordStore(DEFAULT_RECORDS)
        self.schema = SchemaRegistry(on_change=self._columns_changed)
        self.users = UserDirectory(on_change=self._users_changed)
        self.reconciler = Reconciler(self.store, self.schema, self.feed, cache=self.cache, dispatch=dispatch)

        # session token -> username
        self.sessions: Dict[str, str] = {}
        self.db_config: Optional[Dict[str, str]] = None
        self.db_error: Optional[str] = None
        self.loading = False

        self._load_local()

    # ------------------------------------------------------------------
    # Local cache
    # ------------------------------------------------------------------
    def _load_local(self) -> None:
        records = self.cache.get_json(INVENTORY_KEY)
        if isinstance(records, list):
            self.store.bulk_load(r for r in records if isinstance(r, dict) and r.get("id"))
        columns = self.cache.get_json(COLUMNS_KEY)
        if isinstance(columns, list):
            self.schema.load(columns)
        users = self.cache.get_json(USERS_KEY)
        if isinstance(users, list):
            self.users.load(users)
        saved = self.cache.get_json(SESSION_KEY)
        tokens = saved.get("tokens") if isinstance(saved, dict) else None
        if isinstance(tokens, dict):
            self.sessions = {str(t): str(u) for t, u in tokens.items() if isinstance(u, str)}

    def _save_sessions(self) -> None:
        self.cache.set_json(SESSION_KEY, {"tokens": self.sessions})

    def _columns_changed(self, columns: List[Dict[str, Any]]) -> None:
        self.cache.set_json(COLUMNS_KEY, columns)
        self.reconciler.push_config(COLUMNS_CONFIG, columns)

    def _users_changed(self, users: List[Dict[str, Any]]) -> None:
        self.cache.set_json(USERS_KEY, users)
        self.reconciler.push_config(USERS_CONFIG, users)

    @property
    def api_key(self) -> str:
        return self.cache.get(API_KEY_KEY) or GEMINI_API_KEY

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def login(self, username: str, password: str, api_key: str = "") -> Tuple[str, User]:
        """Returns ``(token, user)``. Raises ``AuthenticationError`` on a bad pair."""
        user = self.users.authenticate(username, password)
        token = secrets.token_urlsafe(32)
        self.sessions[token] = user.username
        self._save_sessions()
        if api_key and api_key.strip():
            self.cache.set(API_KEY_KEY, api_key.strip())
        print(f"✅ Logged in: {user.username} ({user.role})")
        return token, user

    def logout(self, token: Optional[str]) -> None:
        if token and self.sessions.pop(token, None) is not None:
            self._save_sessions()

    def user_for(self, token: Optional[str]) -> Optional[User]:
        """The user behind a session token. Deleted users lose their sessions."""
        if not token:
            return None
        username = self.sessions.get(token)
        return self.users.find(username) if username else None

    # ------------------------------------------------------------------
    # Backend connection
    # ------------------------------------------------------------------
    @property
    def connected(self) -> bool:
        return self.reconciler.remote is not None

    def saved_db_config(self) -> Optional[Dict[str, str]]:
        saved = self.cache.get_json(DB_CONFIG_KEY)
        if isinstance(saved, dict) and saved.get("url") and saved.get("key"):
            return {"url": saved["url"], "key": saved["key"]}
        if SUPABASE_URL and SUPABASE_KEY:
            return {"url": SUPABASE_URL, "key": SUPABASE_KEY}
        return None

    def attach_backend(self, url: str, key: str) -> bool:
        """Create the backend client and remember the config. Does not sync."""
        self.db_error = None
        try:
            backend = self.backend_factory(url, key)
        except RemoteSyncError as e:
            print(f"❌ Backend connection failed: {e}")
            self.db_error = str(e)
            return False
        self.db_config = {"url": url, "key": key}
        self.cache.set_json(DB_CONFIG_KEY, self.db_config)
        self.reconciler.remote = backend
        print(f"🔌 Connected to backend: {url}")
        return True

    async def connect_backend(self, url: str, key: str) -> bool:
        """Attach the backend and pull a first snapshot. False if the client could not be created."""
        if not self.attach_backend(url, key):
            return False
        await self.refresh_from_remote()
        return True

    def disconnect_backend(self) -> Optional[RemoteBackend]:
        """Forget the backend; returns it so the caller can close its feed."""
        backend = self.reconciler.remote
        self.reconciler.remote = None
        self.db_config = None
        self.db_error = None
        self.cache.remove(DB_CONFIG_KEY)
        if backend is not None:
            backend.close()
            print("🔌 Disconnected from backend, local mode")
        return backend

    def fetch_remote_snapshot(self) -> Dict[str, Any]:
        remote = self.reconciler.remote
        if remote is None:
            raise RemoteSyncError("No backend configured.")
        print("📥 Fetching remote snapshot...")
        return {"records": remote.fetch_records(), "config": remote.fetch_config()}

    def apply_remote_snapshot(self, snapshot: Dict[str, Any]) -> None:
        records = snapshot.get("records") or []
        # An empty remote table leaves the local records alone
        if records:
            self.reconciler.load_snapshot(records)
        config = snapshot.get("config") or {}
        if isinstance(config.get(COLUMNS_CONFIG), list):
            self.schema.load(config[COLUMNS_CONFIG])
            self.cache.set_json(COLUMNS_KEY, self.schema.to_list())
        if isinstance(config.get(USERS_CONFIG), list):
            self.users.load(config[USERS_CONFIG])
            self.cache.set_json(USERS_KEY, self.users.to_list())
        print(f"✅ Remote snapshot applied: {len(records)} records")

    def fall_back_to_cache(self, error: Exception) -> None:
        print(f"❌ DB Sync Error: {error}")
        self.db_error = str(error) or "Unknown Connection Error"
        records = self.cache.get_json(INVENTORY_KEY)
        if isinstance(records, list):
            self.store.bulk_load(r for r in records if isinstance(r, dict) and r.get("id"))

    async def refresh_from_remote(self) -> bool:
        """Fetch off the event loop, then apply the snapshot on it."""
        self.loading = True
        self.db_error = None
        try:
            snapshot = await asyncio.to_thread(self.fetch_remote_snapshot)
            self.apply_remote_snapshot(snapshot)
            return True
        except RemoteSyncError as e:
            self.fall_back_to_cache(e)
            return False
        finally:
            self.loading = False

    def db_status(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "url": (self.db_config or {}).get("url"),
            "loading": self.loading,
            "error": self.db_error,
        }

    # ------------------------------------------------------------------
    # Remote events
    # ------------------------------------------------------------------
    def apply_change_event(self, event: ChangeEvent) -> bool:
        return self.reconciler.apply_event(event)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    def new_record_defaults(self, actor: Optional[User]) -> Dict[str, Any]:
        defaults: Dict[str, Any] = {"date": date.today().isoformat()}
        if "nos" in self.schema:
            defaults["nos"] = 1
        if "status" in self.schema:
            defaults["status"] = "Spare"
        if "lastUpdatedBy" in self.schema:
            defaults["lastUpdatedBy"] = actor.username if actor else "USER"
        return defaults

    def add_record(self, actor: Optional[User], fields: Dict[str, Any]) -> Tuple[AuthorizationResult, Optional[Record]]:
        check = require_editor(actor)
        if not check:
            return check, None
        record = self.reconciler.local_add(fields)
        self.feed.info("Record added to database.")
        return GRANTED, record

    def replace_record(self, actor: Optional[User], identity: str,
                       fields: Dict[str, Any]) -> Tuple[AuthorizationResult, Optional[Record]]:
        check = require_editor(actor)
        if not check:
            return check, None
        return GRANTED, self.reconciler.local_replace(identity, fields)

    def update_status(self, actor: Optional[User], identity: str,
                      status: str) -> Tuple[AuthorizationResult, Optional[Record]]:
        check = require_editor(actor)
        if not check:
            return check, None
        record = self.reconciler.local_edit(identity, {"status": status})
        if record is not None:
            self.feed.info(f"Status updated to {status}.")
        return GRANTED, record

    def delete_record(self, actor: Optional[User], identity: str) -> AuthorizationResult:
        check = require_editor(actor)
        if not check:
            return check
        self.reconciler.local_delete(identity)
        return GRANTED

    def _import(self, read_rows: Callable[[], List[List[Any]]]) -> Tuple[AuthorizationResult, List[Record]]:
        try:
            rows = read_rows()
        except ImportFormatError as e:
            print(f"⚠️  Import rejected: {e}")
            self.feed.error(f"Import Error: {e}")
            return invalid(str(e)), []
        return GRANTED, self.reconciler.import_rows(rows)

    def import_text(self, actor: Optional[User], content: Union[bytes, str]) -> Tuple[AuthorizationResult, List[Record]]:
        check = require_editor(actor)
        if not check:
            return check, []
        return self._import(lambda: read_delimited_rows(decode_upload(content)))

    def import_excel(self, actor: Optional[User], content: bytes) -> Tuple[AuthorizationResult, List[Record]]:
        check = require_editor(actor)
        if not check:
            return check, []
        return self._import(lambda: read_excel_rows(content))

    def history(self, start: Optional[str] = None, end: Optional[str] = None) -> List[Record]:
        return analytics.date_range(self.store.query(), start, end)

    def export_csv(self, start: Optional[str] = None, end: Optional[str] = None) -> str:
        return export_csv_text(self.history(start, end), self.schema.fields)

    def export_excel(self, start: Optional[str] = None, end: Optional[str] = None,
                     directory: Optional[Path] = None) -> str:
        directory = Path(directory or EXPORTS_DIR)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / export_filename("xlsx")
        return export_excel(self.history(start, end), self.schema.fields, path)

    def reset_local_data(self, actor: Optional[User]) -> AuthorizationResult:
        check = require_admin(actor)
        if not check:
            return check
        self.cache.remove(INVENTORY_KEY)
        self.cache.remove(COLUMNS_KEY)
        self.store.bulk_load(DEFAULT_RECORDS)
        self.schema.load(f.to_dict() for f in default_fields())
        self.feed.info("Local Data Reset Complete.")
        return GRANTED

    # ------------------------------------------------------------------
    # Users (privilege checks live in the directory)
    # ------------------------------------------------------------------
    def list_users(self, actor: Optional[User]) -> Tuple[AuthorizationResult, List[Dict[str, Any]]]:
        check = require_admin(actor)
        if not check:
            return check, []
        return GRANTED, [{"username": u.username, "role": u.role} for u in self.users.users]
