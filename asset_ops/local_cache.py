"""JSON-file key/value cache used as the offline store."""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from .config import LOCAL_CACHE_PATH

INVENTORY_KEY = "app_inventory"
COLUMNS_KEY = "app_columns"
USERS_KEY = "app_users"
SESSION_KEY = "app_session_user"
API_KEY_KEY = "user_gemini_key"
DB_CONFIG_KEY = "app_db_config"


class LocalCache:
    """String key/value storage persisted as one JSON document.

    Values are stored as strings, the same way browser storage holds them;
    ``get_json``/``set_json`` handle the encoding for structured values.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else LOCAL_CACHE_PATH
        self._data: Dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            print(f"⚠️  Local cache unreadable ({self.path}): {e}")
            return
        if isinstance(raw, dict):
            self._data = {str(k): str(v) for k, v in raw.items()}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".cache-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    # ------------------------------------------------------------------
    # Raw string access
    # ------------------------------------------------------------------
    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()

    def __contains__(self, key: str) -> bool:
        return key in self._data

    # ------------------------------------------------------------------
    # JSON helpers
    # ------------------------------------------------------------------
    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            print(f"⚠️  Ignoring malformed cached value for {key}")
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, ensure_ascii=False))
