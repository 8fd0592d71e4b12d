"""In-app notification feed (sync errors, import results, chat replies)."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import FEED_HISTORY_LIMIT


class NotificationFeed:
    """Bounded list of feed entries, newest last."""

    def __init__(self, limit: int = FEED_HISTORY_LIMIT) -> None:
        self.limit = limit
        self.entries: List[Dict[str, Any]] = []

    def add(self, content: str, *, type: str = "notification", role: str = "model") -> Dict[str, Any]:
        entry = {
            "timestamp": datetime.now().isoformat(),
            "type": type,      # "notification", "error", "message"
            "role": role,      # "user", "model"
            "content": content,
        }
        self.entries.append(entry)
        # Keep only the last N entries
        if len(self.entries) > self.limit:
            del self.entries[: len(self.entries) - self.limit]
        return entry

    def info(self, content: str) -> Dict[str, Any]:
        return self.add(content)

    def error(self, content: str) -> Dict[str, Any]:
        return self.add(content, type="error")

    def latest(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if limit is None:
            return list(self.entries)
        return self.entries[-limit:] if limit > 0 else []

    def clear(self) -> None:
        self.entries = []

    def __len__(self) -> int:
        return len(self.entries)
