"""Change events and the remote backend interface the reconciler talks to."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"

EVENT_KINDS = (INSERT, UPDATE, DELETE)


class RemoteSyncError(Exception):
    """A call to the remote backend failed."""


@dataclass
class ChangeEvent:
    kind: str
    identity: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.kind, str) or self.kind.lower() not in EVENT_KINDS:
            raise ValueError(f"unknown change event kind: {self.kind!r}")
        self.kind = self.kind.lower()
        if self.identity is None or isinstance(self.identity, (dict, list)) or str(self.identity) == "":
            raise ValueError(f"invalid record identity: {self.identity!r}")
        self.identity = str(self.identity)
        if not isinstance(self.payload, dict):
            raise ValueError(f"change event payload must be an object, got {type(self.payload).__name__}")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChangeEvent":
        """Build an event from a realtime ``postgres_changes`` message.

        Accepts the Python realtime client shape
        (``{"data": {"type", "record", "old_record"}}``) and the JS client
        shape (``{"eventType", "new", "old"}``). Rows are ``{id, data}``.
        Anything else raises ``ValueError``.
        """
        if not isinstance(payload, dict):
            raise ValueError("change event must be an object")
        body = payload.get("data") if isinstance(payload.get("data"), dict) and "type" in payload["data"] else payload
        kind = body.get("type") or body.get("eventType") or ""
        if not isinstance(kind, str):
            raise ValueError(f"unknown change event kind: {kind!r}")
        new_row = body.get("record") or body.get("new") or {}
        old_row = body.get("old_record") or body.get("old") or {}
        if not isinstance(new_row, dict) or not isinstance(old_row, dict):
            raise ValueError("change event rows must be objects")

        row = old_row if kind.upper() == "DELETE" else new_row
        identity = row.get("id")
        if identity is None:
            raise ValueError("change event carries no record id")
        data = row.get("data") if kind.upper() != "DELETE" else None
        if data is not None and not isinstance(data, dict):
            raise ValueError("change event data must be an object")
        return cls(kind=kind, identity=identity, payload=dict(data or {}))

    def to_record(self) -> Dict[str, Any]:
        """Record for insert/update events. The event identity always wins over a payload ``id``."""
        record = dict(self.payload)
        record["id"] = self.identity
        return record

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "identity": self.identity, "payload": dict(self.payload)}


EventCallback = Callable[[ChangeEvent], None]


class RemoteBackend(ABC):
    """Opaque remote store: records table, config table and a change stream."""

    @abstractmethod
    def fetch_records(self) -> List[Dict[str, Any]]:
        """All records, flattened to ``{id, **data}``."""

    @abstractmethod
    def upsert_record(self, identity: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete_record(self, identity: str) -> None:
        ...

    @abstractmethod
    def fetch_config(self) -> Dict[str, Any]:
        """Named config blobs keyed by name (``columns``, ``users_list``)."""

    @abstractmethod
    def upsert_config(self, key: str, value: Any) -> None:
        ...

    async def subscribe(self, on_event: EventCallback) -> None:
        """Start delivering remote change events. Backends without a feed do nothing."""

    async def unsubscribe(self) -> None:
        pass

    def close(self) -> None:
        pass


def split_record(record: Dict[str, Any]) -> tuple:
    """Separate the identity from the field payload for storage."""
    data = {k: v for k, v in record.items() if k != "id"}
    return str(record["id"]), data
