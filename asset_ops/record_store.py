"""In-memory record store keyed by record identity."""
from __future__ import annotations

import uuid
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

ID_FIELD = "id"

Record = Dict[str, Any]
Predicate = Callable[[Record], bool]


def new_identity(prefix: str = "") -> str:
    """Fresh record identity; never repeats within a process."""
    return f"{prefix}{uuid.uuid4().hex}"


class RecordQuery:
    """Lazy view over a store. Each iteration re-reads the store from the start."""

    def __init__(self, store: "RecordStore", predicate: Optional[Predicate] = None) -> None:
        self._store = store
        self._predicate = predicate

    def __iter__(self) -> Iterator[Record]:
        for record in list(self._store._records.values()):
            candidate = dict(record)
            if self._predicate is None or self._predicate(candidate):
                yield candidate

    def first(self) -> Optional[Record]:
        return next(iter(self), None)

    def count(self) -> int:
        return sum(1 for _ in self)


class RecordStore:
    """Ordered collection of records, each uniquely identified by ``record['id']``."""

    def __init__(self, records: Optional[Iterable[Record]] = None) -> None:
        self._records: Dict[str, Record] = {}
        if records:
            self.bulk_load(records)

    @staticmethod
    def _identity_of(record: Record) -> str:
        identity = record.get(ID_FIELD)
        if identity is None or identity == "":
            raise ValueError("record has no identity")
        return str(identity)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def upsert(self, record: Record) -> Record:
        """Insert, or replace the record with the same identity entirely."""
        identity = self._identity_of(record)
        stored = dict(record)
        stored[ID_FIELD] = identity
        # Re-assigning an existing key keeps its insertion position
        self._records[identity] = stored
        return dict(stored)

    def delete(self, identity: str) -> bool:
        return self._records.pop(str(identity), None) is not None

    def bulk_load(self, records: Iterable[Record]) -> None:
        fresh: Dict[str, Record] = {}
        for record in records:
            identity = self._identity_of(record)
            stored = dict(record)
            stored[ID_FIELD] = identity
            fresh[identity] = stored
        self._records = fresh

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def query(self, predicate: Optional[Predicate] = None) -> RecordQuery:
        return RecordQuery(self, predicate)

    def get(self, identity: str) -> Optional[Record]:
        record = self._records.get(str(identity))
        return dict(record) if record is not None else None

    def identities(self) -> List[str]:
        return list(self._records)

    def snapshot(self) -> List[Record]:
        return [dict(r) for r in self._records.values()]

    def __contains__(self, identity: object) -> bool:
        return str(identity) in self._records

    def __len__(self) -> int:
        return len(self._records)
