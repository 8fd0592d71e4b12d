"""
Reconciles optimistic local edits and remote change events into the record store.

Policy
------
* Local mutations are applied to the store immediately, cached locally, and
  then handed to the dispatcher for the remote push. A failed push is
  reported on the notification feed; the local change is never rolled back.
* Remote ``insert`` events are ignored when the identity is already present,
  ``update`` events replace the record wholesale, and ``delete`` events remove
  it if present.
* There is no ordering between local mutations and remote events for the same
  identity: whichever reaches the reconciler last wins.
"""
from __future__ import annotations

from concurrent.futures import Executor, Future
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .change_feed import DELETE, INSERT, UPDATE, ChangeEvent, RemoteBackend, RemoteSyncError, split_record
from .csv_io import is_blank_row, row_to_fields
from .local_cache import INVENTORY_KEY, LocalCache
from .notifications import NotificationFeed
from .record_store import ID_FIELD, Record, RecordStore, new_identity
from .schema import SchemaRegistry

Job = Callable[[], None]
Dispatcher = Callable[[Job], Any]

IMPORT_PREFIX = "imp-"


def run_inline(job: Job) -> None:
    job()


def pool_dispatcher(executor: Executor, feed: NotificationFeed) -> Dispatcher:
    """Submit jobs to ``executor``; a job that dies with an unexpected error is reported."""

    def report(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            print(f"❌ Remote sync job crashed: {error!r}")
            feed.error(f"Sync Error: {error}")

    def dispatch(job: Job) -> Future:
        future = executor.submit(job)
        future.add_done_callback(report)
        return future

    return dispatch


class Reconciler:
    def __init__(
        self,
        store: RecordStore,
        schema: SchemaRegistry,
        feed: NotificationFeed,
        cache: Optional[LocalCache] = None,
        remote: Optional[RemoteBackend] = None,
        dispatch: Dispatcher = run_inline,
    ) -> None:
        self.store = store
        self.schema = schema
        self.feed = feed
        self.cache = cache
        self.remote = remote
        self.dispatch = dispatch

    # ------------------------------------------------------------------
    # Persistence fan-out
    # ------------------------------------------------------------------
    def persist_local(self) -> None:
        if self.cache is not None:
            self.cache.set_json(INVENTORY_KEY, self.store.snapshot())

    def _push(self, description: str, call: Callable[[RemoteBackend], None]) -> None:
        remote = self.remote
        if remote is None:
            return

        def job() -> None:
            try:
                call(remote)
            except RemoteSyncError as e:
                print(f"❌ {description} failed: {e}")
                self.feed.error(f"Sync Error: {e}")

        self.dispatch(job)

    def _push_upsert(self, record: Record) -> None:
        identity, data = split_record(record)
        self._push(f"Remote save of {identity}", lambda remote: remote.upsert_record(identity, data))

    def _push_delete(self, identity: str) -> None:
        self._push(f"Remote delete of {identity}", lambda remote: remote.delete_record(identity))

    def push_config(self, key: str, value: Any) -> None:
        self._push(f"Remote config save ({key})", lambda remote: remote.upsert_config(key, value))

    # ------------------------------------------------------------------
    # Remote events
    # ------------------------------------------------------------------
    def apply_event(self, event: ChangeEvent) -> bool:
        """Apply one change-feed event. Returns whether the store changed."""
        if event.kind == INSERT:
            if event.identity in self.store:
                return False
            self.store.upsert(event.to_record())
        elif event.kind == UPDATE:
            self.store.upsert(event.to_record())
        elif event.kind == DELETE:
            if not self.store.delete(event.identity):
                return False
        self.persist_local()
        return True

    def apply_events(self, events: Iterable[ChangeEvent]) -> int:
        return sum(1 for event in events if self.apply_event(event))

    def load_snapshot(self, records: Sequence[Record]) -> None:
        """Replace everything with a full remote snapshot."""
        self.store.bulk_load(records)
        self.persist_local()

    # ------------------------------------------------------------------
    # Local optimistic mutations
    # ------------------------------------------------------------------
    def local_upsert(self, record: Record) -> Record:
        stored = self.store.upsert(record)
        self.persist_local()
        self._push_upsert(stored)
        return stored

    def local_add(self, fields: Dict[str, Any]) -> Record:
        record = {k: v for k, v in fields.items() if k != ID_FIELD}
        record[ID_FIELD] = new_identity()
        return self.local_upsert(record)

    def local_edit(self, identity: str, changes: Dict[str, Any]) -> Optional[Record]:
        """Apply ``changes`` on top of the current record and store it as a whole."""
        current = self.store.get(identity)
        if current is None:
            return None
        updated = {**current, **{k: v for k, v in changes.items() if k != ID_FIELD}}
        return self.local_upsert(updated)

    def local_replace(self, identity: str, record: Record) -> Optional[Record]:
        if identity not in self.store:
            return None
        replacement = dict(record)
        replacement[ID_FIELD] = identity
        return self.local_upsert(replacement)

    def local_delete(self, identity: str) -> bool:
        removed = self.store.delete(identity)
        self.persist_local()
        self._push_delete(identity)
        return removed

    # ------------------------------------------------------------------
    # Bulk import
    # ------------------------------------------------------------------
    def import_rows(self, rows: Iterable[Sequence[Any]]) -> List[Record]:
        """Map positional rows onto the current schema and store each one.

        Remote pushes go out one record at a time, in row order.
        """
        fields = self.schema.fields
        imported: List[Record] = []
        for row in rows:
            if is_blank_row(row):
                continue
            record = row_to_fields(row, fields)
            record[ID_FIELD] = new_identity(IMPORT_PREFIX)
            imported.append(self.store.upsert(record))
        self.persist_local()
        for record in imported:
            self._push_upsert(record)
        self.feed.info(f"Imported {len(imported)} records.")
        return imported
