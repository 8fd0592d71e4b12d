"""Local optimistic edits and remote change events converging on one store."""
from concurrent.futures import ThreadPoolExecutor

import pytest

from asset_ops.change_feed import ChangeEvent
from asset_ops.local_cache import INVENTORY_KEY
from asset_ops.notifications import NotificationFeed
from asset_ops.reconciler import Reconciler, pool_dispatcher
from asset_ops.record_store import RecordStore
from asset_ops.schema import FieldDefinition, SchemaRegistry
from tests.conftest import DeferredDispatch, FakeRemote


@pytest.fixture
def feed():
    return NotificationFeed()


@pytest.fixture
def store():
    return RecordStore([
        {"id": "7", "status": "Planned", "nos": 1, "circle": "IDAR"},
        {"id": "42", "status": "Spare", "nos": 3},
    ])


@pytest.fixture
def fake_remote(store):
    return FakeRemote(store.snapshot())


@pytest.fixture
def reconciler(store, feed, cache, fake_remote):
    return Reconciler(store, SchemaRegistry(), feed, cache=cache, remote=fake_remote)


class TestLocalMutations:

    def test_delete_visible_before_remote_resolves(self, store, feed, cache, fake_remote):
        dispatch = DeferredDispatch()
        reconciler = Reconciler(store, SchemaRegistry(), feed, cache=cache, remote=fake_remote, dispatch=dispatch)

        reconciler.local_delete("42")

        assert "42" not in [r["id"] for r in store.query()]
        assert "42" in fake_remote.records
        dispatch.run_all()
        assert "42" not in fake_remote.records

    def test_delete_of_unknown_identity_still_pushed(self, reconciler, fake_remote):
        assert reconciler.local_delete("nope") is False
        assert ("delete", "nope") in fake_remote.calls

    def test_add_assigns_fresh_identity(self, reconciler, fake_remote):
        first = reconciler.local_add({"id": "7", "status": "Spare"})
        second = reconciler.local_add({"status": "Spare"})
        assert first["id"] not in ("7", second["id"])
        assert fake_remote.records[first["id"]] == {"status": "Spare"}

    def test_edit_merges_then_pushes_whole_record(self, reconciler, fake_remote):
        updated = reconciler.local_edit("7", {"status": "Installed"})
        assert updated == {"id": "7", "status": "Installed", "nos": 1, "circle": "IDAR"}
        assert fake_remote.records["7"] == {"status": "Installed", "nos": 1, "circle": "IDAR"}

    def test_edit_of_missing_record(self, reconciler, fake_remote):
        assert reconciler.local_edit("ghost", {"status": "Spare"}) is None
        assert fake_remote.calls == []

    def test_replace_keeps_path_identity(self, reconciler, store):
        reconciler.local_replace("7", {"id": "99", "status": "Returned"})
        assert store.get("7") == {"id": "7", "status": "Returned"}
        assert "99" not in store

    def test_mutations_written_to_cache(self, reconciler, cache):
        reconciler.local_delete("42")
        assert [r["id"] for r in cache.get_json(INVENTORY_KEY)] == ["7"]

    def test_remote_failure_does_not_roll_back(self, reconciler, fake_remote, feed, store):
        fake_remote.fail = True
        record = reconciler.local_add({"status": "Spare"})

        assert record["id"] in store
        assert feed.latest()[-1]["type"] == "error"
        assert feed.latest()[-1]["content"].startswith("Sync Error: ")

    def test_no_remote_means_local_only(self, store, feed, cache):
        reconciler = Reconciler(store, SchemaRegistry(), feed, cache=cache)
        reconciler.local_delete("7")
        assert "7" not in store
        assert len(feed) == 0


class TestRemoteEvents:

    def test_remote_update_wins_over_earlier_local_edit(self, reconciler, store):
        reconciler.local_edit("7", {"status": "Installed"})
        reconciler.apply_event(ChangeEvent("update", "7", {"status": "Spare"}))
        assert store.get("7")["status"] == "Spare"

    def test_update_replaces_wholesale(self, reconciler, store):
        reconciler.apply_event(ChangeEvent("update", "7", {"status": "Spare"}))
        assert store.get("7") == {"id": "7", "status": "Spare"}

    def test_insert_ignored_for_known_identity(self, reconciler, store):
        assert reconciler.apply_event(ChangeEvent("insert", "42", {"status": "Returned"})) is False
        assert store.get("42")["status"] == "Spare"

    def test_insert_of_new_identity(self, reconciler, store):
        assert reconciler.apply_event(ChangeEvent("insert", "8", {"status": "Spare"}))
        assert store.identities()[-1] == "8"

    def test_update_of_unknown_identity_inserts(self, reconciler, store):
        reconciler.apply_event(ChangeEvent("update", "100", {"status": "Spare"}))
        assert store.get("100") == {"id": "100", "status": "Spare"}

    def test_delete_is_idempotent(self, reconciler, store):
        assert reconciler.apply_event(ChangeEvent("delete", "42")) is True
        assert reconciler.apply_event(ChangeEvent("delete", "42")) is False
        assert "42" not in store

    def test_echo_of_own_insert_does_not_duplicate(self, reconciler, store):
        record = reconciler.local_add({"status": "Spare"})
        reconciler.apply_event(ChangeEvent("insert", record["id"], {"status": "Spare"}))
        assert len(store) == 3

    def test_replaying_events_converges(self, reconciler, store):
        events = [
            ChangeEvent("insert", "8", {"status": "Spare"}),
            ChangeEvent("update", "8", {"status": "Installed"}),
            ChangeEvent("delete", "42"),
        ]
        reconciler.apply_events(events)
        once = store.snapshot()
        assert reconciler.apply_events(events) == 1  # only the update changes anything
        assert store.snapshot() == once

    def test_events_do_not_push_back(self, reconciler, fake_remote):
        reconciler.apply_event(ChangeEvent("update", "7", {"status": "Spare"}))
        assert fake_remote.calls == []


class TestImport:

    def test_number_coercion_from_text(self, feed, cache, fake_remote):
        schema = SchemaRegistry([FieldDefinition("qty", "Qty", "number")])
        reconciler = Reconciler(RecordStore(), schema, feed, cache=cache, remote=fake_remote)

        from asset_ops.csv_io import read_delimited_rows
        imported = reconciler.import_rows(read_delimited_rows("Qty\n5\nabc\n"))

        assert [r["qty"] for r in imported] == [5, 0]
        assert all(r["id"].startswith("imp-") for r in imported)
        assert feed.latest()[-1]["content"] == "Imported 2 records."

    def test_pushed_one_by_one_in_row_order(self, reconciler, fake_remote):
        rows = [["2025-01-01", "A-1"], ["2025-01-02", "A-2"], [""]]
        imported = reconciler.import_rows(rows)
        assert len(imported) == 2
        pushed = [identity for call, identity in fake_remote.calls if call == "upsert"]
        assert pushed == [r["id"] for r in imported]
        assert fake_remote.records[imported[1]["id"]] == {"date": "2025-01-02", "assetId": "A-2"}


class TestPoolDispatcher:

    def test_unexpected_job_error_reported(self, feed):
        executor = ThreadPoolExecutor(max_workers=1)
        dispatch = pool_dispatcher(executor, feed)

        def job():
            raise RuntimeError("socket closed")

        future = dispatch(job)
        executor.shutdown(wait=True)

        assert isinstance(future.exception(), RuntimeError)
        entry = feed.latest()[-1]
        assert (entry["type"], entry["content"]) == ("error", "Sync Error: socket closed")

    def test_jobs_run_in_submission_order(self, store, feed, cache, fake_remote):
        executor = ThreadPoolExecutor(max_workers=1)
        reconciler = Reconciler(store, SchemaRegistry(), feed, cache=cache, remote=fake_remote,
                                dispatch=pool_dispatcher(executor, feed))
        reconciler.local_edit("7", {"status": "Installed"})
        reconciler.local_delete("7")
        executor.shutdown(wait=True)

        assert fake_remote.calls == [("upsert", "7"), ("delete", "7")]
        assert "7" not in fake_remote.records
        assert len(feed) == 0
