"""Application state: sessions, backend link, cache restore and guarded operations."""
import asyncio
from pathlib import Path

import pytest

from asset_ops.auth import AuthenticationError
from asset_ops.change_feed import ChangeEvent, RemoteSyncError
from asset_ops.local_cache import API_KEY_KEY, COLUMNS_KEY, DB_CONFIG_KEY, INVENTORY_KEY, SESSION_KEY, LocalCache
from asset_ops.state import COLUMNS_CONFIG, USERS_CONFIG

URL = "https://example.supabase.co"


def user(state, username):
    return state.users.find(username)


def connect(state, url=URL, key="anon"):
    return asyncio.run(state.connect_backend(url, key))


class TestSessions:

    def test_seed_data(self, state):
        assert len(state.store) == 5
        assert state.sessions == {}

    def test_login_issues_distinct_tokens(self, state):
        first, admin = state.login("admin", "password")
        second, staff = state.login("staff", "123")
        assert first != second
        assert state.user_for(first) is admin
        assert state.user_for(second) is staff

    def test_unknown_or_missing_token(self, state):
        state.login("admin", "password")
        assert state.user_for("forged") is None
        assert state.user_for(None) is None
        assert state.user_for("") is None

    def test_sessions_survive_restart(self, state, make_state):
        token, _ = state.login("staff", "123")
        restarted = make_state()
        assert restarted.user_for(token).username == "staff"

    def test_logout_only_ends_that_session(self, state, make_state):
        token, _ = state.login("staff", "123")
        other, _ = state.login("admin", "password")
        state.logout(token)
        assert state.user_for(token) is None
        assert state.user_for(other).username == "admin"
        assert make_state().user_for(token) is None

    def test_legacy_session_value_ignored(self, cache, make_state):
        cache.set_json(SESSION_KEY, {"username": "admin", "password": "password", "role": "superadmin"})
        restarted = make_state()
        assert restarted.sessions == {}
        assert restarted.user_for("username") is None

    def test_deleted_user_loses_session(self, state):
        token, _ = state.login("guest", "guest")
        assert state.users.delete_user(user(state, "admin"), "guest")
        assert state.user_for(token) is None

    def test_bad_credentials(self, state):
        with pytest.raises(AuthenticationError):
            state.login("admin", "wrong")
        assert state.sessions == {}

    def test_api_key_saved_at_login(self, state):
        state.login("guest", "guest", api_key="  k-123 ")
        assert state.cache.get(API_KEY_KEY) == "k-123"
        assert state.api_key == "k-123"


class TestRecords:

    def test_viewer_cannot_add(self, state):
        result, record = state.add_record(user(state, "guest"), {"status": "Spare"})
        assert not result
        assert record is None
        assert len(state.store) == 5

    def test_anonymous_cannot_add(self, state):
        result, _ = state.add_record(None, {"status": "Spare"})
        assert result.reason == "Not logged in."

    def test_editor_add_is_cached(self, state, make_state):
        result, record = state.add_record(user(state, "staff"), {"status": "Spare", "nos": 1})
        assert result
        assert state.feed.latest()[-1]["content"] == "Record added to database."
        assert record["id"] in make_state().store

    def test_update_status(self, state):
        result, record = state.update_status(user(state, "staff"), "2", "Installed")
        assert record["status"] == "Installed"
        assert record["assignedTo"] == "PIYUSH"
        assert state.feed.latest()[-1]["content"] == "Status updated to Installed."

    def test_update_status_missing_record(self, state):
        result, record = state.update_status(user(state, "staff"), "ghost", "Installed")
        assert result
        assert record is None

    def test_new_record_defaults(self, state):
        defaults = state.new_record_defaults(user(state, "staff"))
        assert defaults["nos"] == 1
        assert defaults["status"] == "Spare"
        assert defaults["lastUpdatedBy"] == "staff"

    def test_import_text(self, state):
        text = "Date,Asset ID,Material Type,Model/Variant,NOS\n2025-12-01,A-7,BMU,66kV,4\n"
        result, imported = state.import_text(user(state, "staff"), text.encode("utf-8"))
        assert result
        assert imported[0]["nos"] == 4
        assert len(state.store) == 6

    def test_undecodable_import_is_rejected(self, state):
        result, imported = state.import_text(user(state, "staff"), b"Date\n\xff\xfe\xfa\n")
        assert result.kind == "invalid"
        assert "UTF-8" in result.reason
        assert imported == []
        assert len(state.store) == 5
        assert state.feed.latest()[-1]["type"] == "error"

    def test_corrupt_workbook_is_rejected(self, state):
        result, imported = state.import_excel(user(state, "staff"), b"PK\x03\x04 not really a zip")
        assert result.kind == "invalid"
        assert result.reason.startswith("Unreadable workbook")
        assert imported == []

    def test_viewer_import_checked_before_reading(self, state):
        result, _ = state.import_text(user(state, "guest"), b"\xff\xfe")
        assert result.kind == "forbidden"

    def test_export_csv_uses_date_range(self, state):
        assert state.export_csv(start="2025-12-01") == ",".join(state.schema.labels())

    def test_export_excel(self, state, tmp_path):
        path = Path(state.export_excel(directory=tmp_path))
        assert path.exists()
        assert path.name.startswith("inventory_export_")

    def test_reset_requires_admin(self, state):
        state.add_record(user(state, "staff"), {"status": "Spare"})
        assert not state.reset_local_data(user(state, "staff"))

        assert state.reset_local_data(user(state, "admin"))
        assert len(state.store) == 5
        assert state.feed.latest()[-1]["content"] == "Local Data Reset Complete."


class TestBackend:

    def test_connect_applies_snapshot(self, state, remote):
        remote.records = {"r1": {"status": "Spare", "nos": 9}}
        remote.config = {COLUMNS_CONFIG: [{"id": "nos", "label": "Qty", "type": "number"}]}

        assert connect(state)

        assert state.store.snapshot() == [{"status": "Spare", "nos": 9, "id": "r1"}]
        assert state.schema.labels() == ["Qty"]
        assert state.cache.get_json(COLUMNS_KEY) == [{"id": "nos", "label": "Qty", "type": "number"}]
        assert state.db_status()["connected"] is True

    def test_empty_remote_keeps_local_records(self, state):
        connect(state)
        assert len(state.store) == 5

    def test_remote_users_replace_local(self, state, remote):
        remote.config = {USERS_CONFIG: [{"username": "admin", "password": "new", "role": "superadmin"}]}
        connect(state)
        assert state.users.find("staff") is None
        with pytest.raises(AuthenticationError):
            state.login("admin", "password")

    def test_fetch_failure_falls_back_to_cache(self, state, remote):
        state.add_record(user(state, "staff"), {"status": "Spare"})
        remote.fail = True

        assert connect(state)
        assert len(state.store) == 6
        assert "backend unavailable" in state.db_status()["error"]
        assert state.loading is False

    def test_refresh_reports_outcome(self, state, remote):
        connect(state)
        remote.records = {"r9": {"status": "Planned"}}
        assert asyncio.run(state.refresh_from_remote()) is True
        assert state.store.identities() == ["r9"]
        remote.fail = True
        assert asyncio.run(state.refresh_from_remote()) is False

    def test_client_creation_failure(self, make_state):
        def broken(url, key):
            raise RemoteSyncError("bad url")

        state = make_state(factory=broken)
        assert connect(state, "nope", "nope") is False
        assert state.connected is False
        assert state.db_error == "bad url"

    def test_config_changes_pushed(self, state, remote):
        connect(state)
        admin = user(state, "admin")
        state.schema.add_field(admin, {"id": "serial", "label": "Serial"})
        state.users.create_user(admin, "ravi", "pw", "editor")
        assert remote.config[COLUMNS_CONFIG][-1]["id"] == "serial"
        assert remote.config[USERS_CONFIG][-1]["username"] == "ravi"

    def test_record_mutations_pushed(self, state, remote):
        connect(state)
        staff = user(state, "staff")
        _, record = state.add_record(staff, {"status": "Spare"})
        state.delete_record(staff, "1")
        assert remote.records[record["id"]]["status"] == "Spare"
        assert ("delete", "1") in remote.calls

    def test_push_failure_reported_not_rolled_back(self, state, remote):
        connect(state)
        remote.fail = True
        state.delete_record(user(state, "staff"), "1")
        assert "1" not in state.store
        assert state.feed.latest()[-1]["content"].startswith("Sync Error:")

    def test_saved_config_and_disconnect(self, state, remote, make_state):
        connect(state)
        assert make_state().saved_db_config() == {"url": URL, "key": "anon"}

        assert state.disconnect_backend() is remote
        assert remote.closed
        assert DB_CONFIG_KEY not in LocalCache(state.cache.path)
        assert make_state().saved_db_config() is None

    def test_change_event_updates_cache(self, state):
        state.apply_change_event(ChangeEvent("delete", "1"))
        assert "1" not in [r["id"] for r in state.cache.get_json(INVENTORY_KEY)]


class TestAdministration:

    def test_list_users_admin_only(self, state):
        result, users = state.list_users(user(state, "staff"))
        assert not result
        result, users = state.list_users(user(state, "admin"))
        assert {"username": "guest", "role": "viewer"} in users
        assert all("password" not in u for u in users)

    def test_column_changes_cached(self, state, make_state):
        state.schema.remove_field(user(state, "admin"), "remarks")
        assert "remarks" not in make_state().schema
