"""Supabase backend with the client library mocked out."""
from unittest.mock import MagicMock, patch

import httpx
import pytest

from asset_ops.change_feed import RemoteSyncError
from asset_ops.db_supabase import ASSETS_TABLE, CONFIG_TABLE, SupabaseBackend


@pytest.fixture
def client():
    with patch("asset_ops.db_supabase.create_client") as create:
        mock_client = MagicMock()
        create.return_value = mock_client
        yield mock_client


@pytest.fixture
def backend(client):
    return SupabaseBackend("https://example.supabase.co/", "anon")


class TestSupabaseBackend:

    def test_url_normalised(self, backend):
        assert backend.url == "https://example.supabase.co"

    def test_client_creation_failure(self):
        with patch("asset_ops.db_supabase.create_client", side_effect=Exception("Invalid URL")):
            with pytest.raises(RemoteSyncError, match="Invalid URL"):
                SupabaseBackend("nope", "anon")

    def test_fetch_records_flattens_data_column(self, backend, client):
        client.table.return_value.select.return_value.execute.return_value.data = [
            {"id": 1, "data": {"status": "Spare", "id": "stale"}, "created_at": "2025-11-20T00:00:00Z"},
        ]
        assert backend.fetch_records() == [{"status": "Spare", "id": "1"}]
        client.table.assert_called_with(ASSETS_TABLE)

    def test_upsert_record(self, backend, client):
        backend.upsert_record("7", {"status": "Spare"})
        client.table.return_value.upsert.assert_called_once_with({"id": "7", "data": {"status": "Spare"}})

    def test_delete_record(self, backend, client):
        backend.delete_record("7")
        client.table.return_value.delete.return_value.eq.assert_called_once_with("id", "7")

    def test_config_round_trip(self, backend, client):
        client.table.return_value.select.return_value.execute.return_value.data = [
            {"key": "columns", "value": [{"id": "nos"}]},
        ]
        assert backend.fetch_config() == {"columns": [{"id": "nos"}]}
        backend.upsert_config("users_list", [])
        client.table.assert_called_with(CONFIG_TABLE)
        client.table.return_value.upsert.assert_called_once_with({"key": "users_list", "value": []})

    def test_transport_errors_become_sync_errors(self, backend, client):
        client.table.return_value.upsert.return_value.execute.side_effect = httpx.ConnectError("offline")
        with pytest.raises(RemoteSyncError, match="Asset save failed: offline"):
            backend.upsert_record("7", {})
