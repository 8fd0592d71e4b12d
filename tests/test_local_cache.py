"""Local JSON cache and the notification feed."""
from asset_ops.local_cache import INVENTORY_KEY, LocalCache
from asset_ops.notifications import NotificationFeed


class TestLocalCache:

    def test_values_survive_reload(self, cache_path):
        cache = LocalCache(cache_path)
        cache.set_json(INVENTORY_KEY, [{"id": "1", "nos": 2}])
        cache.set("user_gemini_key", "abc")

        reloaded = LocalCache(cache_path)
        assert reloaded.get_json(INVENTORY_KEY) == [{"id": "1", "nos": 2}]
        assert reloaded.get("user_gemini_key") == "abc"

    def test_values_are_strings(self, cache):
        cache.set_json("k", {"a": 1})
        assert cache.get("k") == '{"a": 1}'

    def test_remove(self, cache):
        cache.set("k", "v")
        cache.remove("k")
        cache.remove("k")
        assert "k" not in cache
        assert cache.get_json("k", []) == []

    def test_malformed_value_uses_default(self, cache):
        cache.set("k", "{not json")
        assert cache.get_json("k", "fallback") == "fallback"

    def test_corrupt_file_starts_empty(self, cache_path):
        cache_path.write_text("{{{", encoding="utf-8")
        assert LocalCache(cache_path).get("anything") is None


class TestNotificationFeed:

    def test_bounded_history(self):
        feed = NotificationFeed(limit=3)
        for i in range(5):
            feed.info(f"n{i}")
        assert [e["content"] for e in feed.latest()] == ["n2", "n3", "n4"]
        assert [e["content"] for e in feed.latest(1)] == ["n4"]
        assert feed.latest(0) == []

    def test_error_entries(self):
        feed = NotificationFeed()
        entry = feed.error("Sync Error: down")
        assert entry["type"] == "error"
        assert entry["role"] == "model"
