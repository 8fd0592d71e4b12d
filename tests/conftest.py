"""Shared fixtures: an in-memory remote backend and a state wired to a temp cache."""
import copy

import pytest

from asset_ops.assistant import Assistant
from asset_ops.change_feed import RemoteBackend, RemoteSyncError
from asset_ops.local_cache import LocalCache
from asset_ops.state import AppState


class FakeRemote(RemoteBackend):
    """Records and config held in dicts; set ``fail`` to make every call raise."""

    def __init__(self, records=None, config=None):
        self.records = {str(r["id"]): {k: v for k, v in r.items() if k != "id"} for r in (records or [])}
        self.config = dict(config or {})
        self.calls = []
        self.fail = False
        self.subscribed = None
        self.closed = False

    def _check(self, name):
        if self.fail:
            raise RemoteSyncError(f"{name} failed: backend unavailable")

    def fetch_records(self):
        self._check("Assets Sync")
        return [{**copy.deepcopy(data), "id": identity} for identity, data in self.records.items()]

    def upsert_record(self, identity, data):
        self.calls.append(("upsert", identity))
        self._check("Asset save")
        self.records[identity] = copy.deepcopy(data)

    def delete_record(self, identity):
        self.calls.append(("delete", identity))
        self._check("Asset delete")
        self.records.pop(identity, None)

    def fetch_config(self):
        self._check("Config Sync")
        return copy.deepcopy(self.config)

    def upsert_config(self, key, value):
        self.calls.append(("config", key))
        self._check(f"Config save ({key})")
        self.config[key] = copy.deepcopy(value)

    async def subscribe(self, on_event):
        self.subscribed = on_event

    async def unsubscribe(self):
        self.subscribed = None

    def close(self):
        self.closed = True


class DeferredDispatch:
    """Collects remote jobs so a test can decide when they run."""

    def __init__(self):
        self.jobs = []

    def __call__(self, job):
        self.jobs.append(job)

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for job in jobs:
            job()


@pytest.fixture(autouse=True)
def no_env_backend(monkeypatch):
    """Keep a developer's .env from connecting tests to a real project or model."""
    monkeypatch.setattr("asset_ops.state.SUPABASE_URL", "")
    monkeypatch.setattr("asset_ops.state.SUPABASE_KEY", "")
    monkeypatch.setattr("asset_ops.state.GEMINI_API_KEY", "")
    monkeypatch.setattr("asset_ops.server.CORS_ORIGINS", ["http://localhost:3000", "http://localhost:5173"])


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "local_cache.json"


@pytest.fixture
def cache(cache_path):
    return LocalCache(cache_path)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def make_state(cache_path, remote):
    """Factory so tests can rebuild a state over the same cache file."""

    def build(dispatch=None, assistant=None, factory=None):
        kwargs = {}
        if dispatch is not None:
            kwargs["dispatch"] = dispatch
        return AppState(
            cache=LocalCache(cache_path),
            backend_factory=factory or (lambda url, key: remote),
            assistant=assistant or Assistant(),
            **kwargs,
        )

    return build


@pytest.fixture
def state(make_state):
    return make_state()
