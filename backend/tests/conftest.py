"""Stable shared fixtures for tests.

Design goal: avoid async fixture loop injection and keep test boundaries explicit.
"""
import copy
import os
from unittest.mock import AsyncMock, patch

import pytest

# Must be set before importing app modules.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["APP_AUTH_BEARER_TOKENS"] = "test_token"
os.environ["LLM_API_KEY"] = "test_key"
os.environ["LLM_MODEL_CATEGORIZE"] = "test-model"

from api.main import app, get_db
from common.persistence import StateBlobStore
from common.schemas import BridgeOptions, ListItem, ListPatch
from common.store import MessageStore


class FakeBlobStore(StateBlobStore):
    def __init__(self, initial=None):
        self.blobs = copy.deepcopy(initial or {})
        self.writes = 0

    async def read_json(self, name):
        value = self.blobs.get(name)
        return copy.deepcopy(value) if isinstance(value, dict) else None

    async def write_json(self, name, value):
        self.writes += 1
        self.blobs[name] = copy.deepcopy(value)


class FakeMessageStore(MessageStore):
    def __init__(self):
        self.lists = {}
        self.metadata = {}
        self.patches = []

    def items(self, ref):
        return list(self.lists.get(ref, {}).values())

    def put(self, ref, *items):
        self.lists.setdefault(ref, {})
        self.metadata.setdefault(ref, {})
        for item in items:
            self.lists[ref][item.id] = item

    async def get_items_by_reference(self, ref):
        if ref not in self.lists:
            return None
        return [it.model_copy() for it in self.lists[ref].values()]

    async def apply_patch(self, ref, patch: ListPatch):
        self.patches.append((ref, patch))
        target = self.lists.setdefault(ref, {})
        for item_id in patch.delete_items:
            target.pop(item_id, None)
        for item_id, item in patch.set_items.items():
            target[item_id] = item.model_copy()

    async def create_list(self, ref, metadata):
        self.lists.setdefault(ref, {})
        self.metadata[ref] = dict(metadata)

    async def remove_list(self, ref):
        self.lists.pop(ref, None)
        self.metadata.pop(ref, None)

    async def get_list_metadata(self, ref):
        return self.metadata.get(ref)


class FakeTransport:
    def __init__(self):
        self.snapshot = "[]"
        self.health = None
        self.writes = []
        self.failing = set()

    async def read_snapshot(self, state_id):
        return self.snapshot

    async def write_command(self, command_id, value):
        self.writes.append((command_id, value))
        return command_id not in self.failing

    async def read_connection_health(self, system_id):
        return self.health

    def commands(self, suffix):
        return [(cmd, val) for cmd, val in self.writes if cmd.endswith(suffix)]


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_blobs():
    return FakeBlobStore()


@pytest.fixture
def fake_store():
    return FakeMessageStore()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_bridge(fake_store, fake_blobs, fake_transport, clock):
    from common.bridge import ShoppingListBridge

    def _make(classifier=None, **overrides):
        values = {"ai_enhancement": False, "categories": ["Dairy", "Other"], "pending_max_misses": 3}
        values.update(overrides)
        options = BridgeOptions(**values)
        return ShoppingListBridge(
            store=fake_store,
            blobs=fake_blobs,
            transport=fake_transport,
            options=options,
            classifier=classifier,
            clock=clock,
        )

    return _make


def item(item_id, name, checked=False, **kwargs):
    return ListItem(id=item_id, name=name, checked=checked, **kwargs)


@pytest.fixture
def make_item():
    return item


@pytest.fixture
def mock_redis():
    r = AsyncMock()
    r.rpush = AsyncMock(return_value=1)
    r.get = AsyncMock(return_value=None)
    r.setex = AsyncMock(return_value=True)
    r.ping = AsyncMock(return_value=True)
    return r


@pytest.fixture
def mock_db():
    db = AsyncMock()
    result = AsyncMock()
    result.rowcount = 1
    db.execute = AsyncMock(return_value=result)
    db.commit = AsyncMock(return_value=None)
    return db


@pytest.fixture
def app_no_db(mock_redis, mock_db):
    async def _stub_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = _stub_get_db
    with patch("api.main.redis_client", mock_redis):
        yield app
    app.dependency_overrides.clear()
