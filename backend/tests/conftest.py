"""Shared test fixtures and configuration for backend tests.

Every test gets its own in-memory DuckDB store and its own hub, so no state
leaks between tests. ``FakeTransport`` stands in for a WebSocket and records
every frame delivered to it.
"""
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from roomwire.auth import TokenService
from roomwire.config import AppConfig, JWTSecrets, Secrets, StoreSettings
from roomwire.main import create_app
from roomwire.realtime import ChatHub
from roomwire.store import ChatStore

SECRET = "test-secret"


class FakeTransport:
    """Records frames sent to one connection; can be told to start failing."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.closed_with = None
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.closed_with = code

    def events(self, name=None):
        """Payloads of the recorded frames, optionally only one event type."""
        return [f["data"] for f in self.sent if name is None or f["event"] == name]

    def names(self):
        return [f["event"] for f in self.sent]

    def clear(self):
        self.sent.clear()


@pytest.fixture
def store():
    """Fresh in-memory store per test."""
    chat_store = ChatStore(":memory:")
    yield chat_store
    chat_store.close()


@pytest.fixture
def tokens():
    return TokenService(SECRET)


@pytest.fixture
def hub(store, tokens):
    """Isolated hub with caching enabled (default TTLs)."""
    return ChatHub(store, tokens)


@pytest.fixture
def users(store):
    """Three users: alice, bob and carol."""
    return SimpleNamespace(
        alice=store.create_user("alice@example.com", "alice", "Alice"),
        bob=store.create_user("bob@example.com", "bob", "Bob"),
        carol=store.create_user("carol@example.com", "carol", "Carol"),
    )


@pytest.fixture
def room(store, users):
    """Room owned by alice with bob as a member. Carol is not a member."""
    return store.create_room(users.alice.id, [users.bob.id], name="general")


@pytest.fixture
def connect(hub, tokens):
    """Connect a user to the hub through a fake transport.

    Returns an async callable: ``connection, transport = await connect(user)``.
    """
    async def _connect(user):
        transport = FakeTransport()
        connection = await hub.connect(transport, tokens.create_access_token(user.id))
        return connection, transport
    return _connect


@pytest.fixture
def app_config():
    return AppConfig(
        store=StoreSettings(db_path=":memory:"),
        secrets=Secrets(jwt=JWTSecrets(secret_key=SECRET)),
    )


@pytest.fixture
def api_client(app_config, store):
    """TestClient for an app wired to the per-test store (lifespan running)."""
    app = create_app(app_config, store=store)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers(tokens):
    def _headers(user):
        return {"Authorization": f"Bearer {tokens.create_access_token(user.id)}"}
    return _headers
