"""Tests for the connection registry (live connections and subscriptions)."""
import pytest

from roomwire.errors import AuthenticationError, ValidationError
from roomwire.realtime import ConnectionRegistry

from conftest import FakeTransport


class RecordingObserver:
    def __init__(self):
        self.opened = []
        self.closed = []

    async def connection_opened(self, connection, first_for_user):
        self.opened.append((connection.connection_id, first_for_user))

    async def connection_closed(self, connection, last_for_user):
        self.closed.append((connection.connection_id, last_for_user))


class BrokenObserver:
    async def connection_opened(self, connection, first_for_user):
        raise RuntimeError("observer bug")

    async def connection_closed(self, connection, last_for_user):
        raise RuntimeError("observer bug")


@pytest.fixture
def registry(store):
    return ConnectionRegistry(store)


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_starts_with_no_subscriptions(self, registry, users):
        connection = await registry.register("c1", users.alice.id, FakeTransport())

        assert connection.user_id == users.alice.id
        assert connection.rooms == set()
        assert registry.get("c1") is connection
        assert registry.is_online(users.alice.id)
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_unknown_user_is_rejected(self, registry):
        with pytest.raises(AuthenticationError):
            await registry.register("c1", "ghost", FakeTransport())
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_blocked_user_is_rejected(self, registry, store, users):
        store.set_blocked(users.bob.id, True)
        with pytest.raises(AuthenticationError):
            await registry.register("c1", users.bob.id, FakeTransport())
        assert not registry.is_online(users.bob.id)

    @pytest.mark.asyncio
    async def test_duplicate_connection_id_is_rejected(self, registry, users):
        await registry.register("c1", users.alice.id, FakeTransport())
        with pytest.raises(ValidationError):
            await registry.register("c1", users.bob.id, FakeTransport())
        assert registry.get("c1").user_id == users.alice.id


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe_are_idempotent(self, registry, users):
        await registry.register("c1", users.alice.id, FakeTransport())

        assert registry.subscribe("c1", "r1") is True
        assert registry.subscribe("c1", "r1") is False
        assert registry.connections_for("r1") == {"c1"}

        assert registry.unsubscribe("c1", "r1") is True
        assert registry.unsubscribe("c1", "r1") is False
        assert registry.connections_for("r1") == frozenset()

    @pytest.mark.asyncio
    async def test_unknown_connection_cannot_subscribe(self, registry):
        assert registry.subscribe("missing", "r1") is False
        assert registry.connections_for("r1") == frozenset()

    @pytest.mark.asyncio
    async def test_connections_for_returns_a_snapshot(self, registry, users):
        await registry.register("c1", users.alice.id, FakeTransport())
        await registry.register("c2", users.bob.id, FakeTransport())
        registry.subscribe("c1", "r1")

        snapshot = registry.connections_for("r1")
        registry.subscribe("c2", "r1")

        assert snapshot == {"c1"}
        assert registry.connections_for("r1") == {"c1", "c2"}


class TestDeregister:
    @pytest.mark.asyncio
    async def test_deregister_is_idempotent_and_cleans_indices(self, registry, users):
        await registry.register("c1", users.alice.id, FakeTransport())
        registry.subscribe("c1", "r1")

        removed = await registry.deregister("c1")
        assert removed.connection_id == "c1"
        assert removed.rooms == {"r1"}
        assert await registry.deregister("c1") is None

        assert registry.connections_for("r1") == frozenset()
        assert not registry.is_online(users.alice.id)
        assert registry.online_user_ids() == frozenset()

    @pytest.mark.asyncio
    async def test_observers_see_first_and_last_device(self, registry, users):
        observer = RecordingObserver()
        registry.add_observer(observer)

        await registry.register("phone", users.alice.id, FakeTransport())
        await registry.register("laptop", users.alice.id, FakeTransport())
        assert registry.connections_of_user(users.alice.id) == {"phone", "laptop"}

        await registry.deregister("phone")
        await registry.deregister("laptop")
        await registry.deregister("laptop")

        assert observer.opened == [("phone", True), ("laptop", False)]
        assert observer.closed == [("phone", False), ("laptop", True)]

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_break_lifecycle(self, registry, users):
        registry.add_observer(BrokenObserver())

        await registry.register("c1", users.alice.id, FakeTransport())
        assert registry.get("c1") is not None

        assert await registry.deregister("c1") is not None
        assert registry.get("c1") is None

    @pytest.mark.asyncio
    async def test_close_all_closes_every_transport(self, registry, users):
        transports = [FakeTransport(), FakeTransport()]
        await registry.register("c1", users.alice.id, transports[0])
        await registry.register("c2", users.bob.id, transports[1])

        assert await registry.close_all() == 2
        assert [t.closed_with for t in transports] == [1001, 1001]
        assert len(registry) == 0
