"""Connection registry: who is connected, as whom, listening to which rooms.

The registry owns every live connection of one process. It indexes them
three ways:
    - connection_id -> Connection (identity, transport, subscribed rooms)
    - room_id -> set of subscribed connection ids (used for fanout)
    - user_id -> set of connection ids (multi-device presence)

Subscriptions are purely in-memory listening state. They never touch the
persistent membership rows; the membership oracle is the authority on who
may act in a room.

Thread Safety:
    Designed for a single asyncio event loop. Every index mutation happens
    in one synchronous block with no ``await`` in between, so a reader never
    observes a half-applied subscribe or deregister. The only suspension
    points are the store lookup in ``register`` (before anything is
    mutated) and the observer callbacks (after the mutation is complete).
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Protocol, Set

from roomwire.errors import AuthenticationError, ValidationError
from roomwire.store import ChatStore, User, run_sync, utcnow

logger = logging.getLogger(__name__)

# Close code used when the service shuts down (1001 = Going Away)
SHUTDOWN_CLOSE_CODE = 1001


class Transport(Protocol):
    """Delivery endpoint of one connection. A Starlette WebSocket fits."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass
class Connection:
    """One live, authenticated connection. Never persisted."""
    connection_id: str
    user: User
    transport: Transport
    rooms: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def user_id(self) -> str:
        return self.user.id


class RegistryObserver(Protocol):
    """Notified after a connection is added to or removed from the registry."""

    async def connection_opened(self, connection: Connection, first_for_user: bool) -> None: ...

    async def connection_closed(self, connection: Connection, last_for_user: bool) -> None: ...


class ConnectionRegistry:
    """Tracks live connections and their room subscriptions.

    One instance per running service (or per test). It is created at
    startup and torn down with ``close_all`` at shutdown.
    """

    def __init__(self, store: ChatStore) -> None:
        self._store = store

        # connection_id -> Connection
        self._connections: Dict[str, Connection] = {}

        # room_id -> connection ids subscribed to it
        self._room_index: Dict[str, Set[str]] = {}

        # user_id -> connection ids of that user (one per device)
        self._user_index: Dict[str, Set[str]] = {}

        self._observers: List[RegistryObserver] = []

    def add_observer(self, observer: RegistryObserver) -> None:
        self._observers.append(observer)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def register(self, connection_id: str, user_id: str, transport: Transport) -> Connection:
        """Associate a new connection with an authenticated user.

        Args:
            connection_id: Unique id of the new connection.
            user_id: User id resolved from the handshake token.
            transport: Where events for this connection are delivered.

        Returns:
            The registered Connection with an empty subscription set.

        Raises:
            AuthenticationError: The user does not exist or is blocked.
            ValidationError: The connection id is already registered.
        """
        user = await run_sync(self._store.get_user, user_id)
        if user is None or user.is_blocked:
            logger.warning("[Registry] Rejected connection %s for user %s", connection_id, user_id)
            raise AuthenticationError("Authentication error")

        if connection_id in self._connections:
            raise ValidationError(f"Connection {connection_id} is already registered")

        connection = Connection(connection_id=connection_id, user=user, transport=transport)
        self._connections[connection_id] = connection
        devices = self._user_index.setdefault(user_id, set())
        first_for_user = not devices
        devices.add(connection_id)

        logger.info(
            "[Registry] Registered %s for user %s (%d device(s), %d total connections)",
            connection_id, user_id, len(devices), len(self._connections),
        )

        for observer in list(self._observers):
            try:
                await observer.connection_opened(connection, first_for_user)
            except Exception:
                logger.exception("[Registry] Observer failed on open of %s", connection_id)
        return connection

    async def deregister(self, connection_id: str) -> Optional[Connection]:
        """Remove a connection and notify observers.

        Idempotent: a second call for the same id returns None and does
        nothing.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None

        for room_id in connection.rooms:
            subscribers = self._room_index.get(room_id)
            if subscribers is not None:
                subscribers.discard(connection_id)
                if not subscribers:
                    del self._room_index[room_id]

        devices = self._user_index.get(connection.user_id)
        if devices is not None:
            devices.discard(connection_id)
        last_for_user = not devices
        if last_for_user:
            self._user_index.pop(connection.user_id, None)

        logger.info(
            "[Registry] Deregistered %s for user %s (last=%s, %d total connections)",
            connection_id, connection.user_id, last_for_user, len(self._connections),
        )

        for observer in list(self._observers):
            try:
                await observer.connection_closed(connection, last_for_user)
            except Exception:
                logger.exception("[Registry] Observer failed on close of %s", connection_id)
        return connection

    async def close_all(self, code: int = SHUTDOWN_CLOSE_CODE) -> int:
        """Force-close and deregister every live connection.

        Returns:
            Number of connections that were closed.
        """
        closed = 0
        for connection_id in list(self._connections):
            connection = self._connections.get(connection_id)
            if connection is None:
                continue
            try:
                await connection.transport.close(code)
            except Exception as e:
                logger.debug(f"Failed to close connection {connection_id}: {e}")
            if await self.deregister(connection_id) is not None:
                closed += 1
        logger.info("[Registry] Closed %d connection(s) on shutdown", closed)
        return closed

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, connection_id: str, room_id: str) -> bool:
        """Add room_id to the connection's subscriptions.

        Returns:
            True if the subscription was added, False if it already existed
            or the connection is gone.
        """
        connection = self._connections.get(connection_id)
        if connection is None or room_id in connection.rooms:
            return False
        connection.rooms.add(room_id)
        self._room_index.setdefault(room_id, set()).add(connection_id)
        return True

    def unsubscribe(self, connection_id: str, room_id: str) -> bool:
        """Remove room_id from the connection's subscriptions (idempotent)."""
        connection = self._connections.get(connection_id)
        if connection is None or room_id not in connection.rooms:
            return False
        connection.rooms.discard(room_id)
        subscribers = self._room_index.get(room_id)
        if subscribers is not None:
            subscribers.discard(connection_id)
            if not subscribers:
                del self._room_index[room_id]
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def connections_for(self, room_id: str) -> FrozenSet[str]:
        """Snapshot of the connection ids currently subscribed to room_id."""
        return frozenset(self._room_index.get(room_id, ()))

    def connections_of_user(self, user_id: str) -> FrozenSet[str]:
        """Snapshot of all live connection ids of a user."""
        return frozenset(self._user_index.get(user_id, ()))

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def rooms_of(self, connection_id: str) -> FrozenSet[str]:
        connection = self._connections.get(connection_id)
        return frozenset(connection.rooms) if connection else frozenset()

    def is_online(self, user_id: str) -> bool:
        return bool(self._user_index.get(user_id))

    def online_user_ids(self) -> FrozenSet[str]:
        return frozenset(self._user_index)

    def __len__(self) -> int:
        return len(self._connections)
