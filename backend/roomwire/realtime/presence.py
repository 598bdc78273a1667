"""Presence tracker.

Per-user status follows the user's live connections:

    offline -> online          first connection registered
    online  -> away / busy     explicit update_status (while connected)
    away/busy -> online        explicit update_status
    any     -> offline         last connection deregistered (last_seen set)

Every transition is written to the store and then announced with
``user_status_updated`` to every room the user is an active member of and
to all of the user's own devices. Presence is best-effort: a failed store
write is logged and the notification is still delivered.

The last status of each user is also kept in a short-lived in-memory cache
(``StatusCache``) for fast status reads. It is advisory and never used for
access control.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from roomwire.errors import NotFound, PersistenceError, ValidationError
from roomwire.realtime.events import OutboundEvent, StatusNotice, UserProfile, envelope
from roomwire.realtime.fanout import FanoutEngine
from roomwire.realtime.registry import Connection, ConnectionRegistry
from roomwire.store import ChatStore, User, UserStatus, run_sync, utcnow

logger = logging.getLogger(__name__)


class PresenceState(BaseModel):
    """Status of one user as served to clients."""
    userId: str
    status: UserStatus
    isOnline: bool
    lastSeen: Optional[datetime] = None
    source: str = "store"


@dataclass
class _CachedStatus:
    status: UserStatus
    is_online: bool
    last_seen: Optional[datetime]
    expires_at: float


class StatusCache:
    """In-memory per-user status with TTL-based expiry.

    Lives for the process lifetime only. Expired entries are dropped lazily
    on read and by ``purge_expired``.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, _CachedStatus] = {}
        self._ttl = ttl_seconds
        self._clock = clock

    def put(
        self,
        user_id: str,
        status: UserStatus,
        is_online: bool,
        last_seen: Optional[datetime] = None,
    ) -> None:
        self._entries[user_id] = _CachedStatus(
            status=status,
            is_online=is_online,
            last_seen=last_seen,
            expires_at=self._clock() + self._ttl,
        )

    def get(self, user_id: str) -> Optional[PresenceState]:
        """Return the cached status if present and not expired, else None."""
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[user_id]
            return None
        return PresenceState(
            userId=user_id,
            status=entry.status,
            isOnline=entry.is_online,
            lastSeen=entry.last_seen,
            source="cache",
        )

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [uid for uid, e in self._entries.items() if now >= e.expires_at]
        for uid in expired:
            del self._entries[uid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class _Transition:
    status: UserStatus
    is_online: bool
    last_seen: Optional[datetime]


class PresenceTracker:
    """Registry observer that owns status transitions and their notifications."""

    def __init__(
        self,
        store: ChatStore,
        registry: ConnectionRegistry,
        fanout: FanoutEngine,
        cache: Optional[StatusCache] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._fanout = fanout
        self.cache = cache or StatusCache()

        # user_id -> most recent transition requested, kept after offline too.
        # A write that finishes after a newer one re-persists the newest.
        self._latest: Dict[str, _Transition] = {}

    # =========================================================================
    # Registry observer
    # =========================================================================

    async def connection_opened(self, connection: Connection, first_for_user: bool) -> None:
        if not first_for_user:
            return
        await self._apply(
            connection.user,
            _Transition(UserStatus.ONLINE, True, None),
            exclude_connection_id=connection.connection_id,
        )

    async def connection_closed(self, connection: Connection, last_for_user: bool) -> None:
        await self._fanout.announce_departure(connection)
        if last_for_user and not self._registry.is_online(connection.user_id):
            await self._apply(
                connection.user,
                _Transition(UserStatus.OFFLINE, False, utcnow()),
                rooms_hint=connection.rooms,
            )

    # =========================================================================
    # Explicit updates and reads
    # =========================================================================

    async def update_status(self, user_id: str, status: UserStatus) -> bool:
        """Set an explicit status for a connected user.

        Returns:
            True if applied, False if the user has no live connection.

        Raises:
            ValidationError: ``offline`` was requested; it is only ever
                derived from the last connection closing.
        """
        if status == UserStatus.OFFLINE:
            raise ValidationError("status must be one of online, away, busy")
        devices = self._registry.connections_of_user(user_id)
        connection = next((self._registry.get(cid) for cid in devices), None)
        if connection is None:
            logger.debug("[Presence] Ignoring status %s for offline user %s", status.value, user_id)
            return False
        await self._apply(connection.user, _Transition(status, True, None))
        return True

    def current_status(self, user_id: str) -> Optional[UserStatus]:
        """Cached status of a user, if known."""
        state = self.cache.get(user_id)
        return state.status if state else None

    async def get_presence(self, user_id: str) -> PresenceState:
        """Status of a user: the advisory cache first, then the store."""
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached
        user = await run_sync(self._store.get_user, user_id)
        if user is None:
            raise NotFound("User not found")
        return PresenceState(
            userId=user.id,
            status=user.status,
            isOnline=user.is_online,
            lastSeen=user.last_seen,
            source="store",
        )

    # =========================================================================
    # Internal
    # =========================================================================

    async def _persist(self, user_id: str, transition: _Transition) -> bool:
        try:
            await run_sync(
                self._store.update_presence,
                user_id,
                transition.status,
                transition.is_online,
                last_seen=transition.last_seen,
            )
            return True
        except PersistenceError as e:
            logger.warning("[Presence] Failed to persist %s for user %s: %s", transition.status.value, user_id, e)
            return False

    async def _notify_rooms(self, user_id: str, rooms_hint: Iterable[str]) -> List[str]:
        try:
            return await run_sync(self._store.list_active_room_ids, user_id)
        except PersistenceError as e:
            logger.warning("[Presence] Falling back to subscribed rooms for %s: %s", user_id, e)
            rooms = set(rooms_hint)
            for connection_id in self._registry.connections_of_user(user_id):
                rooms.update(self._registry.rooms_of(connection_id))
            return sorted(rooms)

    async def _apply(
        self,
        user: User,
        transition: _Transition,
        exclude_connection_id: Optional[str] = None,
        rooms_hint: Iterable[str] = (),
    ) -> None:
        self._latest[user.id] = transition
        self.cache.put(user.id, transition.status, transition.is_online, transition.last_seen)

        await self._persist(user.id, transition)
        latest = self._latest[user.id]
        if latest is not transition:
            # A newer transition started while this write was in flight and
            # its write may already have landed; the newest one must win.
            await self._persist(user.id, latest)
            logger.debug("[Presence] Superseded %s for user %s", transition.status.value, user.id)
            return

        logger.info("[Presence] User %s is now %s", user.id, transition.status.value)
        profile = UserProfile.from_user(user).model_copy(
            update={"status": transition.status, "isOnline": transition.is_online}
        )
        notice = StatusNotice(userId=user.id, status=transition.status, user=profile)
        room_ids = await self._notify_rooms(user.id, rooms_hint)
        await self._fanout.broadcast_to_rooms(
            room_ids,
            envelope(OutboundEvent.USER_STATUS_UPDATED, notice),
            also=self._registry.connections_of_user(user.id),
            exclude_connection_id=exclude_connection_id,
        )
