"""Membership oracle: is user U an active member of room R, and with what role.

Answers come from the store and are cached per (room, user) for a short
window so a burst of room activity does not cost one store round trip per
event.

Cache rules:
    - A cached positive may outlive a removal made by another process for at
      most ``ttl_seconds``. That bounded staleness is accepted.
    - Membership writes routed through this oracle (create room, add, remove,
      change role) invalidate the affected entries before they return, so a
      removal made here is visible to the very next lookup.
    - A lookup that raced with an invalidation never writes its (possibly
      pre-write) answer back into the cache.
    - Nothing survives a restart; a cold cache falls through to the store.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Optional, Sequence, Tuple

from roomwire.errors import AccessDenied, NotFound, ValidationError
from roomwire.store import (
    MANAGER_ROLES,
    ChatStore,
    MemberRole,
    Room,
    RoomMember,
    RoomType,
    run_sync,
)

logger = logging.getLogger(__name__)

_Key = Tuple[str, str]  # (room_id, user_id)


@dataclass(frozen=True)
class MembershipStatus:
    """Answer of a membership lookup. ``role`` is None unless active."""
    active: bool
    role: Optional[MemberRole] = None


@dataclass
class _CacheEntry:
    status: MembershipStatus
    expires_at: float


class MembershipOracle:
    """Cached view of room membership plus the membership-mutating operations."""

    def __init__(
        self,
        store: ChatStore,
        ttl_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._cache: Dict[_Key, _CacheEntry] = {}
        # key -> token of the lookup allowed to populate the cache
        self._pending: Dict[_Key, object] = {}

    # =========================================================================
    # Lookups
    # =========================================================================

    async def is_active_member(self, user_id: str, room_id: str) -> MembershipStatus:
        """Return whether user_id is an active member of room_id, and the role.

        Raises:
            NotFound: The room does not exist.
        """
        key = (room_id, user_id)
        entry = self._cache.get(key)
        if entry is not None:
            if entry.expires_at > self._clock():
                return entry.status
            del self._cache[key]

        token = object()
        self._pending[key] = token
        try:
            room = await run_sync(self._store.get_room, room_id)
            if room is None:
                raise NotFound("Room not found")
            member = await run_sync(self._store.get_membership, room_id, user_id)
        except Exception:
            if self._pending.get(key) is token:
                del self._pending[key]
            raise

        if member is not None and member.is_active:
            status = MembershipStatus(active=True, role=member.role)
        else:
            status = MembershipStatus(active=False)

        if self._pending.get(key) is token:
            del self._pending[key]
            if self._ttl > 0:
                self._cache[key] = _CacheEntry(status, self._clock() + self._ttl)
        return status

    async def require_member(self, user_id: str, room_id: str) -> MembershipStatus:
        """Like is_active_member, but raises AccessDenied for non-members."""
        status = await self.is_active_member(user_id, room_id)
        if not status.active:
            raise AccessDenied("Not a member of this room")
        return status

    async def require_role(
        self, user_id: str, room_id: str, roles: FrozenSet[MemberRole]
    ) -> MembershipStatus:
        status = await self.require_member(user_id, room_id)
        if status.role not in roles:
            raise AccessDenied("Insufficient permissions")
        return status

    # =========================================================================
    # Cache control
    # =========================================================================

    def invalidate(self, user_id: str, room_id: str) -> None:
        key = (room_id, user_id)
        self._cache.pop(key, None)
        self._pending.pop(key, None)

    def invalidate_room(self, room_id: str) -> None:
        for key in [k for k in self._cache if k[0] == room_id]:
            del self._cache[key]
        for key in [k for k in self._pending if k[0] == room_id]:
            del self._pending[key]

    def clear(self) -> None:
        self._cache.clear()
        self._pending.clear()

    # =========================================================================
    # Membership-mutating operations
    # =========================================================================

    async def create_room(
        self,
        creator_id: str,
        member_ids: Sequence[str],
        name: Optional[str] = None,
        description: Optional[str] = None,
        type_: RoomType = RoomType.GROUP,
        is_private: bool = False,
    ) -> Room:
        """Create a room owned by creator_id with the other ids as members."""
        wanted = [uid for uid in dict.fromkeys(member_ids) if uid != creator_id]
        known = await run_sync(self._store.get_users, wanted)
        missing = [uid for uid in wanted if uid not in known]
        if missing:
            raise NotFound(f"User not found: {missing[0]}")

        room = await run_sync(
            self._store.create_room,
            creator_id,
            wanted,
            name=name,
            description=description,
            type_=type_,
            is_private=is_private,
        )
        self.invalidate_room(room.id)
        logger.info("[Membership] Room %s created by %s", room.id, creator_id)
        return room

    async def add_member(
        self,
        actor_id: str,
        room_id: str,
        user_id: str,
        role: MemberRole = MemberRole.MEMBER,
    ) -> RoomMember:
        """Add a member, or re-activate a tombstoned membership.

        Raises:
            AccessDenied: The actor is not an active owner/admin.
            ValidationError: Role is not member/moderator, or the user is
                already an active member.
            NotFound: The room or the user does not exist.
        """
        await self.require_role(actor_id, room_id, MANAGER_ROLES)
        if role not in (MemberRole.MEMBER, MemberRole.MODERATOR):
            raise ValidationError("New members can only be added as member or moderator")

        user = await run_sync(self._store.get_user, user_id)
        if user is None:
            raise NotFound("User not found")
        existing = await run_sync(self._store.get_membership, room_id, user_id)
        if existing is not None and existing.is_active:
            raise ValidationError("User is already a member")

        member = await run_sync(self._store.upsert_membership, room_id, user_id, role)
        self.invalidate(user_id, room_id)
        logger.info(
            "[Membership] %s %s user %s to room %s as %s",
            actor_id, "re-activated" if existing else "added", user_id, room_id, role.value,
        )
        return member

    async def remove_member(self, actor_id: str, room_id: str, user_id: str) -> bool:
        """Tombstone a membership. Owners/admins may remove others; anyone may leave.

        Returns:
            True if an active membership was deactivated, False if there was
            nothing to remove.

        Raises:
            AccessDenied: Not allowed to remove this user.
            ValidationError: The owner tried to leave their own room.
        """
        actor = await self.is_active_member(actor_id, room_id)
        removing_self = actor_id == user_id

        if removing_self:
            if actor.role == MemberRole.OWNER:
                raise ValidationError("Owner cannot leave the room")
        else:
            if not actor.active or actor.role not in MANAGER_ROLES:
                raise AccessDenied("Insufficient permissions")
            target = await run_sync(self._store.get_membership, room_id, user_id)
            if target is not None and target.role == MemberRole.OWNER:
                raise AccessDenied("The room owner cannot be removed")

        removed = await run_sync(self._store.deactivate_membership, room_id, user_id)
        self.invalidate(user_id, room_id)
        if removed:
            logger.info("[Membership] %s removed user %s from room %s", actor_id, user_id, room_id)
        return removed

    async def change_role(
        self, actor_id: str, room_id: str, user_id: str, role: MemberRole
    ) -> RoomMember:
        """Change an active member's role. Only the owner grants or revokes admin."""
        actor = await self.require_role(actor_id, room_id, MANAGER_ROLES)
        if role == MemberRole.OWNER:
            raise ValidationError("Ownership cannot be transferred")

        target = await run_sync(self._store.get_membership, room_id, user_id)
        if target is None or not target.is_active:
            raise NotFound("User is not a member of this room")
        if target.role == MemberRole.OWNER:
            raise AccessDenied("The room owner's role cannot be changed")
        if MemberRole.ADMIN in (role, target.role) and actor.role != MemberRole.OWNER:
            raise AccessDenied("Only the owner can grant or revoke admin")

        member = await run_sync(self._store.set_member_role, room_id, user_id, role)
        self.invalidate(user_id, room_id)
        logger.info("[Membership] %s set role of %s in room %s to %s", actor_id, user_id, room_id, role.value)
        return member
