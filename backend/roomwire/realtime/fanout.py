"""Room fanout engine.

Delivers outbound envelopes to the live connections subscribed to a room.
Targets are resolved from the connection registry at the instant of the
call; every target gets exactly one send, concurrently via asyncio.gather().

A connection whose send fails is treated as dead and deregistered after the
batch completes, which in turn drives the presence tracker's disconnect
handling. Failed sends are never retried.

Join/leave also live here because they are the only operations that change
which connections a room broadcast reaches.
"""
import asyncio
import logging
from typing import Iterable, List, Optional

from roomwire.realtime.events import (
    Envelope,
    OutboundEvent,
    RoomRef,
    RoomUserNotice,
    UserProfile,
    envelope,
)
from roomwire.realtime.membership import MembershipOracle
from roomwire.realtime.registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


class FanoutEngine:
    """Resolves delivery targets and dispatches envelopes to them."""

    def __init__(self, registry: ConnectionRegistry, oracle: MembershipOracle) -> None:
        self._registry = registry
        self._oracle = oracle

    # =========================================================================
    # Delivery
    # =========================================================================

    async def deliver(self, connection_ids: Iterable[str], message: Envelope) -> int:
        """Send one envelope to each given connection concurrently.

        Args:
            connection_ids: Target connection ids. Duplicates are collapsed.
            message: The envelope to send.

        Returns:
            Number of connections the envelope was delivered to.
        """
        targets: List[Connection] = []
        for connection_id in dict.fromkeys(connection_ids):
            connection = self._registry.get(connection_id)
            if connection is not None:
                targets.append(connection)
        if not targets:
            return 0

        wire = message.to_wire()
        results = await asyncio.gather(
            *[self._safe_send(conn, wire) for conn in targets],
            return_exceptions=True,
        )

        failed = [conn for conn, ok in zip(targets, results) if ok is not True]
        for conn in failed:
            logger.info("[Fanout] Dropping connection %s after failed send", conn.connection_id)
            await self._registry.deregister(conn.connection_id)
        return len(targets) - len(failed)

    async def _safe_send(self, connection: Connection, wire: dict) -> bool:
        """Send to one transport.

        Returns:
            True if successful, False if the transport failed.
        """
        try:
            await connection.transport.send_json(wire)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {connection.connection_id}: {e}")
            return False

    async def send_to_connection(self, connection_id: str, message: Envelope) -> bool:
        return await self.deliver([connection_id], message) == 1

    async def send_to_user(self, user_id: str, message: Envelope) -> int:
        """Deliver to every live device of a user."""
        return await self.deliver(self._registry.connections_of_user(user_id), message)

    async def broadcast_to_room(
        self,
        room_id: str,
        message: Envelope,
        exclude_connection_id: Optional[str] = None,
    ) -> int:
        """Deliver to every connection subscribed to room_id.

        Args:
            room_id: Target room.
            message: The envelope to send.
            exclude_connection_id: Originating connection to skip, if any.

        Returns:
            Number of connections reached.
        """
        targets = self._registry.connections_for(room_id)
        if exclude_connection_id is not None:
            targets = targets - {exclude_connection_id}
        delivered = await self.deliver(targets, message)
        logger.debug(
            "[Fanout] %s -> room %s: %d/%d delivered",
            message.event.value, room_id, delivered, len(targets),
        )
        return delivered

    async def broadcast_to_rooms(
        self,
        room_ids: Iterable[str],
        message: Envelope,
        also: Iterable[str] = (),
        exclude_connection_id: Optional[str] = None,
    ) -> int:
        """Deliver once to the union of several rooms' subscribers.

        A connection subscribed to more than one of the rooms receives the
        envelope once. ``also`` adds extra connection ids (a user's own
        devices, for presence).
        """
        targets = set(also)
        for room_id in room_ids:
            targets.update(self._registry.connections_for(room_id))
        targets.discard(exclude_connection_id)
        return await self.deliver(targets, message)

    # =========================================================================
    # Join / leave
    # =========================================================================

    def _other_device_in_room(self, user_id: str, room_id: str, connection_id: str) -> bool:
        devices = self._registry.connections_of_user(user_id) - {connection_id}
        return bool(devices & self._registry.connections_for(room_id))

    async def join_room(self, connection_id: str, room_id: str) -> bool:
        """Subscribe a connection to a room after checking membership.

        Returns:
            True if the connection is subscribed afterwards.

        Raises:
            NotFound: The room does not exist.
            AccessDenied: The user is not an active member. Nothing is
                subscribed and nobody is notified.
        """
        connection = self._registry.get(connection_id)
        if connection is None:
            return False
        await self._oracle.require_member(connection.user_id, room_id)

        already_present = self._other_device_in_room(connection.user_id, room_id, connection_id)
        added = self._registry.subscribe(connection_id, room_id)
        if not added and self._registry.get(connection_id) is None:
            # Disconnected while the membership lookup was in flight
            return False

        await self.send_to_connection(connection_id, envelope(OutboundEvent.JOINED_ROOM, RoomRef(roomId=room_id)))
        if added:
            logger.info("[Fanout] User %s joined room %s (%s)", connection.user_id, room_id, connection_id)
        if added and not already_present:
            notice = RoomUserNotice(roomId=room_id, user=UserProfile.from_user(connection.user))
            await self.broadcast_to_room(
                room_id,
                envelope(OutboundEvent.USER_JOINED, notice),
                exclude_connection_id=connection_id,
            )
        return True

    async def leave_room(self, connection_id: str, room_id: str) -> bool:
        """Stop listening to a room. No membership check.

        Returns:
            True if the connection was subscribed before the call.
        """
        connection = self._registry.get(connection_id)
        if connection is None:
            return False
        was_subscribed = self._registry.unsubscribe(connection_id, room_id)
        await self.send_to_connection(connection_id, envelope(OutboundEvent.LEFT_ROOM, RoomRef(roomId=room_id)))
        if was_subscribed:
            logger.info("[Fanout] User %s left room %s (%s)", connection.user_id, room_id, connection_id)
            if not self._other_device_in_room(connection.user_id, room_id, connection_id):
                notice = RoomUserNotice(roomId=room_id, user=UserProfile.from_user(connection.user))
                await self.broadcast_to_room(room_id, envelope(OutboundEvent.USER_LEFT, notice))
        return was_subscribed

    async def announce_departure(self, connection: Connection) -> None:
        """Send user_left to the rooms a closed connection was subscribed to.

        Rooms where the same user still has another live connection
        subscribed are skipped. Called after the connection has already been
        removed from the registry.
        """
        notice_user = UserProfile.from_user(connection.user)
        for room_id in sorted(connection.rooms):
            still_present = self._registry.connections_of_user(connection.user_id) & self._registry.connections_for(room_id)
            if still_present:
                continue
            notice = RoomUserNotice(roomId=room_id, user=notice_user)
            await self.broadcast_to_room(room_id, envelope(OutboundEvent.USER_LEFT, notice))
