"""Chat hub: composition root of the realtime core.

One ``ChatHub`` owns one registry, oracle, fanout engine, presence tracker
and message pipeline around a single store and token service. The WebSocket
router only ever talks to the hub:

    connection = await hub.connect(websocket, token)
    while True:
        await hub.handle(connection.connection_id, await websocket.receive_text())
    ...
    await hub.disconnect(connection.connection_id)

``handle`` is the per-event error boundary. A ``ChatError`` becomes an
``error`` event for the originating connection; anything else is logged and
reported as a generic internal error. Neither closes the connection.
"""
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel

from roomwire.auth import TokenService
from roomwire.config import AppConfig, MessageSettings
from roomwire.errors import AuthenticationError, ChatError, PersistenceError
from roomwire.realtime.events import (
    AddReactionPayload,
    ConnectedNotice,
    ErrorNotice,
    InboundEvent,
    MarkReadPayload,
    OutboundEvent,
    RoomPayload,
    SendMessagePayload,
    TypingNotice,
    UpdateStatusPayload,
    UserProfile,
    envelope,
    parse_frame,
)
from roomwire.realtime.fanout import FanoutEngine
from roomwire.realtime.membership import MembershipOracle
from roomwire.realtime.pipeline import MessagePipeline
from roomwire.realtime.presence import PresenceTracker, StatusCache
from roomwire.realtime.registry import Connection, ConnectionRegistry, Transport
from roomwire.store import ChatStore, User, run_sync

logger = logging.getLogger(__name__)

INTERNAL_ERROR = ErrorNotice(message="Internal server error", code="internal_error")


class ChatHub:
    """Wires the realtime components together and dispatches inbound events."""

    def __init__(
        self,
        store: ChatStore,
        tokens: TokenService,
        membership_ttl_seconds: float = 5.0,
        status_cache_ttl_seconds: float = 300.0,
        message_settings: Optional[MessageSettings] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.registry = ConnectionRegistry(store)
        self.oracle = MembershipOracle(store, ttl_seconds=membership_ttl_seconds)
        self.fanout = FanoutEngine(self.registry, self.oracle)
        self.presence = PresenceTracker(
            store, self.registry, self.fanout, cache=StatusCache(status_cache_ttl_seconds)
        )
        self.registry.add_observer(self.presence)
        self.pipeline = MessagePipeline(store, self.oracle, self.fanout, message_settings)

        self._handlers: Dict[InboundEvent, Callable[[Connection, Any], Awaitable[None]]] = {
            InboundEvent.JOIN_ROOM: self._on_join_room,
            InboundEvent.LEAVE_ROOM: self._on_leave_room,
            InboundEvent.SEND_MESSAGE: self._on_send_message,
            InboundEvent.TYPING_START: self._on_typing_start,
            InboundEvent.TYPING_STOP: self._on_typing_stop,
            InboundEvent.ADD_REACTION: self._on_add_reaction,
            InboundEvent.MARK_READ: self._on_mark_read,
            InboundEvent.UPDATE_STATUS: self._on_update_status,
        }

    @classmethod
    def create(cls, config: AppConfig, store: ChatStore) -> "ChatHub":
        """Build a hub from application config."""
        return cls(
            store,
            TokenService.from_secrets(config.secrets.jwt),
            membership_ttl_seconds=config.membership.cache_ttl_seconds,
            status_cache_ttl_seconds=config.presence.status_cache_ttl_seconds,
            message_settings=config.messages,
        )

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def authenticate(self, token: Optional[str]) -> User:
        """Resolve a bearer token to an active (non-blocked) user.

        Raises:
            AuthenticationError: Bad token, unknown or blocked user.
        """
        user_id = self.tokens.verify(token)
        user = await run_sync(self.store.get_user, user_id)
        if user is None or user.is_blocked:
            raise AuthenticationError("Authentication error")
        return user

    async def connect(
        self,
        transport: Transport,
        token: Optional[str],
        connection_id: Optional[str] = None,
    ) -> Connection:
        """Authenticate, register and auto-subscribe a new connection.

        Subscribes the connection to every room the user is an active member
        of, then sends it a ``connected`` event.

        Raises:
            AuthenticationError: Bad token, unknown or blocked user.
            PersistenceError: The store could not be reached. The
                connection is not left registered.
        """
        user_id = self.tokens.verify(token)
        connection_id = connection_id or str(uuid.uuid4())
        connection = await self.registry.register(connection_id, user_id, transport)

        try:
            room_ids = await run_sync(self.store.list_active_room_ids, user_id)
        except PersistenceError:
            await self.registry.deregister(connection_id)
            raise
        for room_id in room_ids:
            self.registry.subscribe(connection_id, room_id)

        profile = UserProfile.from_user(connection.user)
        status = self.presence.current_status(user_id)
        if status is not None:
            profile = profile.model_copy(update={"status": status, "isOnline": True})
        notice = ConnectedNotice(
            connectionId=connection_id,
            user=profile,
            rooms=sorted(self.registry.rooms_of(connection_id)),
        )
        await self.fanout.send_to_connection(connection_id, envelope(OutboundEvent.CONNECTED, notice))
        logger.info("[WS] User %s connected as %s (%d room(s))", user_id, connection_id, len(room_ids))
        return connection

    async def disconnect(self, connection_id: str) -> bool:
        """Deregister a connection. Safe to call more than once."""
        return await self.registry.deregister(connection_id) is not None

    async def shutdown(self) -> int:
        """Force-close every live connection."""
        return await self.registry.close_all()

    # =========================================================================
    # Inbound events
    # =========================================================================

    async def handle(self, connection_id: str, raw: Any) -> None:
        """Parse and dispatch one inbound frame; never raises."""
        connection = self.registry.get(connection_id)
        if connection is None:
            logger.debug("[WS] Dropping frame for unknown connection %s", connection_id)
            return

        event_name = "unknown"
        try:
            event, payload = parse_frame(raw)
            event_name = event.value
            await self._handlers[event](connection, payload)
        except ChatError as exc:
            logger.info(
                "[WS] %s from %s rejected: %s (%s)",
                event_name, connection_id, exc.message, exc.code,
            )
            await self._send_error(connection_id, ErrorNotice(message=exc.message, code=exc.code))
        except Exception:
            logger.exception("[WS] Unexpected error handling %s from %s", event_name, connection_id)
            await self._send_error(connection_id, INTERNAL_ERROR)

    async def _send_error(self, connection_id: str, notice: BaseModel) -> None:
        await self.fanout.send_to_connection(connection_id, envelope(OutboundEvent.ERROR, notice))

    async def _on_join_room(self, connection: Connection, payload: RoomPayload) -> None:
        await self.fanout.join_room(connection.connection_id, payload.roomId)

    async def _on_leave_room(self, connection: Connection, payload: RoomPayload) -> None:
        await self.fanout.leave_room(connection.connection_id, payload.roomId)

    async def _on_send_message(self, connection: Connection, payload: SendMessagePayload) -> None:
        await self.pipeline.send_message(
            connection.user_id,
            payload.roomId,
            payload.content,
            type_=payload.type,
            reply_to_id=payload.replyToId,
            attachments=[f.to_create() for f in payload.files or []],
        )

    async def _typing(self, connection: Connection, room_id: str, is_typing: bool) -> None:
        # Best-effort: only rooms this connection listens to, no store lookup
        if room_id not in connection.rooms:
            logger.debug("[WS] Ignoring typing from %s for unsubscribed room %s", connection.connection_id, room_id)
            return
        notice = TypingNotice(roomId=room_id, user=UserProfile.from_user(connection.user), isTyping=is_typing)
        await self.fanout.broadcast_to_room(
            room_id,
            envelope(OutboundEvent.USER_TYPING, notice),
            exclude_connection_id=connection.connection_id,
        )

    async def _on_typing_start(self, connection: Connection, payload: RoomPayload) -> None:
        await self._typing(connection, payload.roomId, True)

    async def _on_typing_stop(self, connection: Connection, payload: RoomPayload) -> None:
        await self._typing(connection, payload.roomId, False)

    async def _on_add_reaction(self, connection: Connection, payload: AddReactionPayload) -> None:
        await self.pipeline.toggle_reaction(connection.user_id, payload.messageId, payload.emoji)

    async def _on_mark_read(self, connection: Connection, payload: MarkReadPayload) -> None:
        await self.pipeline.mark_read(connection.user_id, payload.ids)

    async def _on_update_status(self, connection: Connection, payload: UpdateStatusPayload) -> None:
        await self.presence.update_status(connection.user_id, payload.status)
