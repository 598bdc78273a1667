"""Message pipeline: validate, persist, hydrate, then fan out.

Every mutating operation follows the same order:

    1. Re-check membership through the oracle (subscription state is never
       trusted for authorization).
    2. Validate the input.
    3. Write through the store. A failed write raises PersistenceError and
       nothing is broadcast.
    4. Hydrate the post-write state and broadcast it to the room.

For a single connection, events are handled one at a time, so two messages
sent by the same connection are broadcast in the order the store accepted
them. Across senders there is no global order beyond each write's commit;
clients should sort by ``createdAt``.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from roomwire.config import MessageSettings
from roomwire.errors import AccessDenied, NotFound, PersistenceError, ValidationError
from roomwire.realtime.events import (
    HydratedMessage,
    OutboundEvent,
    PinnedMessageView,
    ReadNotice,
    RoomFileView,
    envelope,
)
from roomwire.realtime.fanout import FanoutEngine
from roomwire.realtime.membership import MembershipOracle
from roomwire.store import (
    MODERATOR_ROLES,
    AttachmentCreate,
    ChatStore,
    Message,
    MessageType,
    ReadReceipt,
    run_sync,
    utcnow,
)

logger = logging.getLogger(__name__)


class MessagePipeline:
    """Message, reaction, read-receipt and pin operations for one service."""

    def __init__(
        self,
        store: ChatStore,
        oracle: MembershipOracle,
        fanout: FanoutEngine,
        settings: Optional[MessageSettings] = None,
    ) -> None:
        self._store = store
        self._oracle = oracle
        self._fanout = fanout
        self._settings = settings or MessageSettings()

    # =========================================================================
    # Hydration
    # =========================================================================

    def _hydrate_sync(self, messages: Sequence[Message]) -> List[HydratedMessage]:
        """Attach sender profiles, reply context, files and reactions.

        Runs on the executor; all lookups are batched per call.
        """
        if not messages:
            return []
        ids = [m.id for m in messages]
        attachments = self._store.list_attachments(ids)
        reactions = self._store.list_reactions(ids)
        replies = self._store.get_messages([m.reply_to_id for m in messages if m.reply_to_id])

        user_ids = {m.sender_id for m in messages}
        user_ids.update(r.sender_id for r in replies.values())
        for items in reactions.values():
            user_ids.update(r.user_id for r in items)
        users = self._store.get_users(list(user_ids))

        return [
            HydratedMessage.build(
                m,
                users,
                reply_to=replies.get(m.reply_to_id) if m.reply_to_id else None,
                attachments=attachments.get(m.id),
                reactions=reactions.get(m.id),
            )
            for m in messages
        ]

    async def _hydrate(self, message: Message) -> HydratedMessage:
        hydrated = await run_sync(self._hydrate_sync, [message])
        return hydrated[0]

    async def _load(self, message_id: str) -> Message:
        message = await run_sync(self._store.get_message, message_id)
        if message is None:
            raise NotFound("Message not found")
        return message

    # =========================================================================
    # Validation helpers
    # =========================================================================

    def _check_content(self, content: Optional[str], required: bool) -> Optional[str]:
        if content is not None and not content.strip():
            content = None
        if content is None:
            if required:
                raise ValidationError("Message content is required")
            return None
        if len(content) > self._settings.max_content_length:
            raise ValidationError(
                f"Message content exceeds {self._settings.max_content_length} characters"
            )
        return content

    def _page_size(self, limit: Optional[int]) -> int:
        if limit is None:
            return self._settings.default_page_size
        if limit < 1:
            raise ValidationError("limit must be a positive integer")
        return min(limit, self._settings.max_page_size)

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(
        self,
        user_id: str,
        room_id: str,
        content: Optional[str],
        type_: MessageType = MessageType.TEXT,
        reply_to_id: Optional[str] = None,
        attachments: Optional[Sequence[AttachmentCreate]] = None,
    ) -> HydratedMessage:
        """Persist a new message and broadcast it as ``new_message``.

        Raises:
            NotFound: The room does not exist.
            AccessDenied: The sender is not an active member.
            ValidationError: Empty or oversized content, too many files, a
                client-sent system message, or a reply target outside the room.
            PersistenceError: The store rejected the write; nothing is sent.
        """
        await self._oracle.require_member(user_id, room_id)

        files = list(attachments or [])
        if type_ == MessageType.SYSTEM:
            raise ValidationError("System messages cannot be sent by clients")
        if len(files) > self._settings.max_attachments:
            raise ValidationError(f"At most {self._settings.max_attachments} files per message")
        content = self._check_content(content, required=type_ == MessageType.TEXT and not files)

        if reply_to_id is not None:
            target = await run_sync(self._store.get_message, reply_to_id)
            if target is None or target.room_id != room_id:
                raise ValidationError("Reply target must be a message in the same room")

        message = await run_sync(
            self._store.create_message,
            room_id,
            user_id,
            content,
            type_=type_,
            reply_to_id=reply_to_id,
            attachments=files,
        )
        if message is None:
            raise PersistenceError("Message was not stored")

        hydrated = await self._hydrate(message)
        delivered = await self._fanout.broadcast_to_room(
            room_id, envelope(OutboundEvent.NEW_MESSAGE, hydrated)
        )
        logger.info(
            "[Pipeline] Message %s from %s in room %s delivered to %d connection(s)",
            message.id, user_id, room_id, delivered,
        )

        try:
            await run_sync(self._store.touch_room, room_id)
        except PersistenceError as e:
            logger.warning("[Pipeline] Failed to touch room %s: %s", room_id, e)
        return hydrated

    async def edit_message(self, user_id: str, message_id: str, content: str) -> HydratedMessage:
        """Replace a message's content. Only the sender may edit."""
        message = await self._load(message_id)
        await self._oracle.require_member(user_id, message.room_id)
        if message.sender_id != user_id:
            raise AccessDenied("You can only edit your own messages")
        if message.is_deleted:
            raise ValidationError("Cannot edit a deleted message")
        content = self._check_content(content, required=True)

        updated = await run_sync(self._store.update_message_content, message_id, content)
        if updated is None or updated.is_deleted:
            raise ValidationError("Cannot edit a deleted message")

        hydrated = await self._hydrate(updated)
        await self._fanout.broadcast_to_room(
            updated.room_id, envelope(OutboundEvent.MESSAGE_UPDATED, hydrated)
        )
        logger.info("[Pipeline] Message %s edited by %s", message_id, user_id)
        return hydrated

    async def delete_message(self, user_id: str, message_id: str) -> HydratedMessage:
        """Soft-delete a message (sender, or owner/admin/moderator of the room).

        Deleting an already deleted message is a no-op and broadcasts nothing.
        """
        message = await self._load(message_id)
        status = await self._oracle.require_member(user_id, message.room_id)
        if message.sender_id != user_id and status.role not in MODERATOR_ROLES:
            raise AccessDenied("Insufficient permissions to delete this message")

        if message.is_deleted:
            return await self._hydrate(message)

        deleted, changed = await run_sync(self._store.soft_delete_message, message_id)
        if deleted is None:
            raise NotFound("Message not found")
        hydrated = await self._hydrate(deleted)
        if changed:
            await self._fanout.broadcast_to_room(
                deleted.room_id, envelope(OutboundEvent.MESSAGE_UPDATED, hydrated)
            )
            logger.info("[Pipeline] Message %s deleted by %s", message_id, user_id)
        return hydrated

    async def get_message(self, user_id: str, message_id: str) -> HydratedMessage:
        message = await self._load(message_id)
        await self._oracle.require_member(user_id, message.room_id)
        return await self._hydrate(message)

    async def history(
        self,
        user_id: str,
        room_id: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Tuple[List[HydratedMessage], Optional[str]]:
        """One page of non-deleted messages older than ``cursor``.

        Returns:
            Tuple of (messages oldest-first, next cursor or None when there
            is nothing older).
        """
        await self._oracle.require_member(user_id, room_id)
        size = self._page_size(limit)
        if cursor is not None:
            anchor = await run_sync(self._store.get_message, cursor)
            if anchor is None or anchor.room_id != room_id:
                raise ValidationError("Invalid cursor")

        rows = await run_sync(self._store.list_messages, room_id, before_id=cursor, limit=size + 1)
        page = rows[:size]
        next_cursor = page[-1].id if len(rows) > size else None
        hydrated = await run_sync(self._hydrate_sync, list(reversed(page)))
        return hydrated, next_cursor

    async def search(
        self, user_id: str, room_id: str, query: str, limit: Optional[int] = None
    ) -> List[HydratedMessage]:
        """Case-insensitive substring search over a room's live messages."""
        await self._oracle.require_member(user_id, room_id)
        query = (query or "").strip()
        if not query:
            raise ValidationError("Search query is required")
        rows = await run_sync(self._store.search_messages, room_id, query, limit=self._page_size(limit))
        return await run_sync(self._hydrate_sync, rows)

    # =========================================================================
    # Reactions and read receipts
    # =========================================================================

    async def toggle_reaction(self, user_id: str, message_id: str, emoji: str) -> HydratedMessage:
        """Add the reaction, or remove it if this user already left it.

        Broadcasts ``message_updated`` with the full post-toggle reaction list.
        """
        emoji = (emoji or "").strip()
        if not emoji or len(emoji) > self._settings.max_emoji_length:
            raise ValidationError("Invalid emoji")

        message = await self._load(message_id)
        await self._oracle.require_member(user_id, message.room_id)
        if message.is_deleted:
            raise ValidationError("Cannot react to a deleted message")

        added = await run_sync(self._store.toggle_reaction, message_id, user_id, emoji)
        hydrated = await self._hydrate(message)
        await self._fanout.broadcast_to_room(
            message.room_id, envelope(OutboundEvent.MESSAGE_UPDATED, hydrated)
        )
        logger.debug(
            "[Pipeline] Reaction %s %s on %s by %s",
            emoji, "added" if added else "removed", message_id, user_id,
        )
        return hydrated

    async def mark_read(
        self,
        user_id: str,
        message_ids: Sequence[str],
        read_at: Optional[datetime] = None,
    ) -> List[ReadReceipt]:
        """Record read receipts and announce them with ``message_read``.

        Receipts only move forward: an earlier ``read_at`` than the stored
        one leaves the stored value in place. All messages must exist and
        the reader must be an active member of every room involved; nothing
        is written otherwise. Receipts on deleted messages are stored but
        not announced.
        """
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            raise ValidationError("At least one message id is required")
        messages = await run_sync(self._store.get_messages, ids)
        missing = [mid for mid in ids if mid not in messages]
        if missing:
            raise NotFound(f"Message not found: {missing[0]}")
        for room_id in sorted({m.room_id for m in messages.values()}):
            await self._oracle.require_member(user_id, room_id)

        read_at = read_at or utcnow()
        receipts: List[ReadReceipt] = []
        for message_id in ids:
            receipt = await run_sync(self._store.upsert_read_receipt, message_id, user_id, read_at)
            receipts.append(receipt)

        for receipt in receipts:
            message = messages[receipt.message_id]
            if message.is_deleted:
                continue
            notice = ReadNotice(messageId=receipt.message_id, userId=user_id, readAt=receipt.read_at)
            await self._fanout.broadcast_to_room(message.room_id, envelope(OutboundEvent.MESSAGE_READ, notice))
        return receipts

    # =========================================================================
    # Pins and files
    # =========================================================================

    async def _load_in_room(self, room_id: str, message_id: str) -> Message:
        message = await run_sync(self._store.get_message, message_id)
        if message is None or message.room_id != room_id:
            raise NotFound("Message not found in this room")
        return message

    async def pin_message(self, user_id: str, room_id: str, message_id: str) -> PinnedMessageView:
        """Pin a message (owner/admin/moderator). Pinning twice is a no-op."""
        await self._oracle.require_role(user_id, room_id, MODERATOR_ROLES)
        message = await self._load_in_room(room_id, message_id)
        if message.is_deleted:
            raise ValidationError("Cannot pin a deleted message")
        pin = await run_sync(self._store.pin_message, room_id, message_id, user_id)
        logger.info("[Pipeline] Message %s pinned in room %s by %s", message_id, room_id, user_id)
        return PinnedMessageView(
            roomId=pin.room_id,
            messageId=pin.message_id,
            pinnedBy=pin.pinned_by,
            pinnedAt=pin.pinned_at,
            message=await self._hydrate(message),
        )

    async def unpin_message(self, user_id: str, room_id: str, message_id: str) -> None:
        await self._oracle.require_role(user_id, room_id, MODERATOR_ROLES)
        if not await run_sync(self._store.unpin_message, room_id, message_id):
            raise NotFound("Message is not pinned")
        logger.info("[Pipeline] Message %s unpinned in room %s by %s", message_id, room_id, user_id)

    async def list_pinned(self, user_id: str, room_id: str) -> List[PinnedMessageView]:
        """Pinned messages of a room, newest pin first."""
        await self._oracle.require_member(user_id, room_id)
        return await run_sync(self._list_pinned_sync, room_id)

    def _list_pinned_sync(self, room_id: str) -> List[PinnedMessageView]:
        pins = self._store.list_pinned(room_id)
        messages = self._store.get_messages([p.message_id for p in pins])
        hydrated: Dict[str, HydratedMessage] = {
            h.id: h for h in self._hydrate_sync(list(messages.values()))
        }
        return [
            PinnedMessageView(
                roomId=p.room_id,
                messageId=p.message_id,
                pinnedBy=p.pinned_by,
                pinnedAt=p.pinned_at,
                message=hydrated.get(p.message_id),
            )
            for p in pins
        ]

    async def list_files(
        self,
        user_id: str,
        room_id: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Tuple[List[RoomFileView], Optional[str]]:
        """One page of a room's file records, newest first.

        An unknown cursor yields an empty page.
        """
        await self._oracle.require_member(user_id, room_id)
        size = self._page_size(limit)
        rows = await run_sync(self._store.list_room_attachments, room_id, before_id=cursor, limit=size + 1)
        page = rows[:size]
        next_cursor = page[-1].id if len(rows) > size else None
        users = await run_sync(self._store.get_users, list({a.user_id for a in page}))
        return [RoomFileView.build(a, users) for a in page], next_cursor
