"""DuckDB-backed chat store.

This module is the persistent-store collaborator of the realtime core. It
owns every durable entity (users, rooms, memberships, messages, attachments,
reactions, read receipts, pins) and exposes plain synchronous
create/read/update/soft-delete operations over them.

Database Schema:
    users            one row per account (presence columns included)
    rooms            room metadata, ``updated_at`` doubles as last activity
    room_members     (room_id, user_id) unique; inactive rows are tombstones
    messages         soft-deletable; ``seq`` gives a stable cursor order
    attachments      file records hanging off a message
    reactions        (message_id, user_id, emoji) unique
    read_receipts    (message_id, user_id) unique, read_at only moves forward
    pinned_messages  (room_id, message_id) unique

Thread Safety:
    A single DuckDB connection is shared and guarded by a lock. The async
    core never calls the store directly from the event loop; it goes through
    ``run_sync`` so each call runs on the default executor.

Usage:
    store = ChatStore(db_path=":memory:")
    user = store.create_user("ada@example.com", "ada", "Ada")
    room = store.create_room(user.id, name="general", member_ids=[])
"""
import asyncio
import functools
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

import duckdb

from roomwire.errors import PersistenceError

from .schemas import (
    Attachment,
    AttachmentCreate,
    MemberRole,
    Message,
    MessageType,
    PinnedMessage,
    Reaction,
    ReadReceipt,
    Room,
    RoomMember,
    RoomType,
    User,
    UserStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what DuckDB TIMESTAMP columns return."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def run_sync(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking store call on the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


# =============================================================================
# Schema
# =============================================================================

_SCHEMA = (
    "CREATE SEQUENCE IF NOT EXISTS message_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS attachment_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS users (
        id           VARCHAR PRIMARY KEY,
        email        VARCHAR NOT NULL UNIQUE,
        username     VARCHAR NOT NULL UNIQUE,
        display_name VARCHAR NOT NULL,
        avatar       VARCHAR,
        bio          VARCHAR,
        status       VARCHAR NOT NULL DEFAULT 'offline',
        is_online    BOOLEAN NOT NULL DEFAULT false,
        is_blocked   BOOLEAN NOT NULL DEFAULT false,
        last_seen    TIMESTAMP,
        created_at   TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rooms (
        id          VARCHAR PRIMARY KEY,
        name        VARCHAR,
        description VARCHAR,
        avatar      VARCHAR,
        type        VARCHAR NOT NULL DEFAULT 'group',
        is_private  BOOLEAN NOT NULL DEFAULT false,
        created_by  VARCHAR NOT NULL,
        created_at  TIMESTAMP NOT NULL,
        updated_at  TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS room_members (
        room_id   VARCHAR NOT NULL,
        user_id   VARCHAR NOT NULL,
        role      VARCHAR NOT NULL DEFAULT 'member',
        is_active BOOLEAN NOT NULL DEFAULT true,
        joined_at TIMESTAMP NOT NULL,
        left_at   TIMESTAMP,
        PRIMARY KEY (room_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id          VARCHAR PRIMARY KEY,
        seq         BIGINT NOT NULL DEFAULT nextval('message_seq'),
        room_id     VARCHAR NOT NULL,
        sender_id   VARCHAR NOT NULL,
        content     VARCHAR,
        type        VARCHAR NOT NULL DEFAULT 'text',
        reply_to_id VARCHAR,
        is_edited   BOOLEAN NOT NULL DEFAULT false,
        edited_at   TIMESTAMP,
        is_deleted  BOOLEAN NOT NULL DEFAULT false,
        deleted_at  TIMESTAMP,
        created_at  TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id)",
    """
    CREATE TABLE IF NOT EXISTS attachments (
        id            VARCHAR PRIMARY KEY,
        seq           BIGINT NOT NULL DEFAULT nextval('attachment_seq'),
        message_id    VARCHAR NOT NULL,
        room_id       VARCHAR NOT NULL,
        user_id       VARCHAR NOT NULL,
        filename      VARCHAR NOT NULL,
        original_name VARCHAR NOT NULL,
        mime_type     VARCHAR NOT NULL,
        size          BIGINT NOT NULL,
        url           VARCHAR NOT NULL,
        thumbnail_url VARCHAR,
        created_at    TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reactions (
        message_id VARCHAR NOT NULL,
        user_id    VARCHAR NOT NULL,
        emoji      VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, user_id, emoji)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS read_receipts (
        message_id VARCHAR NOT NULL,
        user_id    VARCHAR NOT NULL,
        read_at    TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pinned_messages (
        room_id    VARCHAR NOT NULL,
        message_id VARCHAR NOT NULL,
        pinned_by  VARCHAR NOT NULL,
        pinned_at  TIMESTAMP NOT NULL,
        PRIMARY KEY (room_id, message_id)
    )
    """,
)

_USER_COLUMNS = (
    "id", "email", "username", "display_name", "avatar", "bio", "status",
    "is_online", "is_blocked", "last_seen", "created_at",
)
_ROOM_COLUMNS = (
    "id", "name", "description", "avatar", "type", "is_private", "created_by",
    "created_at", "updated_at",
)
_MEMBER_COLUMNS = ("room_id", "user_id", "role", "is_active", "joined_at", "left_at")
_MESSAGE_COLUMNS = (
    "id", "room_id", "sender_id", "content", "type", "reply_to_id",
    "is_edited", "edited_at", "is_deleted", "deleted_at", "created_at",
)
_ATTACHMENT_COLUMNS = (
    "id", "message_id", "room_id", "user_id", "filename", "original_name",
    "mime_type", "size", "url", "thumbnail_url", "created_at",
)
_REACTION_COLUMNS = ("message_id", "user_id", "emoji", "created_at")
_RECEIPT_COLUMNS = ("message_id", "user_id", "read_at")
_PIN_COLUMNS = ("room_id", "message_id", "pinned_by", "pinned_at")


def _select(columns: Sequence[str], table: str, alias: str = "") -> str:
    prefix = f"{alias}." if alias else ""
    return f"SELECT {', '.join(prefix + c for c in columns)} FROM {table} {alias}".rstrip()


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class ChatStore:
    """Persistent store for users, rooms, memberships and messages.

    Every method is synchronous and atomic with respect to other store calls.
    DuckDB failures surface as ``PersistenceError``.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(db_path)
        with self._guard() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        logger.info("[Store] Initialized with db=%s", db_path)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    @contextmanager
    def _guard(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._lock:
            if self._connection is None:
                raise PersistenceError("Store is closed")
            try:
                yield self._connection
            except duckdb.Error as exc:
                logger.error("[Store] Query failed: %s", exc)
                raise PersistenceError("Storage operation failed") from exc

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._guard() as conn:
            conn.begin()
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise
            conn.commit()

    @staticmethod
    def _row(model: Callable[..., T], columns: Sequence[str], row: Optional[tuple]) -> Optional[T]:
        if row is None:
            return None
        return model(**dict(zip(columns, row)))

    def _fetch_one(self, model, columns, sql: str, params: list):
        with self._guard() as conn:
            return self._row(model, columns, conn.execute(sql, params).fetchone())

    def _fetch_all(self, model, columns, sql: str, params: list) -> list:
        with self._guard() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row(model, columns, r) for r in rows]

    def _update_fields(self, table: str, row_id: str, fields: Dict[str, Any]) -> None:
        changes = {column: value for column, value in fields.items() if value is not None}
        if not changes:
            return
        assignments = ", ".join(f"{column} = ?" for column in changes)
        with self._guard() as conn:
            conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                list(changes.values()) + [row_id],
            )

    def ping(self) -> bool:
        """Round-trip a trivial query; raises PersistenceError if unreachable."""
        with self._guard() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: str,
        display_name: Optional[str] = None,
        avatar: Optional[str] = None,
        is_blocked: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        with self._guard() as conn:
            conn.execute(
                """
                INSERT INTO users (id, email, username, display_name, avatar,
                                   status, is_online, is_blocked, created_at)
                VALUES (?, ?, ?, ?, ?, 'offline', false, ?, ?)
                """,
                [user_id, email, username, display_name or username, avatar,
                 is_blocked, utcnow()],
            )
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_one(
            User, _USER_COLUMNS,
            f"{_select(_USER_COLUMNS, 'users')} WHERE id = ?", [user_id],
        )

    def get_users(self, user_ids: Sequence[str]) -> Dict[str, User]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        users = self._fetch_all(
            User, _USER_COLUMNS,
            f"{_select(_USER_COLUMNS, 'users')} WHERE id IN ({_placeholders(ids)})", ids,
        )
        return {u.id: u for u in users}

    def search_users(self, query: str, limit: int = 20) -> List[User]:
        """Case-insensitive substring match on username and display name."""
        return self._fetch_all(
            User, _USER_COLUMNS,
            f"""
            {_select(_USER_COLUMNS, 'users')}
            WHERE NOT is_blocked
              AND (contains(lower(username), lower(?)) OR contains(lower(display_name), lower(?)))
            ORDER BY username
            LIMIT ?
            """,
            [query, query, limit],
        )

    def update_presence(
        self,
        user_id: str,
        status: UserStatus,
        is_online: bool,
        last_seen: Optional[datetime] = None,
    ) -> None:
        with self._guard() as conn:
            conn.execute(
                """
                UPDATE users
                SET status = ?, is_online = ?, last_seen = coalesce(CAST(? AS TIMESTAMP), last_seen)
                WHERE id = ?
                """,
                [status.value, is_online, last_seen, user_id],
            )

    def set_blocked(self, user_id: str, blocked: bool) -> None:
        with self._guard() as conn:
            conn.execute("UPDATE users SET is_blocked = ? WHERE id = ?", [blocked, user_id])

    def update_profile(
        self,
        user_id: str,
        display_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Optional[User]:
        """Change the given profile fields; ``None`` leaves a field as is."""
        self._update_fields(
            "users", user_id, {"display_name": display_name, "bio": bio, "avatar": avatar}
        )
        return self.get_user(user_id)

    # -------------------------------------------------------------------------
    # Rooms
    # -------------------------------------------------------------------------

    def create_room(
        self,
        creator_id: str,
        member_ids: Sequence[str],
        name: Optional[str] = None,
        description: Optional[str] = None,
        type_: RoomType = RoomType.GROUP,
        is_private: bool = False,
    ) -> Room:
        """Create a room with the creator as its single owner."""
        room_id = str(uuid.uuid4())
        now = utcnow()
        others = [uid for uid in dict.fromkeys(member_ids) if uid != creator_id]
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO rooms (id, name, description, type, is_private,
                                   created_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [room_id, name, description, type_.value, is_private, creator_id, now, now],
            )
            conn.execute(
                "INSERT INTO room_members (room_id, user_id, role, is_active, joined_at) "
                "VALUES (?, ?, 'owner', true, ?)",
                [room_id, creator_id, now],
            )
            for user_id in others:
                conn.execute(
                    "INSERT INTO room_members (room_id, user_id, role, is_active, joined_at) "
                    "VALUES (?, ?, 'member', true, ?)",
                    [room_id, user_id, now],
                )
        logger.info("[Store] Created room %s (owner=%s, members=%d)", room_id, creator_id, len(others) + 1)
        return self.get_room(room_id)

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._fetch_one(
            Room, _ROOM_COLUMNS,
            f"{_select(_ROOM_COLUMNS, 'rooms')} WHERE id = ?", [room_id],
        )

    def list_rooms_for_user(self, user_id: str) -> List[Room]:
        """Rooms the user is an active member of, most recently active first."""
        return self._fetch_all(
            Room, _ROOM_COLUMNS,
            f"""
            {_select(_ROOM_COLUMNS, 'rooms', 'r')}
            JOIN room_members m ON m.room_id = r.id
            WHERE m.user_id = ? AND m.is_active
            ORDER BY r.updated_at DESC
            """,
            [user_id],
        )

    def update_room(
        self,
        room_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Optional[Room]:
        """Change room metadata; ``None`` leaves a field as is. Bumps ``updated_at``."""
        self._update_fields(
            "rooms", room_id,
            {"name": name, "description": description, "avatar": avatar, "updated_at": utcnow()},
        )
        return self.get_room(room_id)

    def touch_room(self, room_id: str) -> None:
        """Bump the room's last-activity timestamp."""
        with self._guard() as conn:
            conn.execute("UPDATE rooms SET updated_at = ? WHERE id = ?", [utcnow(), room_id])

    # -------------------------------------------------------------------------
    # Memberships
    # -------------------------------------------------------------------------

    def get_membership(self, room_id: str, user_id: str) -> Optional[RoomMember]:
        return self._fetch_one(
            RoomMember, _MEMBER_COLUMNS,
            f"{_select(_MEMBER_COLUMNS, 'room_members')} WHERE room_id = ? AND user_id = ?",
            [room_id, user_id],
        )

    def list_members(self, room_id: str, active_only: bool = True) -> List[RoomMember]:
        sql = f"{_select(_MEMBER_COLUMNS, 'room_members')} WHERE room_id = ?"
        if active_only:
            sql += " AND is_active"
        return self._fetch_all(RoomMember, _MEMBER_COLUMNS, sql + " ORDER BY joined_at", [room_id])

    def list_active_room_ids(self, user_id: str) -> List[str]:
        with self._guard() as conn:
            rows = conn.execute(
                "SELECT room_id FROM room_members WHERE user_id = ? AND is_active ORDER BY room_id",
                [user_id],
            ).fetchall()
        return [r[0] for r in rows]

    def upsert_membership(self, room_id: str, user_id: str, role: MemberRole) -> RoomMember:
        """Insert a membership, or re-activate a tombstone keeping the same row."""
        now = utcnow()
        with self._guard() as conn:
            existing = conn.execute(
                "SELECT is_active FROM room_members WHERE room_id = ? AND user_id = ?",
                [room_id, user_id],
            ).fetchone()
            if existing is None:
                conn.execute(
                    "INSERT INTO room_members (room_id, user_id, role, is_active, joined_at) "
                    "VALUES (?, ?, ?, true, ?)",
                    [room_id, user_id, role.value, now],
                )
            else:
                conn.execute(
                    """
                    UPDATE room_members
                    SET is_active = true, role = ?, joined_at = ?, left_at = NULL
                    WHERE room_id = ? AND user_id = ?
                    """,
                    [role.value, now, room_id, user_id],
                )
        return self.get_membership(room_id, user_id)

    def deactivate_membership(self, room_id: str, user_id: str) -> bool:
        """Tombstone an active membership. Returns False if nothing was active."""
        with self._guard() as conn:
            result = conn.execute(
                """
                UPDATE room_members SET is_active = false, left_at = ?
                WHERE room_id = ? AND user_id = ? AND is_active
                RETURNING user_id
                """,
                [utcnow(), room_id, user_id],
            ).fetchall()
        return bool(result)

    def set_member_role(self, room_id: str, user_id: str, role: MemberRole) -> Optional[RoomMember]:
        with self._guard() as conn:
            conn.execute(
                "UPDATE room_members SET role = ? WHERE room_id = ? AND user_id = ?",
                [role.value, room_id, user_id],
            )
        return self.get_membership(room_id, user_id)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def create_message(
        self,
        room_id: str,
        sender_id: str,
        content: Optional[str],
        type_: MessageType = MessageType.TEXT,
        reply_to_id: Optional[str] = None,
        attachments: Sequence[AttachmentCreate] = (),
    ) -> Message:
        """Persist a message and its attachment records in one transaction."""
        message_id = str(uuid.uuid4())
        now = utcnow()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO messages (id, room_id, sender_id, content, type,
                                      reply_to_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [message_id, room_id, sender_id, content, type_.value, reply_to_id, now],
            )
            for item in attachments:
                conn.execute(
                    """
                    INSERT INTO attachments (id, message_id, room_id, user_id, filename,
                                             original_name, mime_type, size, url,
                                             thumbnail_url, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [str(uuid.uuid4()), message_id, room_id, sender_id, item.filename,
                     item.original_name, item.mime_type, item.size, item.url,
                     item.thumbnail_url, now],
                )
        return self.get_message(message_id)

    def get_message(self, message_id: str) -> Optional[Message]:
        return self._fetch_one(
            Message, _MESSAGE_COLUMNS,
            f"{_select(_MESSAGE_COLUMNS, 'messages')} WHERE id = ?", [message_id],
        )

    def get_messages(self, message_ids: Sequence[str]) -> Dict[str, Message]:
        ids = sorted(set(message_ids))
        if not ids:
            return {}
        messages = self._fetch_all(
            Message, _MESSAGE_COLUMNS,
            f"{_select(_MESSAGE_COLUMNS, 'messages')} WHERE id IN ({_placeholders(ids)})", ids,
        )
        return {m.id: m for m in messages}

    def list_messages(
        self, room_id: str, before_id: Optional[str] = None, limit: int = 50
    ) -> List[Message]:
        """Non-deleted messages of a room, newest first, older than ``before_id``."""
        with self._guard() as conn:
            params: List[Any] = [room_id]
            sql = f"{_select(_MESSAGE_COLUMNS, 'messages')} WHERE room_id = ? AND NOT is_deleted"
            if before_id is not None:
                cursor = conn.execute(
                    "SELECT seq FROM messages WHERE id = ? AND room_id = ?", [before_id, room_id]
                ).fetchone()
                if cursor is None:
                    return []
                sql += " AND seq < ?"
                params.append(cursor[0])
            rows = conn.execute(sql + " ORDER BY seq DESC LIMIT ?", params + [limit]).fetchall()
        return [self._row(Message, _MESSAGE_COLUMNS, r) for r in rows]

    def search_messages(self, room_id: str, query: str, limit: int = 20) -> List[Message]:
        return self._fetch_all(
            Message, _MESSAGE_COLUMNS,
            f"""
            {_select(_MESSAGE_COLUMNS, 'messages')}
            WHERE room_id = ? AND NOT is_deleted AND contains(lower(content), lower(?))
            ORDER BY seq DESC
            LIMIT ?
            """,
            [room_id, query, limit],
        )

    def update_message_content(self, message_id: str, content: str) -> Optional[Message]:
        with self._guard() as conn:
            conn.execute(
                """
                UPDATE messages SET content = ?, is_edited = true, edited_at = ?
                WHERE id = ? AND NOT is_deleted
                """,
                [content, utcnow(), message_id],
            )
        return self.get_message(message_id)

    def soft_delete_message(self, message_id: str) -> Tuple[Optional[Message], bool]:
        """Clear content and flag the message deleted.

        Returns:
            Tuple of (message, changed). ``changed`` is False when the message
            was already deleted (or does not exist).
        """
        with self._guard() as conn:
            result = conn.execute(
                """
                UPDATE messages SET is_deleted = true, deleted_at = ?, content = NULL
                WHERE id = ? AND NOT is_deleted
                RETURNING id
                """,
                [utcnow(), message_id],
            ).fetchall()
            message = self.get_message(message_id)
        return message, bool(result)

    # -------------------------------------------------------------------------
    # Attachments
    # -------------------------------------------------------------------------

    def list_attachments(self, message_ids: Sequence[str]) -> Dict[str, List[Attachment]]:
        ids = sorted(set(message_ids))
        grouped: Dict[str, List[Attachment]] = {mid: [] for mid in ids}
        if not ids:
            return grouped
        rows = self._fetch_all(
            Attachment, _ATTACHMENT_COLUMNS,
            f"""
            {_select(_ATTACHMENT_COLUMNS, 'attachments')}
            WHERE message_id IN ({_placeholders(ids)}) ORDER BY seq
            """,
            ids,
        )
        for attachment in rows:
            grouped[attachment.message_id].append(attachment)
        return grouped

    def list_room_attachments(
        self, room_id: str, before_id: Optional[str] = None, limit: int = 50
    ) -> List[Attachment]:
        """Attachment records of a room, newest first, older than ``before_id``."""
        with self._guard() as conn:
            params: List[Any] = [room_id]
            sql = f"{_select(_ATTACHMENT_COLUMNS, 'attachments')} WHERE room_id = ?"
            if before_id is not None:
                cursor = conn.execute(
                    "SELECT seq FROM attachments WHERE id = ? AND room_id = ?", [before_id, room_id]
                ).fetchone()
                if cursor is None:
                    return []
                sql += " AND seq < ?"
                params.append(cursor[0])
            rows = conn.execute(sql + " ORDER BY seq DESC LIMIT ?", params + [limit]).fetchall()
        return [self._row(Attachment, _ATTACHMENT_COLUMNS, r) for r in rows]

    # -------------------------------------------------------------------------
    # Reactions
    # -------------------------------------------------------------------------

    def toggle_reaction(self, message_id: str, user_id: str, emoji: str) -> bool:
        """Remove the (message, user, emoji) reaction if present, else add it.

        Returns:
            True if the reaction was added, False if it was removed.
        """
        with self._guard() as conn:
            existing = conn.execute(
                "SELECT 1 FROM reactions WHERE message_id = ? AND user_id = ? AND emoji = ?",
                [message_id, user_id, emoji],
            ).fetchone()
            if existing:
                conn.execute(
                    "DELETE FROM reactions WHERE message_id = ? AND user_id = ? AND emoji = ?",
                    [message_id, user_id, emoji],
                )
                return False
            conn.execute(
                "INSERT INTO reactions (message_id, user_id, emoji, created_at) VALUES (?, ?, ?, ?)",
                [message_id, user_id, emoji, utcnow()],
            )
            return True

    def list_reactions(self, message_ids: Sequence[str]) -> Dict[str, List[Reaction]]:
        ids = sorted(set(message_ids))
        grouped: Dict[str, List[Reaction]] = {mid: [] for mid in ids}
        if not ids:
            return grouped
        rows = self._fetch_all(
            Reaction, _REACTION_COLUMNS,
            f"""
            {_select(_REACTION_COLUMNS, 'reactions')}
            WHERE message_id IN ({_placeholders(ids)}) ORDER BY created_at, user_id, emoji
            """,
            ids,
        )
        for reaction in rows:
            grouped[reaction.message_id].append(reaction)
        return grouped

    # -------------------------------------------------------------------------
    # Read receipts
    # -------------------------------------------------------------------------

    def upsert_read_receipt(self, message_id: str, user_id: str, read_at: datetime) -> ReadReceipt:
        """Record a read; an existing later ``read_at`` is never moved back."""
        with self._guard() as conn:
            existing = conn.execute(
                "SELECT read_at FROM read_receipts WHERE message_id = ? AND user_id = ?",
                [message_id, user_id],
            ).fetchone()
            if existing is None:
                conn.execute(
                    "INSERT INTO read_receipts (message_id, user_id, read_at) VALUES (?, ?, ?)",
                    [message_id, user_id, read_at],
                )
            elif read_at > existing[0]:
                conn.execute(
                    "UPDATE read_receipts SET read_at = ? WHERE message_id = ? AND user_id = ?",
                    [read_at, message_id, user_id],
                )
            else:
                read_at = existing[0]
        return ReadReceipt(message_id=message_id, user_id=user_id, read_at=read_at)

    def get_read_receipt(self, message_id: str, user_id: str) -> Optional[ReadReceipt]:
        return self._fetch_one(
            ReadReceipt, _RECEIPT_COLUMNS,
            f"{_select(_RECEIPT_COLUMNS, 'read_receipts')} WHERE message_id = ? AND user_id = ?",
            [message_id, user_id],
        )

    def list_read_receipts(self, message_id: str) -> List[ReadReceipt]:
        return self._fetch_all(
            ReadReceipt, _RECEIPT_COLUMNS,
            f"{_select(_RECEIPT_COLUMNS, 'read_receipts')} WHERE message_id = ? ORDER BY read_at",
            [message_id],
        )

    # -------------------------------------------------------------------------
    # Pins
    # -------------------------------------------------------------------------

    def pin_message(self, room_id: str, message_id: str, pinned_by: str) -> PinnedMessage:
        """Pin a message; pinning an already pinned message returns the existing pin."""
        with self._guard() as conn:
            existing = conn.execute(
                f"{_select(_PIN_COLUMNS, 'pinned_messages')} WHERE room_id = ? AND message_id = ?",
                [room_id, message_id],
            ).fetchone()
            if existing is not None:
                return self._row(PinnedMessage, _PIN_COLUMNS, existing)
            now = utcnow()
            conn.execute(
                "INSERT INTO pinned_messages (room_id, message_id, pinned_by, pinned_at) "
                "VALUES (?, ?, ?, ?)",
                [room_id, message_id, pinned_by, now],
            )
        return PinnedMessage(room_id=room_id, message_id=message_id, pinned_by=pinned_by, pinned_at=now)

    def unpin_message(self, room_id: str, message_id: str) -> bool:
        with self._guard() as conn:
            result = conn.execute(
                "DELETE FROM pinned_messages WHERE room_id = ? AND message_id = ? RETURNING message_id",
                [room_id, message_id],
            ).fetchall()
        return bool(result)

    def list_pinned(self, room_id: str) -> List[PinnedMessage]:
        return self._fetch_all(
            PinnedMessage, _PIN_COLUMNS,
            f"{_select(_PIN_COLUMNS, 'pinned_messages')} WHERE room_id = ? ORDER BY pinned_at DESC",
            [room_id],
        )
