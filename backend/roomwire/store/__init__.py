"""Persistent store collaborator (DuckDB)."""

from .schemas import (
    Attachment,
    AttachmentCreate,
    MANAGER_ROLES,
    MODERATOR_ROLES,
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
from .service import ChatStore, run_sync, utcnow

__all__ = [
    "Attachment",
    "AttachmentCreate",
    "ChatStore",
    "MANAGER_ROLES",
    "MODERATOR_ROLES",
    "MemberRole",
    "Message",
    "MessageType",
    "PinnedMessage",
    "Reaction",
    "ReadReceipt",
    "Room",
    "RoomMember",
    "RoomType",
    "User",
    "UserStatus",
    "run_sync",
    "utcnow",
]
