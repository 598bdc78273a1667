"""Pydantic schemas for the persistent store.

These are the durable rows owned by ``ChatStore``. The realtime core only
ever holds short-lived projections of them; wire representations live in
``roomwire.realtime.events``.
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class UserStatus(str, Enum):
    """Presence status persisted on the user row."""
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


class MemberRole(str, Enum):
    """Role of a user inside a room.

    Attributes:
        OWNER: Created the room. Exactly one per room.
        ADMIN: Manages members and pins.
        MODERATOR: Pins and deletes other people's messages.
        MEMBER: Regular participant.
    """
    OWNER = "owner"
    ADMIN = "admin"
    MODERATOR = "moderator"
    MEMBER = "member"


# Roles allowed to add/remove members and change roles
MANAGER_ROLES = frozenset({MemberRole.OWNER, MemberRole.ADMIN})

# Roles allowed to pin messages and delete messages sent by others
MODERATOR_ROLES = frozenset({MemberRole.OWNER, MemberRole.ADMIN, MemberRole.MODERATOR})


class RoomType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    CHANNEL = "channel"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
    SYSTEM = "system"


class User(BaseModel):
    id: str
    email: str
    username: str
    display_name: str
    avatar: Optional[str] = None
    bio: Optional[str] = None
    status: UserStatus = UserStatus.OFFLINE
    is_online: bool = False
    is_blocked: bool = False
    last_seen: Optional[datetime] = None
    created_at: datetime


class Room(BaseModel):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    avatar: Optional[str] = None
    type: RoomType = RoomType.GROUP
    is_private: bool = False
    created_by: str
    created_at: datetime
    updated_at: datetime


class RoomMember(BaseModel):
    """Membership row. Inactive rows are tombstones, never deleted."""
    room_id: str
    user_id: str
    role: MemberRole = MemberRole.MEMBER
    is_active: bool = True
    joined_at: datetime
    left_at: Optional[datetime] = None


class Message(BaseModel):
    id: str
    room_id: str
    sender_id: str
    content: Optional[str] = None
    type: MessageType = MessageType.TEXT
    reply_to_id: Optional[str] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: datetime


class AttachmentCreate(BaseModel):
    """File record supplied alongside a new message (upload already done)."""
    filename: str = Field(..., min_length=1, max_length=255)
    original_name: str = Field(..., min_length=1, max_length=255)
    mime_type: str = Field(..., min_length=1, max_length=127)
    size: int = Field(..., ge=0)
    url: str = Field(..., min_length=1)
    thumbnail_url: Optional[str] = None


class Attachment(AttachmentCreate):
    id: str
    message_id: str
    room_id: str
    user_id: str
    created_at: datetime


class Reaction(BaseModel):
    message_id: str
    user_id: str
    emoji: str
    created_at: datetime


class ReadReceipt(BaseModel):
    message_id: str
    user_id: str
    read_at: datetime


class PinnedMessage(BaseModel):
    room_id: str
    message_id: str
    pinned_by: str
    pinned_at: datetime
