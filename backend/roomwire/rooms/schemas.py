"""Pydantic schemas for the rooms module."""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from roomwire.realtime.events import PinnedMessageView, RoomFileView, UserProfile
from roomwire.store import MemberRole, Room, RoomMember, RoomType, User


class RoomCreate(BaseModel):
    """Request body for creating a room. The caller becomes its owner."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    type: RoomType = RoomType.GROUP
    isPrivate: bool = False
    memberIds: List[str] = Field(..., min_length=1)


class RoomUpdate(BaseModel):
    """Request body for changing room metadata. Omitted fields are left as is."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    avatar: Optional[str] = Field(default=None, min_length=1, max_length=500)


class MemberAdd(BaseModel):
    userId: str = Field(..., min_length=1)
    role: Literal["member", "moderator"] = "member"


class MemberRoleUpdate(BaseModel):
    role: Literal["admin", "moderator", "member"]


class MemberView(BaseModel):
    userId: str
    role: MemberRole
    isActive: bool
    joinedAt: datetime
    leftAt: Optional[datetime] = None
    user: Optional[UserProfile] = None

    @classmethod
    def build(cls, member: RoomMember, users: Dict[str, User]) -> "MemberView":
        user = users.get(member.user_id)
        return cls(
            userId=member.user_id,
            role=member.role,
            isActive=member.is_active,
            joinedAt=member.joined_at,
            leftAt=member.left_at,
            user=UserProfile.from_user(user) if user else None,
        )


class RoomView(BaseModel):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    avatar: Optional[str] = None
    type: RoomType
    isPrivate: bool
    createdBy: str
    createdAt: datetime
    updatedAt: datetime
    members: List[MemberView] = Field(default_factory=list)
    pinnedMessages: List[PinnedMessageView] = Field(default_factory=list)

    @classmethod
    def build(
        cls,
        room: Room,
        members: Optional[List[MemberView]] = None,
        pinned: Optional[List[PinnedMessageView]] = None,
    ) -> "RoomView":
        return cls(
            id=room.id,
            name=room.name,
            description=room.description,
            avatar=room.avatar,
            type=room.type,
            isPrivate=room.is_private,
            createdBy=room.created_by,
            createdAt=room.created_at,
            updatedAt=room.updated_at,
            members=members or [],
            pinnedMessages=pinned or [],
        )


class FilePage(BaseModel):
    files: List[RoomFileView]
    nextCursor: Optional[str] = None
