"""Pydantic schemas for the users module."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from roomwire.realtime.events import UserProfile
from roomwire.store import User


class ProfileUpdate(BaseModel):
    """Request body for editing the caller's profile. Omitted fields are left as is."""
    displayName: Optional[str] = Field(default=None, min_length=1, max_length=50)
    bio: Optional[str] = Field(default=None, max_length=500)
    avatar: Optional[str] = Field(default=None, min_length=1, max_length=500)


class PublicProfileView(UserProfile):
    """Another user's profile as any authenticated user may see it."""
    bio: Optional[str] = None
    lastSeen: Optional[datetime] = None
    createdAt: datetime

    @classmethod
    def from_public(cls, user: User) -> "PublicProfileView":
        return cls(
            **UserProfile.from_user(user).model_dump(),
            bio=user.bio,
            lastSeen=user.last_seen,
            createdAt=user.created_at,
        )


class AccountView(PublicProfileView):
    """The caller's own profile, including private fields."""
    email: str

    @classmethod
    def from_account(cls, user: User) -> "AccountView":
        return cls(**PublicProfileView.from_public(user).model_dump(), email=user.email)
