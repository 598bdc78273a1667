"""Pydantic schemas for the messages module."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from roomwire.realtime.events import HydratedMessage


class MessageEdit(BaseModel):
    content: str = Field(..., min_length=1)


class MarkReadRequest(BaseModel):
    messageIds: List[str] = Field(..., min_length=1)


class ReceiptView(BaseModel):
    messageId: str
    userId: str
    readAt: datetime


class MessagePage(BaseModel):
    """One page of history, oldest first. ``nextCursor`` fetches older ones."""
    messages: List[HydratedMessage]
    nextCursor: Optional[str] = None
