"""Messages router: history, single message, edit, delete, search, mark-read.

Edits, deletes and read receipts made here are broadcast to the room's live
connections exactly like their WebSocket counterparts.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from roomwire.auth.dependencies import get_current_user, get_hub
from roomwire.realtime import ChatHub
from roomwire.store import User

from .schemas import MarkReadRequest, MessageEdit, MessagePage, ReceiptView

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("/room/{room_id}")
async def get_history(
    room_id: str,
    cursor: Optional[str] = Query(None, description="Id of the oldest message already seen"),
    limit: Optional[int] = Query(None, description="Page size (server-capped)"),
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Paginated history of a room, excluding deleted messages.

    Args:
        room_id: The room to read.
        cursor: Return messages older than this message id.
        limit: Page size; defaults and caps come from config.

    Returns:
        {messages: [...oldest first], nextCursor}
    """
    messages, next_cursor = await hub.pipeline.history(user.id, room_id, cursor=cursor, limit=limit)
    return JSONResponse(MessagePage(messages=messages, nextCursor=next_cursor).model_dump(mode="json"))


@router.get("/search/{room_id}")
async def search_messages(
    room_id: str,
    q: str = Query(..., description="Case-insensitive substring"),
    limit: Optional[int] = Query(None),
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Search a room's messages, newest first."""
    results = await hub.pipeline.search(user.id, room_id, q, limit=limit)
    return JSONResponse([m.model_dump(mode="json") for m in results])


@router.post("/mark-read")
async def mark_read(
    body: MarkReadRequest,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Record read receipts for a batch of messages."""
    receipts = await hub.pipeline.mark_read(user.id, body.messageIds)
    views = [
        ReceiptView(messageId=r.message_id, userId=r.user_id, readAt=r.read_at).model_dump(mode="json")
        for r in receipts
    ]
    return JSONResponse({"receipts": views})


@router.get("/{message_id}")
async def get_message(
    message_id: str,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    message = await hub.pipeline.get_message(user.id, message_id)
    return JSONResponse(message.model_dump(mode="json"))


@router.patch("/{message_id}")
async def edit_message(
    message_id: str,
    body: MessageEdit,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Edit a message's content (sender only)."""
    message = await hub.pipeline.edit_message(user.id, message_id, body.content)
    return JSONResponse(message.model_dump(mode="json"))


@router.delete("/{message_id}")
async def delete_message(
    message_id: str,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Soft-delete a message (sender, or owner/admin/moderator)."""
    message = await hub.pipeline.delete_message(user.id, message_id)
    return JSONResponse(message.model_dump(mode="json"))
