"""Rooms router: create rooms, manage members, pins and file history.

Every membership change goes through the membership oracle so its cache is
invalidated before the response is sent.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response

from roomwire.auth.dependencies import get_current_user, get_hub
from roomwire.errors import NotFound
from roomwire.realtime import ChatHub
from roomwire.store import MANAGER_ROLES, ChatStore, MemberRole, User, run_sync

from .schemas import FilePage, MemberAdd, MemberRoleUpdate, MemberView, RoomCreate, RoomUpdate, RoomView

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rooms", tags=["rooms"])


def _member_views(store: ChatStore, room_id: str) -> List[MemberView]:
    members = store.list_members(room_id)
    users = store.get_users([m.user_id for m in members])
    return [MemberView.build(m, users) for m in members]


async def _member_view(hub: ChatHub, room_id: str, user_id: str) -> MemberView:
    member = await run_sync(hub.store.get_membership, room_id, user_id)
    if member is None:
        raise NotFound("Membership not found")
    users = await run_sync(hub.store.get_users, [user_id])
    return MemberView.build(member, users)


@router.post("", status_code=201)
async def create_room(
    body: RoomCreate,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Create a room owned by the caller.

    Args:
        body: Room metadata and the ids of the initial members.

    Returns:
        The created room with its members (201 Created).
    """
    room = await hub.oracle.create_room(
        user.id,
        body.memberIds,
        name=body.name,
        description=body.description,
        type_=body.type,
        is_private=body.isPrivate,
    )
    members = await run_sync(_member_views, hub.store, room.id)
    logger.info("[rooms] Created %s by %s with %d member(s)", room.id, user.id, len(members))
    return JSONResponse(RoomView.build(room, members).model_dump(mode="json"), status_code=201)


@router.get("")
async def list_rooms(
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """List the caller's active rooms, most recently active first."""
    rooms = await run_sync(hub.store.list_rooms_for_user, user.id)
    views = []
    for room in rooms:
        members = await run_sync(_member_views, hub.store, room.id)
        views.append(RoomView.build(room, members).model_dump(mode="json"))
    return JSONResponse(views)


@router.get("/{room_id}")
async def get_room(
    room_id: str,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Room details with active members and pinned messages (members only)."""
    await hub.oracle.require_member(user.id, room_id)
    room = await run_sync(hub.store.get_room, room_id)
    if room is None:
        raise NotFound("Room not found")
    members = await run_sync(_member_views, hub.store, room_id)
    pinned = await hub.pipeline.list_pinned(user.id, room_id)
    return JSONResponse(RoomView.build(room, members, pinned).model_dump(mode="json"))


@router.patch("/{room_id}")
async def update_room(
    room_id: str,
    body: RoomUpdate,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Change a room's name, description or avatar (owner/admin only).

    Returns:
        The updated room with its active members.
    """
    await hub.oracle.require_role(user.id, room_id, MANAGER_ROLES)
    room = await run_sync(
        hub.store.update_room,
        room_id,
        name=body.name,
        description=body.description,
        avatar=body.avatar,
    )
    if room is None:
        raise NotFound("Room not found")
    members = await run_sync(_member_views, hub.store, room_id)
    logger.info("[rooms] Updated %s by %s", room_id, user.id)
    return JSONResponse(RoomView.build(room, members).model_dump(mode="json"))


@router.post("/{room_id}/members", status_code=201)
async def add_member(
    room_id: str,
    body: MemberAdd,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Add a member or re-activate a former one (owner/admin only)."""
    member = await hub.oracle.add_member(user.id, room_id, body.userId, MemberRole(body.role))
    view = await _member_view(hub, room_id, member.user_id)
    return JSONResponse(view.model_dump(mode="json"), status_code=201)


@router.delete("/{room_id}/members/{member_id}")
async def remove_member(
    room_id: str,
    member_id: str,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Remove a member (owner/admin), or leave the room (self).

    The removed user's open connections stay subscribed; their next
    room-scoped action is rejected.
    """
    removed = await hub.oracle.remove_member(user.id, room_id, member_id)
    return JSONResponse({"removed": removed})


@router.patch("/{room_id}/members/{member_id}")
async def change_member_role(
    room_id: str,
    member_id: str,
    body: MemberRoleUpdate,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Change a member's role (owner/admin; ownership cannot change)."""
    member = await hub.oracle.change_role(user.id, room_id, member_id, MemberRole(body.role))
    view = await _member_view(hub, room_id, member.user_id)
    return JSONResponse(view.model_dump(mode="json"))


@router.post("/{room_id}/pin/{message_id}", status_code=201)
async def pin_message(
    room_id: str,
    message_id: str,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Pin a message of this room (owner/admin/moderator)."""
    pin = await hub.pipeline.pin_message(user.id, room_id, message_id)
    return JSONResponse(pin.model_dump(mode="json"), status_code=201)


@router.delete("/{room_id}/pin/{message_id}", status_code=204)
async def unpin_message(
    room_id: str,
    message_id: str,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> Response:
    """Unpin a message (owner/admin/moderator). 404 if it was not pinned."""
    await hub.pipeline.unpin_message(user.id, room_id, message_id)
    return Response(status_code=204)


@router.get("/{room_id}/pinned")
async def list_pinned(
    room_id: str,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Pinned messages, newest pin first."""
    pins = await hub.pipeline.list_pinned(user.id, room_id)
    return JSONResponse([p.model_dump(mode="json") for p in pins])


@router.get("/{room_id}/files")
async def list_files(
    room_id: str,
    cursor: Optional[str] = Query(None, description="Id of the last file already seen"),
    limit: Optional[int] = Query(None, description="Page size (server-capped)"),
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """File records of a room, newest first, older than ``cursor``."""
    files, next_cursor = await hub.pipeline.list_files(user.id, room_id, cursor=cursor, limit=limit)
    return JSONResponse(FilePage(files=files, nextCursor=next_cursor).model_dump(mode="json"))
