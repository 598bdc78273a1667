"""Users router: own profile, public profiles, user search and presence lookups."""
import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from roomwire.auth.dependencies import get_current_user, get_hub
from roomwire.errors import NotFound
from roomwire.realtime import ChatHub
from roomwire.realtime.events import UserProfile
from roomwire.store import User, run_sync

from .schemas import AccountView, ProfileUpdate, PublicProfileView

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])

MAX_SEARCH_RESULTS = 20


@router.get("/me")
async def get_me(user: User = Depends(get_current_user)) -> JSONResponse:
    return JSONResponse(AccountView.from_account(user).model_dump(mode="json"))


@router.patch("/me")
async def update_me(
    body: ProfileUpdate,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Edit the caller's display name, bio or avatar."""
    updated = await run_sync(
        hub.store.update_profile,
        user.id,
        display_name=body.displayName,
        bio=body.bio,
        avatar=body.avatar,
    )
    if updated is None:
        raise NotFound("User not found")
    logger.info("[users] Updated profile of %s", user.id)
    return JSONResponse(AccountView.from_account(updated).model_dump(mode="json"))


@router.get("/search")
async def search_users(
    q: str = Query(..., min_length=1, description="Case-insensitive username/display name fragment"),
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Find users by username or display name. Blocked accounts are hidden."""
    users = await run_sync(hub.store.search_users, q.strip(), MAX_SEARCH_RESULTS)
    return JSONResponse([UserProfile.from_user(u).model_dump(mode="json") for u in users if u.id != user.id])


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    found = await run_sync(hub.store.get_user, user_id)
    if found is None:
        raise NotFound("User not found")
    return JSONResponse(PublicProfileView.from_public(found).model_dump(mode="json"))


@router.get("/{user_id}/presence")
async def get_presence(
    user_id: str,
    user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_hub),
) -> JSONResponse:
    """Current status of a user (advisory; served from the status cache when warm)."""
    state = await hub.presence.get_presence(user_id)
    return JSONResponse(state.model_dump(mode="json"))
