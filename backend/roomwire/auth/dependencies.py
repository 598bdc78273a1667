"""FastAPI dependencies shared by the REST routers."""
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from roomwire.realtime import ChatHub
from roomwire.store import User

bearer_scheme = HTTPBearer(auto_error=False)


def get_hub(request: Request) -> ChatHub:
    """The hub created at application startup."""
    return request.app.state.hub


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    hub: ChatHub = Depends(get_hub),
) -> User:
    """Resolve the ``Authorization: Bearer`` header to a user.

    Raises:
        AuthenticationError: Missing, invalid or expired token, or a blocked
            account (rendered as 401 by the application error handler).
    """
    token = credentials.credentials if credentials else None
    return await hub.authenticate(token)
