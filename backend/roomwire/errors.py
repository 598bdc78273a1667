"""Error taxonomy shared by the realtime core and the REST routers.

Every failure that is meant to reach a client is a ``ChatError``. The
WebSocket hub turns it into an ``error`` event for the originating
connection; the REST layer turns it into a JSON error response.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for client-visible failures.

    Attributes:
        message: Human-readable description sent to the client.
        code: Stable machine-readable error code.
        status_code: HTTP status used by the REST layer.
    """

    code = "chat_error"
    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code}


class AuthenticationError(ChatError):
    """Bad, expired or missing credential, or a blocked account."""

    code = "authentication_error"
    status_code = 401


class AccessDenied(ChatError):
    """Authenticated, but not allowed to act on the target room or resource."""

    code = "access_denied"
    status_code = 403


class NotFound(ChatError):
    """The target entity does not exist."""

    code = "not_found"
    status_code = 404


class ValidationError(ChatError):
    """Malformed input: unknown event, bad payload shape, empty content."""

    code = "validation_error"
    status_code = 422


class PersistenceError(ChatError):
    """The store is unavailable or a write failed."""

    code = "persistence_error"
    status_code = 503
