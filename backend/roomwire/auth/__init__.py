"""Authentication collaborator.

Verifies bearer tokens (HS256 JWT) and resolves them to user ids. Login,
registration and password hashing live outside this service.
"""

from .service import TokenService

__all__ = ["TokenService"]
