"""JWT access-token verification."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from roomwire.config import JWTSecrets
from roomwire.errors import AuthenticationError

logger = logging.getLogger(__name__)


class TokenService:
    """Issues and verifies access tokens whose subject is the user id."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", expire_minutes: int = 60) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._expire_minutes = expire_minutes

    @classmethod
    def from_secrets(cls, secrets: JWTSecrets) -> "TokenService":
        return cls(secrets.secret_key, secrets.algorithm, secrets.access_token_expire_minutes)

    def create_access_token(self, user_id: str, expires_in: Optional[timedelta] = None) -> str:
        """Sign a token for *user_id* (development and tests)."""
        expire = datetime.now(timezone.utc) + (expires_in or timedelta(minutes=self._expire_minutes))
        return jwt.encode(
            {"sub": user_id, "exp": expire},
            self._secret_key,
            algorithm=self._algorithm,
        )

    def verify(self, token: Optional[str]) -> str:
        """Return the user id carried by *token*.

        Raises:
            AuthenticationError: Missing, malformed, expired or wrongly
                signed token, or a token without a subject.
        """
        if not token:
            raise AuthenticationError("Access token required")
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError as exc:
            logger.debug("Token rejected: %s", exc)
            raise AuthenticationError("Invalid or expired token") from exc
        subject = payload.get("sub")
        if not subject:
            raise AuthenticationError("Invalid or expired token")
        return subject
