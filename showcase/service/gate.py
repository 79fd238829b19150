from __future__ import annotations

from typing import Optional

from showcase.logging import get_logger
from showcase.service.auth import AuthService
from showcase.service.errors import (
    AuthenticationError,
    ForbiddenError,
    MissingTokenError,
    ServerError,
)
from showcase.storage.errors import StoreError
from showcase.storage.models import ADMIN_ROLE, Identity

logger = get_logger(__name__)

GENERIC_AUTH_MESSAGE = "Invalid or expired token."
FORBIDDEN_MESSAGE = "Access denied. Admin privileges required."


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthorizationGate:
    """Turns an ``Authorization`` header into an admin identity or an error."""

    def __init__(self, auth: AuthService, *, generic_errors: bool = False) -> None:
        self.auth = auth
        self.generic_errors = generic_errors

    def authenticate(self, authorization: Optional[str]) -> Identity:
        """Session verification without the role check."""
        token = extract_bearer(authorization)
        if not token:
            if self.generic_errors:
                raise AuthenticationError(GENERIC_AUTH_MESSAGE, detail={})
            raise MissingTokenError()
        try:
            return self.auth.verify(token)
        except AuthenticationError as exc:
            logger.warning("session_token_rejected", reason=exc.reason)
            if self.generic_errors:
                raise AuthenticationError(GENERIC_AUTH_MESSAGE, detail={}) from exc
            raise
        except StoreError as exc:
            logger.error("session_lookup_failed", error=str(exc))
            raise ServerError("Internal server error") from exc

    def authorize(self, authorization: Optional[str]) -> Identity:
        identity = self.authenticate(authorization)
        if identity.role != ADMIN_ROLE:
            logger.warning("admin_role_required", user_id=identity.id, role=identity.role)
            raise ForbiddenError(FORBIDDEN_MESSAGE)
        return identity
