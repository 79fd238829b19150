from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - payload_too_large (413)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    ``reason`` is a short machine-readable code the admin UI branches on.
    """
    status_code = 401
    error_code = "unauthorized"
    reason = "unauthenticated"
    default_message = "Access denied."

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        kwargs.setdefault("detail", {"reason": self.reason})
        super().__init__(message or self.default_message, **kwargs)


class MissingTokenError(AuthenticationError):
    reason = "token_missing"
    default_message = "Access denied. No token provided."


class InvalidTokenError(AuthenticationError):
    reason = "token_invalid"
    default_message = "Invalid token."


class TokenExpiredError(AuthenticationError):
    reason = "token_expired"
    default_message = "Token expired."


class SubjectNotFoundError(AuthenticationError):
    reason = "subject_not_found"
    default_message = "Invalid token. User not found."


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class CsrfError(ForbiddenError):
    """Mutating request without a usable CSRF token (403)."""


class PayloadTooLargeError(ServiceError):
    """Request body or uploaded file exceeds the configured limit (413)."""
    status_code = 413
    error_code = "payload_too_large"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_seconds: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MissingTokenError",
    "InvalidTokenError",
    "TokenExpiredError",
    "SubjectNotFoundError",
    "ForbiddenError",
    "CsrfError",
    "PayloadTooLargeError",
    "RateLimitedError",
    "ServerError",
]
