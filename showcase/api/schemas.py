from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from showcase.logging import get_correlation_id

# Bounds for client-reported security event payloads
MAX_JSON_DEPTH = 10
MAX_ARRAY_ITEMS = 100
MAX_STRING_LENGTH = 4096


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject nested payloads deeper than ``max_depth`` or with oversized arrays."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


def sanitize_string(value: str) -> str:
    """Trim and drop angle brackets from client-submitted text."""
    return re.sub(r"[<>]", "", value.strip())


def sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_string(value)[:MAX_STRING_LENGTH]
    if isinstance(value, list):
        return [sanitize_value(item) for item in value]
    if isinstance(value, dict):
        return {key: sanitize_value(item) for key, item in value.items()}
    return value


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "method_not_allowed",
    "payload_too_large",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code`` value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """API envelope format shared by success and error responses."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class IdentityResponse(BaseModel):
    id: int
    email: str
    name: Optional[str] = None
    role: str
    last_login: Optional[datetime] = Field(default=None, serialization_alias="lastLogin")
    created_at: Optional[datetime] = Field(default=None, serialization_alias="createdAt")


class LoginResponse(BaseModel):
    token: str
    expires_at: datetime = Field(serialization_alias="expiresAt")
    user: IdentityResponse


class SessionPolicy(BaseModel):
    """Client-side idle policy, separate from the server-side token expiry."""

    idle_timeout_minutes: int = Field(serialization_alias="idleTimeoutMinutes")
    idle_warning_minutes: int = Field(serialization_alias="idleWarningMinutes")


class VerifyResponse(BaseModel):
    valid: bool = True
    user: IdentityResponse
    expires_at: datetime = Field(serialization_alias="expiresAt")
    session: SessionPolicy


class CsrfTokenResponse(BaseModel):
    token: str
    expires_at: datetime = Field(serialization_alias="expiresAt")


class MessageResponse(BaseModel):
    message: str


class SecurityEventRequest(BaseModel):
    """Security event reported by the admin UI."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str = Field(..., min_length=1, max_length=64)
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[str] = Field(default=None, max_length=64)
    url: Optional[str] = Field(default=None, max_length=2048)
    session_id: Optional[str] = Field(default=None, alias="sessionId", max_length=128)

    @field_validator("type")
    @classmethod
    def _clean_type(cls, value: str) -> str:
        cleaned = sanitize_string(value)
        if not cleaned:
            raise ValueError("type must not be empty")
        return cleaned

    @field_validator("details")
    @classmethod
    def _clean_details(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return sanitize_value(value)

    @field_validator("timestamp", "url", "session_id")
    @classmethod
    def _clean_optional(cls, value: Optional[str]) -> Optional[str]:
        return sanitize_string(value) if value is not None else None


class SecurityLogEntryResponse(BaseModel):
    id: int
    event_type: str = Field(serialization_alias="eventType")
    event_data: Dict[str, Any] = Field(serialization_alias="eventData")
    user_id: Optional[int] = Field(default=None, serialization_alias="userId")
    user_agent: Optional[str] = Field(default=None, serialization_alias="userAgent")
    ip_address: Optional[str] = Field(default=None, serialization_alias="ipAddress")
    url: Optional[str] = None
    created_at: datetime = Field(serialization_alias="createdAt")


class SecurityLogListResponse(BaseModel):
    items: List[SecurityLogEntryResponse]


class PasswordChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(..., alias="currentPassword", min_length=1, max_length=128)
    new_password: str = Field(..., alias="newPassword", min_length=1, max_length=128)


class UploadedFileResponse(BaseModel):
    original_name: str = Field(serialization_alias="originalName")
    filename: str
    size: int


class UploadResponse(BaseModel):
    files: List[UploadedFileResponse]
