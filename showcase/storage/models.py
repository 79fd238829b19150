from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


ADMIN_ROLE = "admin"


@dataclass
class Identity:
    id: int
    email: str
    password_hash: str
    name: Optional[str] = None
    role: str = ADMIN_ROLE
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public_dict(self) -> Dict:
        """Identity fields safe to hand back to the admin UI."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
        }


@dataclass
class SecurityLogEntry:
    id: int
    event_type: str
    event_data: Dict = field(default_factory=dict)
    user_id: Optional[int] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AnalyticsEvent:
    id: int
    event_type: str
    event_data: Dict = field(default_factory=dict)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CsrfToken:
    token: str
    subject_id: int
    expires_at: datetime

    @property
    def key(self) -> str:
        return f"{self.subject_id}:{self.token}"


@dataclass
class RateWindow:
    key: str
    count: int
    window_start: datetime


@dataclass(frozen=True)
class RequestContext:
    """Request metadata attached to audit entries and rate-limit events."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    url: Optional[str] = None
    method: Optional[str] = None
