from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from showcase.logging import get_logger
from showcase.storage.errors import ConstraintViolation
from showcase.storage.models import (
    ADMIN_ROLE,
    AnalyticsEvent,
    CsrfToken,
    Identity,
    RateWindow,
    SecurityLogEntry,
    utcnow,
)


class MemoryStore:
    """In-memory credential, security log and analytics store.

    Identities are optionally persisted to a JSON state file so that
    ``scripts/bootstrap_admin.py`` and a memory-backed server can share them.
    Log tables are append-only and never persisted.
    """

    def __init__(self, state_path: Optional[str | Path] = None) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[int, Identity] = {}
        self.security_logs: List[SecurityLogEntry] = []
        self.analytics: List[AnalyticsEvent] = []
        self._identity_seq = 1
        self._log_seq = 1
        self._analytics_seq = 1
        # RLock so helpers can nest under the public methods
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path:
            self._load_state()

    # identities
    def create_identity(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: str = ADMIN_ROLE,
    ) -> Identity:
        with self._data_lock:
            if any(existing.email == email for existing in self.identities.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            identity = Identity(
                id=self._identity_seq,
                email=email,
                password_hash=password_hash,
                name=name,
                role=role,
            )
            self._identity_seq += 1
            self.identities[identity.id] = identity
            self._persist_state()
            return identity

    def get_identity(self, identity_id: int) -> Optional[Identity]:
        with self._data_lock:
            return self.identities.get(identity_id)

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            return next(
                (i for i in self.identities.values() if i.email == email), None
            )

    def update_password(self, identity_id: int, password_hash: str) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                raise ConstraintViolation(
                    "identity not found", {"identity_id": identity_id}
                )
            identity.password_hash = password_hash
            identity.updated_at = utcnow()
            self._persist_state()

    def update_role(self, identity_id: int, role: str) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                raise ConstraintViolation(
                    "identity not found", {"identity_id": identity_id}
                )
            identity.role = role
            identity.updated_at = utcnow()
            self._persist_state()

    def touch_last_login(self, identity_id: int, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity:
                identity.last_login = when or utcnow()
                self._persist_state()

    def delete_identity(self, identity_id: int) -> bool:
        with self._data_lock:
            removed = self.identities.pop(identity_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    # security log / analytics
    def append_security_log(
        self,
        event_type: str,
        event_data: Optional[dict] = None,
        *,
        user_id: Optional[int] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        url: Optional[str] = None,
    ) -> SecurityLogEntry:
        with self._data_lock:
            entry = SecurityLogEntry(
                id=self._log_seq,
                event_type=event_type,
                event_data=dict(event_data or {}),
                user_id=user_id,
                user_agent=user_agent,
                ip_address=ip_address,
                url=url,
            )
            self._log_seq += 1
            self.security_logs.append(entry)
            return entry

    def list_security_logs(
        self, *, event_type: Optional[str] = None, limit: int = 100
    ) -> List[SecurityLogEntry]:
        with self._data_lock:
            entries = [
                e
                for e in self.security_logs
                if event_type is None or e.event_type == event_type
            ]
        entries.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return entries[:limit]

    def append_analytics_event(
        self,
        event_type: str,
        event_data: Optional[dict] = None,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AnalyticsEvent:
        with self._data_lock:
            event = AnalyticsEvent(
                id=self._analytics_seq,
                event_type=event_type,
                event_data=dict(event_data or {}),
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self._analytics_seq += 1
            self.analytics.append(event)
            return event

    def list_analytics_events(
        self, *, event_type: Optional[str] = None
    ) -> List[AnalyticsEvent]:
        with self._data_lock:
            return [
                e
                for e in self.analytics
                if event_type is None or e.event_type == event_type
            ]

    def health_check(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # state file
    @staticmethod
    def _serialize_identity(identity: Identity) -> dict:
        return {
            "id": identity.id,
            "email": identity.email,
            "password_hash": identity.password_hash,
            "name": identity.name,
            "role": identity.role,
            "last_login": identity.last_login.isoformat() if identity.last_login else None,
            "created_at": identity.created_at.isoformat(),
            "updated_at": identity.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_identity(data: dict) -> Identity:
        last_login = data.get("last_login")
        return Identity(
            id=int(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            name=data.get("name"),
            role=data.get("role", ADMIN_ROLE),
            last_login=datetime.fromisoformat(last_login) if last_login else None,
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    def _persist_state(self) -> None:
        if not self.state_path:
            return
        state = {
            "identities": [
                self._serialize_identity(i) for i in self.identities.values()
            ],
            "identity_seq": self._identity_seq,
        }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            int(i["id"]): self._deserialize_identity(i)
            for i in data.get("identities", [])
        }
        self._identity_seq = max(
            int(data.get("identity_seq", 1)),
            max(self.identities, default=0) + 1,
        )
        return True


class MemoryCache:
    """Per-process CSRF token and rate-window store.

    Every read-modify-write runs under a ``threading.Lock``. The methods are
    ``async`` so callers treat this and :class:`RedisCache` the same way.
    """

    def __init__(self) -> None:
        self._csrf_tokens: Dict[str, CsrfToken] = {}
        self._csrf_lock = threading.Lock()
        self._windows: Dict[str, RateWindow] = {}
        self._window_lock = threading.Lock()

    # csrf
    async def set_csrf_token(self, token: CsrfToken) -> None:
        with self._csrf_lock:
            self._csrf_tokens[token.key] = token

    async def get_csrf_token(self, key: str) -> Optional[CsrfToken]:
        with self._csrf_lock:
            return self._csrf_tokens.get(key)

    async def sweep_csrf_tokens(self, now: datetime) -> int:
        with self._csrf_lock:
            expired = [k for k, t in self._csrf_tokens.items() if t.expires_at <= now]
            for key in expired:
                del self._csrf_tokens[key]
            return len(expired)

    def csrf_token_count(self) -> int:
        with self._csrf_lock:
            return len(self._csrf_tokens)

    # rate windows
    async def increment_window(
        self, key: str, window_seconds: int, now: datetime, delta: int = 1
    ) -> RateWindow:
        window = timedelta(seconds=window_seconds)
        with self._window_lock:
            current = self._windows.get(key)
            if current is None or now - current.window_start >= window:
                if delta <= 0:
                    # Nothing to give back in a fresh window
                    return RateWindow(key=key, count=0, window_start=now)
                current = RateWindow(key=key, count=0, window_start=now)
            current.count = max(0, current.count + delta)
            self._windows[key] = current
            return RateWindow(
                key=key, count=current.count, window_start=current.window_start
            )

    async def reset_window(self, key: str) -> None:
        with self._window_lock:
            self._windows.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
