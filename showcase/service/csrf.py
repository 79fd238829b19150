from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from showcase.logging import get_logger
from showcase.storage.models import CsrfToken

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


class CsrfTokenStore(Protocol):
    async def set_csrf_token(self, token: CsrfToken) -> None: ...

    async def get_csrf_token(self, key: str) -> Optional[CsrfToken]: ...

    async def sweep_csrf_tokens(self, now: datetime) -> int: ...


class CsrfManager:
    """Per-subject CSRF tokens for mutating admin requests.

    A token is bound to the subject it was issued for and stays valid until it
    expires; it is not consumed on use. Several tokens may be live for one
    subject at the same time.
    """

    def __init__(
        self,
        store: CsrfTokenStore,
        *,
        ttl_minutes: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def issue_token(self, subject_id: int) -> CsrfToken:
        now = self._now()
        token = CsrfToken(
            token=secrets.token_urlsafe(32),
            subject_id=subject_id,
            expires_at=now + self.ttl,
        )
        await self.store.set_csrf_token(token)
        swept = await self.store.sweep_csrf_tokens(now)
        if swept:
            logger.debug("csrf_tokens_swept", count=swept)
        return token

    async def validate(self, subject_id: int, token: Optional[str]) -> bool:
        if not token:
            return False
        entry = await self.store.get_csrf_token(f"{subject_id}:{token}")
        if entry is None:
            return False
        return entry.expires_at > self._now()


def requires_csrf(method: str) -> bool:
    return method.upper() not in SAFE_METHODS
