from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Dict, Optional, Protocol

from showcase.logging import get_logger
from showcase.service.errors import RateLimitedError
from showcase.storage.models import RateWindow, RequestContext

if TYPE_CHECKING:
    from showcase.config import Settings
    from showcase.service.audit import AuditLogger

logger = get_logger(__name__)

ADMIN_TIER = "admin"
AUTH_TIER = "auth"
UPLOAD_TIER = "upload"

TIER_MESSAGES = {
    ADMIN_TIER: "Too many admin requests from this IP, please try again later.",
    AUTH_TIER: "Too many login attempts from this IP, please try again later.",
    UPLOAD_TIER: "Too many file uploads from this IP, please try again later.",
}


class RateWindowStore(Protocol):
    async def increment_window(
        self, key: str, window_seconds: int, now: datetime, delta: int = 1
    ) -> RateWindow: ...

    async def reset_window(self, key: str) -> None: ...


@dataclass
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    window_seconds: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def retry_after_seconds(self) -> int:
        return self.window_seconds


class RateLimiter:
    """Fixed-window request counter for one tier.

    The window for a key opens on its first request and the count resets once
    ``window_seconds`` have elapsed. Each tier prefixes its keys with its own
    name, so tiers sharing a store never see each other's counts.
    """

    def __init__(
        self,
        tier: str,
        store: RateWindowStore,
        *,
        limit: int,
        window_seconds: int,
        audit: Optional["AuditLogger"] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                tier=tier,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60
        self.tier = tier
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.message = TIER_MESSAGES.get(tier, "Too many requests, please try again later.")
        self.audit = audit
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def _key(self, key: str) -> str:
        return f"{self.tier}:{key}"

    async def hit(
        self,
        key: str,
        context: Optional[RequestContext] = None,
        *,
        extra: Optional[Dict[str, object]] = None,
    ) -> RateLimitDecision:
        """Count one request for ``key`` and decide whether it may proceed.

        A denied request records exactly one ``{tier}_rate_limit_exceeded``
        security entry.
        """
        now = self._now()
        if self.limit <= 0:
            return RateLimitDecision(True, 0, self.limit, self.window_seconds, now)
        window = await self.store.increment_window(
            self._key(key), self.window_seconds, now
        )
        decision = RateLimitDecision(
            allowed=window.count <= self.limit,
            count=window.count,
            limit=self.limit,
            window_seconds=self.window_seconds,
            reset_at=window.window_start + timedelta(seconds=self.window_seconds),
        )
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                tier=self.tier,
                key=key,
                count=window.count,
                limit=self.limit,
            )
            if self.audit is not None:
                detail: Dict[str, object] = {
                    "limit": self.limit,
                    "windowMs": self.window_seconds * 1000,
                    "endpoint": context.url if context else None,
                }
                detail.update(extra or {})
                await self.audit.record(
                    f"{self.tier}_rate_limit_exceeded", detail, None, context
                )
        return decision

    async def release(self, key: str) -> None:
        """Give back one counted request, used when the response was a success."""
        if self.limit <= 0:
            return
        await self.store.increment_window(
            self._key(key), self.window_seconds, self._now(), delta=-1
        )

    async def reset(self, key: str) -> None:
        await self.store.reset_window(self._key(key))

    def error(self, decision: RateLimitDecision) -> RateLimitedError:
        return RateLimitedError(
            self.message,
            retry_after_seconds=decision.retry_after_seconds,
            detail={"retryAfter": math.ceil(decision.retry_after_seconds / 60)},
        )

    async def enforce(
        self,
        key: str,
        context: Optional[RequestContext] = None,
        *,
        extra: Optional[Dict[str, object]] = None,
    ) -> RateLimitDecision:
        decision = await self.hit(key, context, extra=extra)
        if not decision.allowed:
            raise self.error(decision)
        return decision


def build_rate_limiters(
    settings: "Settings",
    store: RateWindowStore,
    *,
    audit: Optional["AuditLogger"] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Dict[str, RateLimiter]:
    return {
        ADMIN_TIER: RateLimiter(
            ADMIN_TIER,
            store,
            limit=settings.admin_rate_limit_max,
            window_seconds=settings.admin_rate_limit_window_seconds,
            audit=audit,
            clock=clock,
        ),
        AUTH_TIER: RateLimiter(
            AUTH_TIER,
            store,
            limit=settings.auth_rate_limit_max,
            window_seconds=settings.auth_rate_limit_window_seconds,
            audit=audit,
            clock=clock,
        ),
        UPLOAD_TIER: RateLimiter(
            UPLOAD_TIER,
            store,
            limit=settings.upload_rate_limit_max,
            window_seconds=settings.upload_rate_limit_window_seconds,
            audit=audit,
            clock=clock,
        ),
    }
