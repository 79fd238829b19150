"""Unit tests for the fixed-window rate limiter tiers."""

from datetime import datetime, timedelta, timezone

import pytest

from showcase.service.audit import AuditLogger
from showcase.service.errors import RateLimitedError
from showcase.service.rate_limit import (
    ADMIN_TIER,
    AUTH_TIER,
    UPLOAD_TIER,
    RateLimiter,
    build_rate_limiters,
)
from showcase.storage.memory import MemoryCache, MemoryStore
from showcase.storage.models import RequestContext


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def limiter(cache, store, clock):
    return RateLimiter(
        AUTH_TIER,
        cache,
        limit=3,
        window_seconds=900,
        audit=AuditLogger(store),
        clock=clock,
    )


CONTEXT = RequestContext(ip_address="10.0.0.1", url="/api/auth/login", method="POST")


async def test_allows_up_to_limit_then_denies(limiter):
    for expected in (1, 2, 3):
        decision = await limiter.hit("10.0.0.1", CONTEXT)
        assert decision.allowed
        assert decision.count == expected
    decision = await limiter.hit("10.0.0.1", CONTEXT)
    assert not decision.allowed
    assert decision.remaining == 0


async def test_denial_records_one_security_entry(limiter, store):
    for _ in range(3):
        await limiter.hit("10.0.0.1", CONTEXT)
    await limiter.hit("10.0.0.1", CONTEXT, extra={"email": "a@example.com"})
    entries = store.list_security_logs(event_type="auth_rate_limit_exceeded")
    assert len(entries) == 1
    assert entries[0].ip_address == "10.0.0.1"
    assert entries[0].event_data == {
        "limit": 3,
        "windowMs": 900_000,
        "endpoint": "/api/auth/login",
        "email": "a@example.com",
    }


async def test_window_resets_after_elapsed(limiter, clock):
    for _ in range(4):
        await limiter.hit("k")
    clock.advance(seconds=900)
    decision = await limiter.hit("k")
    assert decision.allowed
    assert decision.count == 1


async def test_keys_are_independent(limiter):
    for _ in range(4):
        await limiter.hit("a")
    assert (await limiter.hit("b")).allowed


async def test_release_gives_back_a_request(limiter):
    await limiter.hit("k")
    await limiter.hit("k")
    await limiter.release("k")
    assert (await limiter.hit("k")).count == 2


async def test_release_on_fresh_window_does_not_go_negative(limiter):
    await limiter.release("k")
    assert (await limiter.hit("k")).count == 1


async def test_reset(limiter):
    for _ in range(4):
        await limiter.hit("k")
    await limiter.reset("k")
    assert (await limiter.hit("k")).count == 1


async def test_enforce_raises_with_retry_after(limiter):
    for _ in range(3):
        await limiter.enforce("k")
    with pytest.raises(RateLimitedError) as exc:
        await limiter.enforce("k")
    assert exc.value.status_code == 429
    assert exc.value.retry_after_seconds == 900
    assert exc.value.detail == {"retryAfter": 15}
    assert exc.value.message == "Too many login attempts from this IP, please try again later."


async def test_zero_limit_is_unlimited(cache, clock):
    limiter = RateLimiter(UPLOAD_TIER, cache, limit=0, window_seconds=60, clock=clock)
    for _ in range(50):
        assert (await limiter.hit("k")).allowed


async def test_tiers_do_not_share_counts(settings, cache, clock):
    limiters = build_rate_limiters(
        settings.model_copy(update={"admin_rate_limit_max": 1, "upload_rate_limit_max": 1}),
        cache,
        clock=clock,
    )
    assert (await limiters[ADMIN_TIER].hit("ip")).allowed
    assert (await limiters[UPLOAD_TIER].hit("ip")).allowed
    assert not (await limiters[ADMIN_TIER].hit("ip")).allowed


def test_build_rate_limiters_defaults(settings, cache):
    limiters = build_rate_limiters(settings, cache)
    assert (limiters[ADMIN_TIER].limit, limiters[ADMIN_TIER].window_seconds) == (200, 900)
    assert (limiters[AUTH_TIER].limit, limiters[AUTH_TIER].window_seconds) == (10, 900)
    assert (limiters[UPLOAD_TIER].limit, limiters[UPLOAD_TIER].window_seconds) == (10, 60)


async def test_upload_tier_retry_after_rounds_up_to_minutes(settings, cache, clock):
    limiter = build_rate_limiters(settings, cache, clock=clock)[UPLOAD_TIER]
    for _ in range(10):
        await limiter.enforce("ip-1")
    with pytest.raises(RateLimitedError) as exc:
        await limiter.enforce("ip-1")
    assert exc.value.retry_after_seconds == 60
    assert exc.value.detail == {"retryAfter": 1}
