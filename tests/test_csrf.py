"""Unit tests for CSRF token issue and validation."""

from datetime import datetime, timedelta, timezone

import pytest

from showcase.service.csrf import CsrfManager, requires_csrf
from showcase.storage.memory import MemoryCache


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def manager(cache, clock):
    return CsrfManager(cache, ttl_minutes=30, clock=clock)


async def test_issued_token_validates_for_its_subject(manager, clock):
    token = await manager.issue_token(1)
    assert len(token.token) >= 43
    assert token.expires_at == clock.now + timedelta(minutes=30)
    assert await manager.validate(1, token.token)


async def test_token_bound_to_subject(manager):
    token = await manager.issue_token(42)
    assert await manager.validate(42, token.token)
    assert not await manager.validate(7, token.token)


async def test_token_reusable_until_expiry(manager):
    token = await manager.issue_token(1)
    assert await manager.validate(1, token.token)
    assert await manager.validate(1, token.token)


async def test_expired_token_rejected(manager, clock):
    token = await manager.issue_token(1)
    clock.now = clock.now + timedelta(minutes=30)
    assert not await manager.validate(1, token.token)


async def test_missing_and_unknown_tokens(manager):
    assert not await manager.validate(1, None)
    assert not await manager.validate(1, "")
    assert not await manager.validate(1, "made-up")


async def test_several_live_tokens_per_subject(manager):
    first = await manager.issue_token(1)
    second = await manager.issue_token(1)
    assert first.token != second.token
    assert await manager.validate(1, first.token)
    assert await manager.validate(1, second.token)


async def test_issue_sweeps_expired_tokens(manager, cache, clock):
    await manager.issue_token(1)
    await manager.issue_token(2)
    assert cache.csrf_token_count() == 2
    clock.now = clock.now + timedelta(minutes=31)
    await manager.issue_token(3)
    assert cache.csrf_token_count() == 1


def test_requires_csrf():
    for method in ("GET", "HEAD", "OPTIONS", "TRACE", "get"):
        assert not requires_csrf(method)
    for method in ("POST", "PUT", "PATCH", "DELETE"):
        assert requires_csrf(method)
