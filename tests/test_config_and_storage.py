"""Tests for settings loading, the memory store and runtime wiring."""

from datetime import datetime, timedelta, timezone

import pytest

from showcase.config import Settings
from showcase.service.runtime import _mask_url_password, reset_runtime_for_tests
from showcase.storage.errors import ConstraintViolation
from showcase.storage.memory import MemoryCache, MemoryStore
from showcase.storage.redis_cache import RedisCache


class TestSettings:
    def test_from_env_reads_overrides(self, monkeypatch):
        monkeypatch.setenv("ADMIN_RATE_LIMIT_MAX", "50")
        monkeypatch.setenv("ALLOWED_FILE_TYPES", "image/png, image/gif")
        monkeypatch.setenv("REDIS_URL", " ")
        settings = Settings.from_env()
        assert settings.admin_rate_limit_max == 50
        assert settings.allowed_upload_types == ["image/png", "image/gif"]
        assert settings.redis_url is None

    def test_defaults(self, settings):
        assert settings.session_token_ttl_hours == 24
        assert settings.csrf_token_ttl_minutes == 30
        assert settings.max_request_bytes == 10 * 1024 * 1024
        assert settings.max_upload_bytes == 5 * 1024 * 1024
        assert settings.resolved_upload_dir.name == "uploads"

    def test_generated_jwt_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)
        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


class TestMemoryStore:
    def test_identities_persist_to_state_file(self, tmp_path):
        path = tmp_path / "state" / "memory_store.json"
        store = MemoryStore(state_path=path)
        created = store.create_identity("a@example.com", "hash", name="A")
        store.update_role(created.id, "editor")

        reloaded = MemoryStore(state_path=path)
        identity = reloaded.get_identity_by_email("a@example.com")
        assert identity.id == created.id
        assert identity.role == "editor"
        assert reloaded.create_identity("b@example.com", "hash").id == created.id + 1

    def test_update_missing_identity(self):
        with pytest.raises(ConstraintViolation):
            MemoryStore().update_password(42, "hash")


class TestMemoryCache:
    async def test_window_counts_and_expires(self):
        cache = MemoryCache()
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert (await cache.increment_window("k", 60, now)).count == 1
        assert (await cache.increment_window("k", 60, now + timedelta(seconds=59))).count == 2
        fresh = await cache.increment_window("k", 60, now + timedelta(seconds=60))
        assert fresh.count == 1
        assert fresh.window_start == now + timedelta(seconds=60)


class TestRuntime:
    def test_unreachable_redis_falls_back_in_test_mode(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
        runtime = reset_runtime_for_tests()
        assert isinstance(runtime.cache, MemoryCache)
        assert runtime.csrf.store is runtime.cache

    def test_memory_store_in_test_mode_is_not_file_backed(self):
        runtime = reset_runtime_for_tests()
        assert isinstance(runtime.store, MemoryStore)
        assert runtime.store.state_path is None


def test_redis_window_keys_are_hashed():
    key = RedisCache._window_key("auth:1.2.3.4")
    assert key.startswith("rate:")
    assert "1.2.3.4" not in key
    assert key != RedisCache._window_key("auth:1.2.3.5")


def test_mask_url_password():
    assert _mask_url_password("redis://:secret@localhost:6379/0") == "redis://:***@localhost:6379/0"
    assert _mask_url_password("redis://localhost:6379") == "redis://localhost:6379"
