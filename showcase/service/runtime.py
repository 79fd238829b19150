from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse, urlunparse

from showcase.config import get_settings, reset_settings_cache
from showcase.logging import get_logger
from showcase.service.audit import AuditLogger
from showcase.service.auth import AuthService
from showcase.service.csrf import CsrfManager
from showcase.service.gate import AuthorizationGate
from showcase.service.rate_limit import (
    ADMIN_TIER,
    AUTH_TIER,
    UPLOAD_TIER,
    build_rate_limiters,
)
from showcase.storage.memory import MemoryCache, MemoryStore
from showcase.storage.postgres import PostgresStore
from showcase.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                # Test runs keep identities per runtime so resets isolate tests
                state_path = (
                    None
                    if self.settings.test_mode
                    else Path(self.settings.state_dir) / "state" / "memory_store.json"
                )
                self.store = MemoryStore(state_path=state_path)
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                self.settings.redis_url
                and not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "REDIS_URL is set but Redis is unreachable; start Redis or set "
                    "ALLOW_REDIS_FALLBACK_DEV=true to keep CSRF tokens and rate limits in-process."
                ) from redis_error
            if self.settings.redis_url:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_unreachable",
                    message=(
                        "Running without Redis; CSRF tokens and rate-limit windows are "
                        "per-process only."
                    ),
                )
            self.cache = MemoryCache()

        self.audit = AuditLogger(self.store)
        self.auth = AuthService(self.store, self.settings)
        self.gate = AuthorizationGate(
            self.auth, generic_errors=self.settings.auth_generic_errors
        )
        self.csrf = CsrfManager(
            self.cache, ttl_minutes=self.settings.csrf_token_ttl_minutes
        )
        limiters = build_rate_limiters(self.settings, self.cache, audit=self.audit)
        self.admin_limiter = limiters[ADMIN_TIER]
        self.auth_limiter = limiters[AUTH_TIER]
        self.upload_limiter = limiters[UPLOAD_TIER]

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            admin_rate_limit=self.settings.admin_rate_limit_max,
            auth_rate_limit=self.settings.auth_rate_limit_max,
            upload_rate_limit=self.settings.upload_rate_limit_max,
        )

    async def aclose(self) -> None:
        await self.audit.stop()
        await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        # Close existing Redis connections to avoid event loop issues
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
            except Exception:
                # Connection may already be closed
                pass

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
