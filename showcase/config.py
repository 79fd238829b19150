from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from showcase.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ALLOWED_UPLOAD_TYPES = ["image/jpeg", "image/png", "image/gif", "image/webp"]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the showcase admin backend."""

    database_url: str = env_field(
        "postgresql://localhost:5432/showcase", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared store for CSRF tokens and rate-limit windows; unset keeps them per-process",
    )
    state_dir: str = env_field("/srv/showcase", "STATE_DIR")
    upload_dir: str | None = env_field(None, "UPLOAD_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and in-memory fallbacks for the test suite.",
    )

    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("showcase", "JWT_ISSUER")
    jwt_audience: str = env_field("showcase-admin", "JWT_AUDIENCE")
    session_token_ttl_hours: int = env_field(24, "SESSION_TOKEN_TTL_HOURS")
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS")
    auth_generic_errors: bool = env_field(
        False,
        "AUTH_GENERIC_ERRORS",
        description="Collapse 401 messages so callers cannot tell expired, invalid and unknown-subject apart",
    )

    # Client-side idle policy, reported to the admin UI
    admin_idle_timeout_minutes: int = env_field(30, "ADMIN_IDLE_TIMEOUT_MINUTES")
    admin_idle_warning_minutes: int = env_field(5, "ADMIN_IDLE_WARNING_MINUTES")

    # CSRF
    csrf_token_ttl_minutes: int = env_field(30, "CSRF_TOKEN_TTL_MINUTES")

    # Rate limit tiers
    admin_rate_limit_max: int = env_field(200, "ADMIN_RATE_LIMIT_MAX")
    admin_rate_limit_window_seconds: int = env_field(15 * 60, "ADMIN_RATE_LIMIT_WINDOW_SECONDS")
    auth_rate_limit_max: int = env_field(10, "AUTH_RATE_LIMIT_MAX")
    auth_rate_limit_window_seconds: int = env_field(15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    upload_rate_limit_max: int = env_field(10, "UPLOAD_RATE_LIMIT_MAX")
    upload_rate_limit_window_seconds: int = env_field(60, "UPLOAD_RATE_LIMIT_WINDOW_SECONDS")
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as the client address (only behind a trusted proxy)",
    )

    # Request and upload limits
    max_request_bytes: int = env_field(10 * 1024 * 1024, "MAX_REQUEST_BYTES")
    max_upload_bytes: int = env_field(5 * 1024 * 1024, "MAX_FILE_SIZE")
    max_upload_files: int = env_field(5, "MAX_UPLOAD_FILES")
    allowed_upload_types: list[str] = env_field(
        DEFAULT_ALLOWED_UPLOAD_TYPES, "ALLOWED_FILE_TYPES"
    )

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("allowed_upload_types", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", "upload_dir", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        state_root = Path(os.getenv("STATE_DIR", "/srv/showcase"))
        secret_path = state_root / ".jwt_secret"

        try:
            state_root.mkdir(parents=True, exist_ok=True)
            os.chmod(state_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(state_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        return generated

    @property
    def resolved_upload_dir(self) -> Path:
        return Path(self.upload_dir) if self.upload_dir else Path(self.state_dir) / "uploads"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
