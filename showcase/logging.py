from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

REQUEST_ID_FIELD = "request_id"

# Keys whose values never reach a log line, matched as substrings of the key
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "csrf", "cookie")
_EMAIL_KEYS = ("email",)
_MASK = "[redacted]"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Compact JWTs and bearer credentials inside free-text values (error strings)
_BEARER_PATTERN = re.compile(r"(?i)\bbearer\s+[\w\-.~+/]+=*")
_JWT_PATTERN = re.compile(r"\beyJ[\w-]+\.[\w-]+\.[\w-]*")

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id, or mint one, for the current context.

    The id is also bound into structlog's context so every entry logged while
    handling the request carries ``request_id``.
    """
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.bind_contextvars(**{REQUEST_ID_FIELD: cid})
    return cid


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _MASK
    return f"{local[:1]}***@{domain}"


def scrub_text(value: str) -> str:
    """Blank out bearer credentials and JWTs embedded in a message."""
    value = _BEARER_PATTERN.sub(f"Bearer {_MASK}", value)
    return _JWT_PATTERN.sub(_MASK, value)


def _scrub_field(key: str, value: Any, depth: int = 0) -> Any:
    lowered = key.lower()
    if any(marker in lowered for marker in _CREDENTIAL_KEYS):
        return _MASK if value is not None else None
    if any(marker in lowered for marker in _EMAIL_KEYS) and isinstance(value, str):
        return mask_email(value)
    if isinstance(value, dict) and depth < 4:
        return {k: _scrub_field(str(k), v, depth + 1) for k, v in value.items()}
    if isinstance(value, str):
        return scrub_text(value)
    return value


def redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask secrets outright and shorten addresses to their first letter.

    Nested dicts (audit payloads logged as a single field) are walked too.
    """
    for key in list(event_dict):
        if key == "event":
            continue
        event_dict[key] = _scrub_field(key, event_dict[key])
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    Console rendering wins when ``dev_mode`` is set or JSON is turned off.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.JSONRenderer(),
            ]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger whose entries carry ``component``, the last part of ``name``."""
    return structlog.get_logger(component=name.rsplit(".", 1)[-1])


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    dev_mode=_env_flag("LOG_DEV_MODE", False),
)
