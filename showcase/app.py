from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.background import BackgroundTask, BackgroundTasks
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from showcase.api.error_handling import (
    RequestBodyTooLarge,
    error_response,
    payload_too_large_response,
    register_exception_handlers,
)
from showcase.api.routes import admin_router, auth_router, request_context
from showcase.config import get_settings
from showcase.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
_ADMIN_API_PREFIX = "/admin/api"
_NO_STORE_PREFIXES = (_ADMIN_API_PREFIX, "/api/auth")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the audit worker on the serving loop; drain and close on shutdown."""
    from showcase.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.audit.start()

    yield

    try:
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Showcase Admin API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-CSRF-Token",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


async def _record_admin_action(
    request: Request, status_code: int, identity_id: Optional[int]
) -> None:
    from showcase.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.audit.record(
        "admin_action",
        {
            "method": request.method,
            "endpoint": request.url.path,
            "success": 200 <= status_code < 300,
            "statusCode": status_code,
            "body": list(getattr(request.state, "audit_body_keys", [])),
            "files": list(getattr(request.state, "audit_files", [])),
        },
        identity_id,
        request_context(request),
    )


def _is_admin_mutation(request: Request) -> bool:
    return request.method in _MUTATING_METHODS and request.url.path.startswith(
        _ADMIN_API_PREFIX
    )


def _identity_id(request: Request) -> Optional[int]:
    identity = getattr(request.state, "identity", None)
    return identity.id if identity is not None else None


@app.middleware("http")
async def log_admin_actions(request: Request, call_next):
    """Schedule one ``admin_action`` audit entry per mutating admin request.

    The entry is written by a background task that runs after the response
    has been sent. A handler that raises gets its entry (status 500) written
    before the exception continues to the server error handler.
    """
    try:
        response = await call_next(request)
    except Exception:
        if _is_admin_mutation(request):
            await _record_admin_action(request, 500, _identity_id(request))
        raise
    if _is_admin_mutation(request):
        task = BackgroundTask(
            _record_admin_action,
            request,
            response.status_code,
            _identity_id(request),
        )
        if response.background is None:
            response.background = task
        else:
            tasks = BackgroundTasks()
            tasks.tasks.extend([response.background, task])
            response.background = tasks
    return response


class RequestBodyLimitMiddleware:
    """Cap request bodies at ``max_request_bytes``.

    A declared ``Content-Length`` over the cap is refused before the app
    runs. Bodies are also counted as they stream in, so chunked requests
    with no declared length stop at the cap too.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        limit = get_settings().max_request_bytes
        declared = Headers(scope=scope).get("content-length")
        if declared is not None:
            try:
                length = int(declared)
            except ValueError:
                response = error_response(
                    400, "Invalid Content-Length header", code="validation_error"
                )
                await response(scope, receive, send)
                return
            if length > limit:
                logger.warning(
                    "request_body_too_large",
                    path=scope["path"],
                    content_length=length,
                    limit=limit,
                )
                await payload_too_large_response(limit)(scope, receive, send)
                return

        received = 0

        async def counting_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    raise RequestBodyTooLarge(limit)
            return message

        await self.app(scope, counting_receive, send)


app.add_middleware(RequestBodyLimitMiddleware)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-XSS-Protection", "1; mode=block")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Admin and auth responses carry session data and must never be cached
    if request.url.path.startswith(_NO_STORE_PREFIXES) or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, proxy-revalidate"
        )
        response.headers.setdefault("Pragma", "no-cache")
        response.headers.setdefault("Expires", "0")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=()"
    )
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; script-src 'self'; style-src 'self'; img-src 'self' data:; connect-src 'self'; font-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
    )
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag each request with a correlation id for structured logs.

    The id comes from the ``X-Request-ID`` header when the client sends one,
    otherwise a new UUID, and is echoed back in ``X-Request-ID``.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(auth_router)
app.include_router(admin_router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and cache reachability."""
    from showcase.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, bool] = {}

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.health_check), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["store"] = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store")
        checks["store"] = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        checks["store"] = False

    try:
        checks["cache"] = bool(
            await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="cache")
        checks["cache"] = False
    except Exception as exc:
        logger.error("health_check_cache_failed", error=str(exc))
        checks["cache"] = False

    return {
        "status": "healthy" if all(checks.values()) else "unhealthy",
        "version": __version__,
        "checks": checks,
        "audit_worker": runtime.audit.running,
    }


def create_app() -> FastAPI:
    return app
