from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

import pydantic
from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from starlette.datastructures import UploadFile as StarletteUploadFile

from showcase.api.schemas import (
    CsrfTokenResponse,
    Envelope,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordChangeRequest,
    SecurityEventRequest,
    SecurityLogEntryResponse,
    SecurityLogListResponse,
    SessionPolicy,
    UploadedFileResponse,
    UploadResponse,
    VerifyResponse,
)
from showcase.config import Settings
from showcase.logging import get_logger
from showcase.service.csrf import requires_csrf
from showcase.service.errors import AuthenticationError, CsrfError
from showcase.service.gate import extract_bearer
from showcase.service.runtime import get_runtime
from showcase.service.uploads import UploadCandidate, save_uploads, validate_uploads
from showcase.storage.models import Identity, RequestContext

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
admin_router = APIRouter(prefix="/admin/api", tags=["admin"])

CSRF_FORM_FIELD = "_csrf"


def client_ip(request: Request, settings: Settings) -> str:
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else "unknown"


def request_context(request: Request) -> RequestContext:
    runtime = get_runtime()
    return RequestContext(
        ip_address=client_ip(request, runtime.settings),
        user_agent=request.headers.get("User-Agent"),
        url=request.url.path,
        method=request.method,
    )


async def _read_body_fields(request: Request) -> Tuple[Dict[str, Any], List[str]]:
    """Return the JSON or form fields of a request and any uploaded file names.

    The body is cached on the request, so the route handler can still read it.
    """
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError:
            return {}, []
        return (payload if isinstance(payload, dict) else {}), []
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        fields: Dict[str, Any] = {}
        files: List[str] = []
        for key, value in form.multi_items():
            if isinstance(value, StarletteUploadFile):
                files.append(value.filename or key)
            else:
                fields[key] = value
        return fields, files
    return {}, []


async def _parse_json_body(request: Request, model: Type[ModelT]) -> ModelT:
    """Validate the JSON body against ``model`` once the admin gate has passed."""
    try:
        payload = await request.json()
    except ValueError as exc:
        raise RequestValidationError(
            [{"loc": ("body",), "msg": "Invalid JSON body", "type": "json_invalid"}]
        ) from exc
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise RequestValidationError(
            [{**err, "loc": ("body", *err.get("loc", ()))} for err in exc.errors()]
        ) from exc


async def _check_csrf(
    request: Request,
    identity: Identity,
    header_token: Optional[str],
    fields: Dict[str, Any],
    context: RequestContext,
) -> None:
    runtime = get_runtime()
    token = header_token
    if not token:
        body_token = fields.get(CSRF_FORM_FIELD)
        token = body_token if isinstance(body_token, str) else None
    if not token:
        await runtime.audit.record(
            "csrf_violation",
            {"reason": "missing", "method": request.method, "endpoint": request.url.path},
            identity.id,
            context,
        )
        raise CsrfError("CSRF token required")
    if not await runtime.csrf.validate(identity.id, token):
        await runtime.audit.record(
            "csrf_violation",
            {"reason": "invalid", "method": request.method, "endpoint": request.url.path},
            identity.id,
            context,
        )
        raise CsrfError("Invalid CSRF token")


async def require_session(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Identity:
    """Session verification only, for the auth routes."""
    runtime = get_runtime()
    identity = runtime.gate.authenticate(authorization)
    request.state.identity = identity
    return identity


async def require_admin(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token"),
) -> Identity:
    """Rate limit, verify, role check, then CSRF for mutating methods."""
    runtime = get_runtime()
    context = request_context(request)
    rate_key = context.ip_address
    existing = getattr(request.state, "identity", None)
    if existing is not None:
        rate_key = f"{rate_key}-{existing.id}"
    await runtime.admin_limiter.enforce(rate_key, context)

    identity = runtime.gate.authorize(authorization)
    request.state.identity = identity

    if requires_csrf(request.method):
        fields, files = await _read_body_fields(request)
        request.state.audit_body_keys = [k for k in fields if k != CSRF_FORM_FIELD]
        request.state.audit_files = files
        await _check_csrf(request, identity, x_csrf_token, fields, context)
    return identity


def _identity_response(identity: Identity) -> IdentityResponse:
    return IdentityResponse(
        id=identity.id,
        email=identity.email,
        name=identity.name,
        role=identity.role,
        last_login=identity.last_login,
        created_at=identity.created_at,
    )


# auth
@auth_router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request):
    """Exchange email and password for a 24-hour session token.

    Failed attempts count against the auth rate limit; successful ones are
    given back.
    """
    runtime = get_runtime()
    context = request_context(request)
    rate_key = context.ip_address
    await runtime.auth_limiter.enforce(rate_key, context, extra={"email": body.email})
    identity = runtime.auth.authenticate(body.email, body.password)
    if not identity:
        logger.warning("admin_login_failed", email=body.email, ip=context.ip_address)
        raise AuthenticationError(
            "Invalid credentials", detail={"reason": "invalid_credentials"}
        )
    await runtime.auth_limiter.release(rate_key)
    issued = runtime.auth.issue(identity)
    logger.info("admin_login_succeeded", user_id=identity.id)
    return Envelope(
        status="ok",
        data=LoginResponse(
            token=issued.token,
            expires_at=issued.expires_at,
            user=_identity_response(identity),
        ),
    )


@auth_router.get("/verify", response_model=Envelope)
async def verify(
    authorization: Optional[str] = Header(None),
    identity: Identity = Depends(require_session),
):
    runtime = get_runtime()
    expires_at = runtime.auth.token_expiry(extract_bearer(authorization))
    return Envelope(
        status="ok",
        data=VerifyResponse(
            user=_identity_response(identity),
            expires_at=expires_at,
            session=SessionPolicy(
                idle_timeout_minutes=runtime.settings.admin_idle_timeout_minutes,
                idle_warning_minutes=runtime.settings.admin_idle_warning_minutes,
            ),
        ),
    )


@auth_router.get("/me", response_model=Envelope)
async def me(identity: Identity = Depends(require_session)):
    return Envelope(status="ok", data={"user": _identity_response(identity)})


@auth_router.post("/logout", response_model=Envelope)
async def logout(request: Request, identity: Identity = Depends(require_session)):
    """Tokens are dropped client-side; the server only records the event."""
    runtime = get_runtime()
    await runtime.audit.track(
        "admin_logout", {"userId": identity.id}, request_context(request)
    )
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


# admin
@admin_router.get("/csrf-token", response_model=Envelope)
async def csrf_token(identity: Identity = Depends(require_admin)):
    runtime = get_runtime()
    token = await runtime.csrf.issue_token(identity.id)
    return Envelope(
        status="ok",
        data=CsrfTokenResponse(token=token.token, expires_at=token.expires_at),
    )


@admin_router.post("/security-log", response_model=Envelope, status_code=201)
async def report_security_event(
    request: Request,
    identity: Identity = Depends(require_admin),
):
    runtime = get_runtime()
    body = await _parse_json_body(request, SecurityEventRequest)
    event_type = (
        "suspicious_activity" if body.type == "suspicious_activity" else "security_event"
    )
    await runtime.audit.record(
        event_type,
        {
            "type": body.type,
            "details": body.details,
            "timestamp": body.timestamp,
            "sessionId": body.session_id,
            "clientUrl": body.url,
        },
        identity.id,
        request_context(request),
    )
    return Envelope(status="ok", data=MessageResponse(message="Security event logged"))


@admin_router.get("/security-logs", response_model=Envelope)
async def list_security_logs(
    event_type: Optional[str] = Query(None, alias="eventType", max_length=64),
    limit: int = Query(100, ge=1, le=500),
    identity: Identity = Depends(require_admin),
):
    runtime = get_runtime()
    entries = await asyncio.to_thread(
        runtime.store.list_security_logs, event_type=event_type, limit=limit
    )
    items = [
        SecurityLogEntryResponse(
            id=entry.id,
            event_type=entry.event_type,
            event_data=entry.event_data,
            user_id=entry.user_id,
            user_agent=entry.user_agent,
            ip_address=entry.ip_address,
            url=entry.url,
            created_at=entry.created_at,
        )
        for entry in entries
    ]
    return Envelope(status="ok", data=SecurityLogListResponse(items=items))


@admin_router.post("/account/password", response_model=Envelope)
async def change_password(
    request: Request,
    identity: Identity = Depends(require_admin),
):
    runtime = get_runtime()
    body = await _parse_json_body(request, PasswordChangeRequest)
    runtime.auth.change_password(identity, body.current_password, body.new_password)
    return Envelope(
        status="ok", data=MessageResponse(message="Password changed successfully")
    )


@admin_router.post("/uploads", response_model=Envelope, status_code=201)
async def upload_files(
    request: Request,
    identity: Identity = Depends(require_admin),
):
    runtime = get_runtime()
    settings = runtime.settings
    context = request_context(request)
    await runtime.upload_limiter.enforce(f"{context.ip_address}-{identity.id}", context)

    async with request.form() as form:
        files = [
            value for value in form.getlist("files") if isinstance(value, StarletteUploadFile)
        ]
        if not files:
            raise RequestValidationError(
                [{"loc": ("body", "files"), "msg": "Field required", "type": "missing"}]
            )
        saved = await _store_uploads(files, settings)
    return Envelope(
        status="ok",
        data=UploadResponse(
            files=[
                UploadedFileResponse(
                    original_name=item["originalName"],
                    filename=item["filename"],
                    size=item["size"],
                )
                for item in saved
            ]
        ),
    )


async def _store_uploads(
    files: List[StarletteUploadFile], settings: Settings
) -> List[Dict[str, Any]]:
    if len(files) > settings.max_upload_files:
        validate_uploads(
            [UploadCandidate(f.filename or "", f.content_type or "", 0) for f in files],
            max_files=settings.max_upload_files,
            max_bytes=settings.max_upload_bytes,
            allowed_types=settings.allowed_upload_types,
        )
    contents: List[Tuple[str, bytes]] = []
    candidates: List[UploadCandidate] = []
    for upload in files:
        # Read one byte past the limit so oversized files are detected without buffering them
        data = await upload.read(settings.max_upload_bytes + 1)
        candidates.append(
            UploadCandidate(upload.filename or "", upload.content_type or "", len(data))
        )
        contents.append((upload.filename or "", data))
    validate_uploads(
        candidates,
        max_files=settings.max_upload_files,
        max_bytes=settings.max_upload_bytes,
        allowed_types=settings.allowed_upload_types,
    )
    return await asyncio.to_thread(save_uploads, settings.resolved_upload_dir, contents)
