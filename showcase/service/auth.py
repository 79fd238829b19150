from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from showcase.config import Settings
from showcase.logging import get_logger
from showcase.service.errors import (
    InvalidTokenError,
    SubjectNotFoundError,
    TokenExpiredError,
    ValidationError,
)
from showcase.storage.models import ADMIN_ROLE, Identity

logger = get_logger(__name__)

_PASSWORD_SPECIALS = re.compile(r"[^A-Za-z0-9]")


class CredentialStore(Protocol):
    def create_identity(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: str = ADMIN_ROLE,
    ) -> Identity: ...

    def get_identity(self, identity_id: int) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def update_password(self, identity_id: int, password_hash: str) -> None: ...

    def touch_last_login(
        self, identity_id: int, when: Optional[datetime] = None
    ) -> None: ...


@dataclass
class IssuedToken:
    token: str
    expires_at: datetime


def password_problems(password: str) -> List[str]:
    """Return the password policy rules ``password`` breaks (empty when it passes)."""
    problems = []
    if len(password) < 8:
        problems.append("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        problems.append("Password must contain at least one number")
    if not _PASSWORD_SPECIALS.search(password):
        problems.append("Password must contain at least one special character")
    return problems


class AuthService:
    """Password checks and HS256 session tokens for admin identities.

    Tokens are stateless: a token is valid while its signature, issuer,
    audience and expiry check out and its subject still exists with the
    same email and role. There is no refresh; a new token needs a new login.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._token_ttl = timedelta(hours=settings.session_token_ttl_hours)
        self._clock_skew_leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, identity: Identity, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(identity.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=identity.id)
            return False

    def create_identity(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        role: str = ADMIN_ROLE,
    ) -> Identity:
        return self.store.create_identity(
            email.strip().lower(), self.hash_password(password), name=name, role=role
        )

    def authenticate(self, email: str, password: str) -> Optional[Identity]:
        """Check a login attempt; records ``last_login`` on success."""
        identity = self.store.get_identity_by_email(email.strip().lower())
        if not identity or not self.verify_password(identity, password):
            return None
        now = self._now()
        self.store.touch_last_login(identity.id, now)
        identity.last_login = now
        return identity

    def change_password(
        self, identity: Identity, current_password: str, new_password: str
    ) -> None:
        if not self.verify_password(identity, current_password):
            raise ValidationError(
                "Current password is incorrect", detail={"field": "currentPassword"}
            )
        problems = password_problems(new_password)
        if problems:
            raise ValidationError(
                "Password does not meet requirements",
                detail={"field": "newPassword", "errors": problems},
            )
        self.store.update_password(identity.id, self.hash_password(new_password))
        self.logger.info("admin_password_changed", user_id=identity.id)

    # tokens
    def issue(self, identity: Identity) -> IssuedToken:
        now = self._now()
        expires_at = now + self._token_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": str(identity.id),
            "email": identity.email,
            "role": identity.role,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return IssuedToken(
            token=self._encode_jwt(payload),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def verify(self, token: str) -> Identity:
        """Resolve a bearer token to its identity.

        Raises InvalidTokenError, TokenExpiredError or SubjectNotFoundError.
        Only a token that passes every cryptographic and claim check reaches
        the store.
        """
        payload = self.decode(token)
        try:
            subject_id = int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
        identity = self.store.get_identity(subject_id)
        if not identity:
            raise SubjectNotFoundError()
        if payload.get("email") != identity.email or payload.get("role") != identity.role:
            self.logger.warning(
                "session_token_claims_stale",
                user_id=subject_id,
                claimed_role=payload.get("role"),
                current_role=identity.role,
            )
            raise SubjectNotFoundError()
        return identity

    def token_expiry(self, token: str) -> datetime:
        payload = self.decode(token)
        return datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)

    def decode(self, token: str) -> dict[str, Any]:
        payload = self._decode_jwt(token)
        if payload is None:
            raise InvalidTokenError()
        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise InvalidTokenError()
        if exp_ts <= (self._now() - self._clock_skew_leeway).timestamp():
            raise TokenExpiredError()
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Check signature, algorithm, issuer and audience. Expiry is left to the caller."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to block algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        return payload
