"""Unit tests for password handling and session tokens."""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from showcase.service.auth import AuthService, password_problems
from showcase.service.errors import (
    InvalidTokenError,
    SubjectNotFoundError,
    TokenExpiredError,
    ValidationError,
)
from showcase.storage.errors import ConstraintViolation
from showcase.storage.memory import MemoryStore


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
def auth(store, settings, clock):
    return AuthService(store, settings, clock=clock)


@pytest.fixture
def identity(auth):
    return auth.create_identity("Admin@Example.com", "Str0ng!Pass", name="Admin")


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestPasswords:
    def test_create_identity_normalizes_email_and_hashes(self, identity):
        assert identity.email == "admin@example.com"
        assert identity.password_hash.startswith("$argon2id$")
        assert identity.id == 1

    def test_duplicate_email_rejected(self, auth, identity):
        with pytest.raises(ConstraintViolation):
            auth.create_identity("admin@example.com", "Other!Pass1")

    def test_authenticate_records_last_login(self, auth, identity, clock, store):
        result = auth.authenticate("ADMIN@example.com ", "Str0ng!Pass")
        assert result is not None
        assert store.get_identity(identity.id).last_login == clock.now

    def test_authenticate_wrong_password(self, auth, identity):
        assert auth.authenticate("admin@example.com", "wrong") is None

    def test_authenticate_unknown_email(self, auth):
        assert auth.authenticate("nobody@example.com", "Str0ng!Pass") is None

    def test_password_policy(self):
        assert password_problems("Str0ng!Pass") == []
        problems = password_problems("short")
        assert "Password must be at least 8 characters long" in problems
        assert "Password must contain at least one number" in problems
        assert "Password must contain at least one special character" in problems

    def test_change_password(self, auth, identity):
        auth.change_password(identity, "Str0ng!Pass", "N3w!Password")
        assert auth.authenticate("admin@example.com", "N3w!Password") is not None
        assert auth.authenticate("admin@example.com", "Str0ng!Pass") is None

    def test_change_password_wrong_current(self, auth, identity):
        with pytest.raises(ValidationError) as exc:
            auth.change_password(identity, "nope", "N3w!Password")
        assert exc.value.detail["field"] == "currentPassword"

    def test_change_password_weak_new(self, auth, identity):
        with pytest.raises(ValidationError) as exc:
            auth.change_password(identity, "Str0ng!Pass", "weak")
        assert exc.value.detail["field"] == "newPassword"


class TestSessionTokens:
    def test_issue_and_verify(self, auth, identity, clock):
        issued = auth.issue(identity)
        assert issued.expires_at == clock.now + timedelta(hours=24)
        assert auth.verify(issued.token).id == identity.id

    def test_claims(self, auth, identity, settings):
        payload = auth.decode(auth.issue(identity).token)
        assert payload["sub"] == str(identity.id)
        assert payload["email"] == identity.email
        assert payload["role"] == "admin"
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["exp"] - payload["iat"] == 24 * 3600

    def test_expired_after_ttl(self, auth, identity, clock):
        token = auth.issue(identity).token
        clock.advance(hours=24)
        with pytest.raises(TokenExpiredError) as exc:
            auth.verify(token)
        assert exc.value.message == "Token expired."
        assert exc.value.detail == {"reason": "token_expired"}

    def test_valid_just_before_expiry(self, auth, identity, clock):
        token = auth.issue(identity).token
        clock.advance(hours=23, minutes=59)
        assert auth.verify(token).id == identity.id

    def test_tampered_signature(self, auth, identity):
        header, payload, _sig = auth.issue(identity).token.split(".")
        with pytest.raises(InvalidTokenError):
            auth.verify(f"{header}.{payload}.AAAA")

    def test_tampered_payload(self, auth, identity):
        header, payload, sig = auth.issue(identity).token.split(".")
        claims = auth.decode(auth.issue(identity).token)
        claims["role"] = "superuser"
        with pytest.raises(InvalidTokenError):
            auth.verify(f"{header}.{_b64(claims)}.{sig}")

    def test_algorithm_none_rejected(self, auth, identity):
        _header, payload, _sig = auth.issue(identity).token.split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."
        with pytest.raises(InvalidTokenError):
            auth.verify(forged)

    def test_garbage_token(self, auth):
        with pytest.raises(InvalidTokenError) as exc:
            auth.verify("not-a-token")
        assert exc.value.message == "Invalid token."

    def test_wrong_secret(self, store, settings, identity, clock):
        other = AuthService(
            store,
            settings.model_copy(update={"jwt_secret": "another-secret-value-for-tests-123456"}),
            clock=clock,
        )
        with pytest.raises(InvalidTokenError):
            other.verify(AuthService(store, settings, clock=clock).issue(identity).token)

    def test_wrong_audience(self, store, settings, identity, clock):
        issuer = AuthService(
            store, settings.model_copy(update={"jwt_audience": "elsewhere"}), clock=clock
        )
        token = issuer.issue(identity).token
        with pytest.raises(InvalidTokenError):
            AuthService(store, settings, clock=clock).verify(token)

    def test_deleted_subject(self, auth, identity, store):
        token = auth.issue(identity).token
        store.delete_identity(identity.id)
        with pytest.raises(SubjectNotFoundError) as exc:
            auth.verify(token)
        assert exc.value.message == "Invalid token. User not found."

    def test_role_change_invalidates_token(self, auth, identity, store):
        token = auth.issue(identity).token
        store.update_role(identity.id, "editor")
        with pytest.raises(SubjectNotFoundError):
            auth.verify(token)

    def test_token_expiry(self, auth, identity):
        issued = auth.issue(identity)
        assert auth.token_expiry(issued.token) == issued.expires_at

    def test_rejected_tokens_never_reach_the_store(self, auth, identity, store, clock, monkeypatch):
        calls = []
        real_get_identity = store.get_identity

        def counting_get_identity(identity_id):
            calls.append(identity_id)
            return real_get_identity(identity_id)

        monkeypatch.setattr(store, "get_identity", counting_get_identity)
        header, payload, _sig = auth.issue(identity).token.split(".")
        with pytest.raises(InvalidTokenError):
            auth.verify(f"{header}.{payload}.AAAA")
        expired = auth.issue(identity).token
        clock.advance(hours=25)
        with pytest.raises(TokenExpiredError):
            auth.verify(expired)
        assert calls == []
