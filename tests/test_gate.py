"""Tests for the authorization gate."""

import pytest

from showcase.service.auth import AuthService
from showcase.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidTokenError,
    MissingTokenError,
    ServerError,
)
from showcase.service.gate import AuthorizationGate, extract_bearer
from showcase.storage.errors import StoreError
from showcase.storage.memory import MemoryStore


class BrokenStore(MemoryStore):
    def get_identity(self, identity_id):
        raise StoreError("connection refused")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def auth(store, settings):
    return AuthService(store, settings)


@pytest.fixture
def gate(auth):
    return AuthorizationGate(auth)


def bearer(auth, identity):
    return f"Bearer {auth.issue(identity).token}"


def test_extract_bearer():
    assert extract_bearer("Bearer abc") == "abc"
    assert extract_bearer("bearer  abc ") == "abc"
    assert extract_bearer("Basic abc") is None
    assert extract_bearer("Bearer ") is None
    assert extract_bearer(None) is None


def test_admin_passes(gate, auth):
    identity = auth.create_identity("admin@example.com", "Str0ng!Pass")
    assert gate.authorize(bearer(auth, identity)).id == identity.id


def test_missing_header(gate):
    with pytest.raises(MissingTokenError) as exc:
        gate.authorize(None)
    assert exc.value.message == "Access denied. No token provided."
    assert exc.value.status_code == 401


def test_non_bearer_scheme_counts_as_missing(gate):
    with pytest.raises(MissingTokenError):
        gate.authorize("Basic dXNlcjpwYXNz")


def test_invalid_token(gate):
    with pytest.raises(InvalidTokenError):
        gate.authorize("Bearer nonsense")


def test_non_admin_role_forbidden(gate, auth):
    identity = auth.create_identity("editor@example.com", "Str0ng!Pass", role="editor")
    with pytest.raises(ForbiddenError) as exc:
        gate.authorize(bearer(auth, identity))
    assert exc.value.status_code == 403
    assert exc.value.message == "Access denied. Admin privileges required."


def test_authenticate_skips_role_check(gate, auth):
    identity = auth.create_identity("editor@example.com", "Str0ng!Pass", role="editor")
    assert gate.authenticate(bearer(auth, identity)).role == "editor"


def test_generic_errors_hide_reason(auth):
    gate = AuthorizationGate(auth, generic_errors=True)
    with pytest.raises(AuthenticationError) as exc:
        gate.authorize("Bearer nonsense")
    assert exc.value.message == "Invalid or expired token."
    assert exc.value.detail == {}


@pytest.mark.parametrize("header", [None, "Basic dXNlcjpwYXNz", "Bearer "])
def test_generic_errors_hide_missing_token(auth, header):
    gate = AuthorizationGate(auth, generic_errors=True)
    with pytest.raises(AuthenticationError) as exc:
        gate.authorize(header)
    assert not isinstance(exc.value, MissingTokenError)
    assert exc.value.message == "Invalid or expired token."
    assert exc.value.detail == {}


def test_store_failure_is_server_error(settings):
    store = BrokenStore()
    auth = AuthService(store, settings)
    identity = auth.create_identity("admin@example.com", "Str0ng!Pass")
    with pytest.raises(ServerError) as exc:
        AuthorizationGate(auth).authorize(bearer(auth, identity))
    assert exc.value.status_code == 500
