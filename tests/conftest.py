import asyncio
import inspect
import os
import tempfile

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="showcase_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# CSRF tokens and rate windows stay in-process unless a test opts into Redis
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from showcase.config import Settings  # noqa: E402
from showcase.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

ADMIN_PASSWORD = "AdminPassword123!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    """Standalone settings for unit tests that build services directly."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        state_dir=str(tmp_path),
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def client():
    """Test client without the lifespan, so audit entries are written inline."""
    from showcase import app as app_module

    return TestClient(app_module.app)


def make_identity(email="admin@example.com", password=ADMIN_PASSWORD, role="admin"):
    runtime = get_runtime()
    return runtime.auth.create_identity(email, password, name="Admin", role=role)


def login(client, email="admin@example.com", password=ADMIN_PASSWORD):
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    token = response.json()["data"]["token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client):
    make_identity()
    return login(client)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
