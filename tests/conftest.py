import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports aiva.config
_test_tmp_dir = tempfile.mkdtemp(prefix="aiva_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process rate limit buckets so tests never share state through a live Redis
os.environ["REDIS_URL"] = ""
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("MOCK_APP_CONFIG", "true")
os.environ.setdefault("REGISTER_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("LOGIN_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("CHAT_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("FILES_UPLOAD_RATE_LIMIT_PER_MINUTE", "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from aiva.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # The memory store snapshots to SHARED_FS_ROOT; a fresh root per test keeps them isolated
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from aiva import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def signup(client):
    """Register a user through the API; returns ``(user, headers)``.

    With ``role="admin"`` the account is promoted and logged in again so the
    token carries the new role.
    """

    counter = {"n": 0}

    def _signup(email=None, password="Password123", *, role="user", first_name="Test"):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        response = client.post(
            "/api/auth/register",
            json={
                "firstName": first_name,
                "lastName": "User",
                "email": email,
                "password": password,
            },
        )
        assert response.status_code == 201, response.text
        data = response.json()["data"]
        if role != "user":
            from aiva.service.runtime import get_runtime

            get_runtime().store.update_user(data["user"]["id"], role=role)
            response = client.post("/api/auth/login", json={"email": email, "password": password})
            assert response.status_code == 200, response.text
            data = response.json()["data"]
        return data["user"], {"Authorization": f"Bearer {data['token']}"}

    return _signup
