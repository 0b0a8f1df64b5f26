import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before anything imports chatkeep settings
_test_tmp_dir = tempfile.mkdtemp(prefix="chatkeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("EMAIL_ENCRYPTION_KEY", "test-email-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.pop("LLM_API_KEY", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from chatkeep.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets an empty memory store
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def client():
    from chatkeep import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def signup(client):
    """Register a user through the API and return the response JSON."""

    def _signup(
        email="ann@example.com",
        password="longenough1",
        first_name="Ann",
        last_name="Lee",
        confirm_password=None,
    ):
        response = client.post(
            "/auth/signup",
            json={
                "firstName": first_name,
                "lastName": last_name,
                "email": email,
                "password": password,
                "confirmPassword": password if confirm_password is None else confirm_password,
            },
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _signup


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
