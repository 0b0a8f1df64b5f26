"""Error bodies and how much of a server failure they reveal."""

import pytest
from fastapi.testclient import TestClient

from chatkeep.service.errors import StorageError


def _break_storage(runtime, monkeypatch):
    async def _fail(*args, **kwargs):
        raise StorageError(detail={"operation": "get_user_by_digest", "reason": "timeout"})

    monkeypatch.setattr(runtime.credentials, "find_by_email", _fail)


def _login(client):
    return client.post(
        "/auth/login", json={"email": "ann@example.com", "password": "longenough1"}
    )


def test_storage_failure_hides_internals(client, runtime, monkeypatch):
    _break_storage(runtime, monkeypatch)
    response = _login(client)
    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "message": "Internal server error",
        "code": "storage_error",
    }


def test_storage_failure_detail_in_development(client, monkeypatch):
    from chatkeep.service.runtime import reset_runtime_for_tests

    monkeypatch.setenv("ENVIRONMENT", "development")
    runtime = reset_runtime_for_tests()
    _break_storage(runtime, monkeypatch)
    body = _login(client).json()
    assert body["message"] == "Storage is temporarily unavailable"
    assert body["detail"]["reason"] == "timeout"


def test_storage_failure_is_not_a_login_failure(client, runtime, monkeypatch):
    _break_storage(runtime, monkeypatch)
    assert _login(client).json()["code"] != "invalid_credentials"


def test_storage_failure_during_auth_is_500(client, signup, runtime, monkeypatch):
    token = signup()["token"]

    async def _fail(*args, **kwargs):
        raise StorageError(detail={"reason": "timeout"})

    monkeypatch.setattr(runtime.credentials, "find_by_id", _fail)
    response = client.get("/auth/validate", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 500
    assert response.json()["code"] == "storage_error"


def test_unhandled_exception_is_generic(runtime, monkeypatch):
    from chatkeep import app as app_module

    async def _boom(*args, **kwargs):
        raise RuntimeError("secret internals")

    monkeypatch.setattr(runtime.auth, "login", _boom)
    client = TestClient(app_module.app, raise_server_exceptions=False)
    response = _login(client)
    assert response.status_code == 500
    assert response.json()["message"] == "Internal server error"
    assert "secret internals" not in response.text


def test_unknown_route_uses_envelope(client):
    response = client.get("/nope")
    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Not Found", "code": "not_found"}


@pytest.mark.parametrize("method", ["put", "delete"])
def test_wrong_method_uses_envelope(client, method):
    response = getattr(client, method)("/auth/login")
    assert response.status_code == 405
    assert response.json()["success"] is False
