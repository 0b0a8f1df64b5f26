"""End-to-end HTTP tests for the /auth endpoints."""

import asyncio
import base64


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def test_signup_returns_token_and_decrypted_email(client, signup, runtime, tmp_path):
    body = signup(email="A@B.com")
    assert body["success"] is True
    assert body["message"] == "User registered successfully"
    assert body["token"]
    user = body["user"]
    assert user["email"] == "a@b.com"
    assert user["firstName"] == "Ann"
    assert user["isActive"] is True
    assert "passwordHash" not in user
    assert "emailDigest" not in user

    state = (tmp_path / "shared" / "state" / "users.json").read_text()
    assert "a@b.com" not in state.lower()
    assert "longenough1" not in state


def test_signup_validation_errors(client):
    response = client.post("/auth/signup", json={"email": "a@b.com"})
    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "message": "All fields are required",
        "code": "validation_error",
    }

    mismatch = {
        "firstName": "Ann",
        "lastName": "Lee",
        "email": "a@b.com",
        "password": "longenough1",
        "confirmPassword": "different1",
    }
    response = client.post("/auth/signup", json=mismatch)
    assert response.status_code == 400
    assert response.json()["message"] == "Passwords do not match"

    bad_email = {**mismatch, "email": "nope", "confirmPassword": "longenough1"}
    response = client.post("/auth/signup", json=bad_email)
    assert response.status_code == 400
    assert response.json()["message"] == "Please enter a valid email address"

    short = {**mismatch, "password": "short", "confirmPassword": "short"}
    response = client.post("/auth/signup", json=short)
    assert response.status_code == 400
    assert "Password must be at least 8 characters long" in response.json()["errors"]


def test_signup_duplicate_email(client, signup):
    signup(email="ann@example.com")
    response = client.post(
        "/auth/signup",
        json={
            "firstName": "Other",
            "lastName": "Person",
            "email": "ANN@example.com",
            "password": "longenough2",
            "confirmPassword": "longenough2",
        },
    )
    assert response.status_code == 400
    assert response.json()["message"] == "User with this email already exists"


def test_malformed_json_is_400(client):
    response = client.post(
        "/auth/login",
        content="{not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_login_success(client, signup):
    signup()
    response = client.post(
        "/auth/login", json={"email": " ANN@example.com", "password": "longenough1"}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Login successful"
    assert body["user"]["lastLogin"] is not None
    assert "authToken" in response.headers.get("set-cookie", "")


def test_login_failures_do_not_reveal_accounts(client, signup):
    signup()
    wrong_password = client.post(
        "/auth/login", json={"email": "ann@example.com", "password": "wrong-password"}
    )
    unknown = client.post(
        "/auth/login", json={"email": "ghost@example.com", "password": "wrong-password"}
    )
    assert wrong_password.status_code == unknown.status_code == 401
    assert wrong_password.json() == unknown.json()
    assert unknown.json()["message"] == "Invalid email or password"


def test_login_missing_fields(client):
    response = client.post("/auth/login", json={"email": "ann@example.com"})
    assert response.status_code == 400
    assert response.json()["message"] == "Email and password are required"


def test_login_deactivated_account(client, signup, runtime):
    body = signup()

    async def _deactivate():
        user = await runtime.credentials.find_by_id(body["user"]["id"])
        await runtime.credentials.set_active(user, False)

    asyncio.run(_deactivate())
    response = client.post(
        "/auth/login", json={"email": "ann@example.com", "password": "longenough1"}
    )
    assert response.status_code == 401
    assert response.json()["message"] == "Account is deactivated."

    validate = client.get("/auth/validate", headers=auth_header(body["token"]))
    assert validate.status_code == 401
    assert validate.json()["message"] == "Account is deactivated."


def test_missing_token(client):
    response = client.get("/auth/validate")
    assert response.status_code == 401
    assert response.json()["message"] == "Access denied. No token provided."


def test_invalid_token(client):
    response = client.get("/auth/validate", headers=auth_header("garbage"))
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid token."


def test_validate_with_either_header(client, signup):
    token = signup()["token"]
    for headers in (auth_header(token), {"x-auth-token": token}):
        response = client.get("/auth/validate", headers=headers)
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Token is valid",
            "user": {"firstName": "Ann", "lastName": "Lee", "email": "ann@example.com"},
        }


def test_logout_revokes_only_that_token(client, signup):
    first = signup()["token"]
    second = client.post(
        "/auth/login", json={"email": "ann@example.com", "password": "longenough1"}
    ).json()["token"]

    response = client.post("/auth/logout", headers=auth_header(first))
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Logged out successfully"}

    revoked = client.get("/auth/validate", headers=auth_header(first))
    assert revoked.status_code == 401
    assert revoked.json()["message"] == "Token is invalid or has been revoked."
    assert client.get("/auth/validate", headers=auth_header(second)).status_code == 200

    # A second logout with the same token is refused
    assert client.post("/auth/logout", headers=auth_header(first)).status_code == 401


def test_logout_all(client, signup):
    first = signup()["token"]
    second = client.post(
        "/auth/login", json={"email": "ann@example.com", "password": "longenough1"}
    ).json()["token"]

    response = client.post("/auth/logout-all", headers=auth_header(second))
    assert response.status_code == 200
    assert response.json()["message"] == "Logged out from all devices successfully"
    for token in (first, second):
        assert client.get("/auth/validate", headers=auth_header(token)).status_code == 401

    fresh = client.post(
        "/auth/login", json={"email": "ann@example.com", "password": "longenough1"}
    ).json()["token"]
    assert client.get("/auth/validate", headers=auth_header(fresh)).status_code == 200


def test_profile_read_and_update(client, signup):
    token = signup()["token"]
    profile = client.get("/auth/profile", headers=auth_header(token))
    assert profile.status_code == 200
    assert profile.json()["user"]["email"] == "ann@example.com"

    updated = client.put(
        "/auth/profile", json={"firstName": "Anna"}, headers=auth_header(token)
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body["message"] == "Profile updated successfully"
    assert body["user"]["firstName"] == "Anna"
    assert body["user"]["lastName"] == "Lee"

    rejected = client.put(
        "/auth/profile", json={"lastName": "x" * 51}, headers=auth_header(token)
    )
    assert rejected.status_code == 400
    assert rejected.json()["errors"] == ["Last name cannot exceed 50 characters"]


def test_auth_responses_are_not_cached(client):
    response = client.get("/auth/validate")
    assert response.headers["cache-control"] == "no-store"
    assert response.headers["x-request-id"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert body["storage"] == "healthy"
    assert body["environment"] == "test"


def test_nested_token_header_is_401(client):
    head = base64.urlsafe_b64encode(b"[" * 5000).decode().rstrip("=")
    response = client.get("/auth/validate", headers={"x-auth-token": f"{head}.e30.sig"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid token."
