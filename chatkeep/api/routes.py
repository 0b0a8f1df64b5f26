from __future__ import annotations

import html
from typing import Optional

from fastapi import APIRouter, Depends, Response
from fastapi.responses import HTMLResponse

from chatkeep.api.deps import AUTH_COOKIE_NAME, Principal, require_page_user, require_user
from chatkeep.api.schemas import (
    AuthResponse,
    LoginRequest,
    MessageResponse,
    MinimalUser,
    ProfileResponse,
    ProfileUpdateRequest,
    PublicUser,
    SignupRequest,
    ValidateResponse,
)
from chatkeep.logging import get_logger
from chatkeep.service.runtime import get_runtime
from chatkeep.storage.models import User

logger = get_logger(__name__)

router = APIRouter()


def _public(user: User) -> PublicUser:
    return PublicUser.model_validate(get_runtime().credentials.to_public(user))


def _apply_auth_cookie(response: Response, token: str) -> None:
    runtime = get_runtime()
    response.set_cookie(
        AUTH_COOKIE_NAME,
        token,
        max_age=int(runtime.tokens.lifetime.total_seconds()),
        httponly=True,
        secure=not runtime.settings.is_development,
        samesite="lax",
    )


@router.post("/auth/signup", response_model=AuthResponse, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, response: Response):
    """Register a user and return their first session token.

    Raises:
        400: Missing fields, malformed email, mismatched passwords, or an
            address that is already registered
    """
    runtime = get_runtime()
    user, token = await runtime.auth.signup(
        body.first_name,
        body.last_name,
        body.email,
        body.password,
        body.confirm_password,
    )
    _apply_auth_cookie(response, token)
    return AuthResponse(
        message="User registered successfully", user=_public(user), token=token
    )


@router.post("/auth/login", response_model=AuthResponse, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Exchange email and password for a session token.

    Raises:
        400: Missing fields or malformed email
        401: Unknown account or wrong password (same message), deactivated account
    """
    runtime = get_runtime()
    user, token = await runtime.auth.login(body.email, body.password)
    _apply_auth_cookie(response, token)
    return AuthResponse(message="Login successful", user=_public(user), token=token)


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(response: Response, principal: Principal = Depends(require_user)):
    """Revoke the token that authenticated this request."""
    await get_runtime().auth.logout(principal.user, principal.token, principal.claims)
    response.delete_cookie(AUTH_COOKIE_NAME)
    return MessageResponse(message="Logged out successfully")


@router.post("/auth/logout-all", response_model=MessageResponse, tags=["auth"])
async def logout_all(response: Response, principal: Principal = Depends(require_user)):
    """Revoke every token currently issued to the caller."""
    await get_runtime().auth.logout_all(principal.user)
    response.delete_cookie(AUTH_COOKIE_NAME)
    return MessageResponse(message="Logged out from all devices successfully")


@router.get("/auth/validate", response_model=ValidateResponse, tags=["auth"])
async def validate(principal: Principal = Depends(require_user)):
    public = get_runtime().credentials.to_public(principal.user)
    return ValidateResponse(
        user=MinimalUser(
            first_name=public["firstName"],
            last_name=public["lastName"],
            email=public["email"] or "[Email Protected]",
        )
    )


@router.get("/auth/profile", response_model=ProfileResponse, tags=["auth"])
async def get_profile(principal: Principal = Depends(require_user)):
    return ProfileResponse(user=_public(principal.user))


@router.put("/auth/profile", response_model=ProfileResponse, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest, principal: Principal = Depends(require_user)
):
    user = await get_runtime().credentials.update_profile(
        principal.user, first_name=body.first_name, last_name=body.last_name
    )
    return ProfileResponse(message="Profile updated successfully", user=_public(user))


_PAGE_TEMPLATE = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>{title}</title></head>
<body>
{body}
</body>
</html>
"""

_ERROR_TEXT = {
    "invalid": "Your session is invalid. Please log in again.",
    "expired": "Your session expired. Please log in again.",
    "user-not-found": "Account not found.",
    "account-deactivated": "This account is deactivated.",
    "invalid-token": "You have been logged out. Please log in again.",
}


def _page(title: str, body: str) -> HTMLResponse:
    return HTMLResponse(_PAGE_TEMPLATE.format(title=html.escape(title), body=body))


@router.get("/", response_class=HTMLResponse, include_in_schema=False)
@router.get("/login", response_class=HTMLResponse, include_in_schema=False)
async def login_page(error: Optional[str] = None):
    notice = _ERROR_TEXT.get(error or "")
    banner = f'<p class="error">{html.escape(notice)}</p>' if notice else ""
    return _page(
        "Login",
        f'{banner}<form id="login-form" data-endpoint="/auth/login"></form>',
    )


@router.get("/signup", response_class=HTMLResponse, include_in_schema=False)
async def signup_page():
    return _page("Signup", '<form id="signup-form" data-endpoint="/auth/signup"></form>')


@router.get("/chat", response_class=HTMLResponse, include_in_schema=False)
async def chat_page(principal: Principal = Depends(require_page_user)):
    name = html.escape(principal.user.first_name)
    assistant = html.escape(get_runtime().settings.assistant_name)
    return _page(
        f"Chat with {assistant}",
        f'<main id="chat" data-socket="/ws/chat"><h1>Hi {name}</h1></main>',
    )
