from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from fastapi import Request

from chatkeep.api.error_handling import PageRedirect
from chatkeep.service.auth import AuthOutcome
from chatkeep.service.errors import AuthRejectedError
from chatkeep.service.runtime import get_runtime
from chatkeep.service.tokens import TokenClaims
from chatkeep.storage.models import User

AUTH_COOKIE_NAME = "authToken"
TOKEN_HEADER_NAME = "x-auth-token"
LOGIN_PATH = "/login"


@dataclass
class Principal:
    user: User
    token: str
    claims: Optional[TokenClaims] = None


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def extract_api_token(request: Request) -> Optional[str]:
    """Authorization bearer first, then the ``x-auth-token`` header."""
    return extract_bearer(request.headers.get("authorization")) or (
        request.headers.get(TOKEN_HEADER_NAME) or None
    )


def extract_page_token(request: Request) -> Optional[str]:
    """API sources, then ``?token=``, then the ``authToken`` cookie."""
    return (
        extract_api_token(request)
        or request.query_params.get("token")
        or request.cookies.get(AUTH_COOKIE_NAME)
        or None
    )


def _attach(request: Request, outcome: AuthOutcome) -> Principal:
    request.state.user = outcome.user
    request.state.token = outcome.token
    request.state.claims = outcome.claims
    return Principal(user=outcome.user, token=outcome.token, claims=outcome.claims)


async def require_user(request: Request) -> Principal:
    """JSON API guard: any rejection becomes a 401 body."""
    outcome = await get_runtime().authority.authenticate(extract_api_token(request))
    if not outcome.ok:
        raise AuthRejectedError(outcome.rejection)
    return _attach(request, outcome)


def login_redirect_url(error_code: Optional[str]) -> str:
    if not error_code:
        return LOGIN_PATH
    return f"{LOGIN_PATH}?{urlencode({'error': error_code})}"


async def require_page_user(request: Request) -> Principal:
    """Page guard: any rejection bounces the browser to the login page."""
    outcome = await get_runtime().authority.authenticate(extract_page_token(request))
    if not outcome.ok:
        raise PageRedirect(login_redirect_url(outcome.rejection.redirect_code))
    return _attach(request, outcome)
