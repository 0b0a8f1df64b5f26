from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from chatkeep.logging import get_logger, token_fingerprint
from chatkeep.service.credentials import CredentialStore
from chatkeep.service.email_crypto import is_valid_email, normalize_email
from chatkeep.service.errors import (
    AccountDeactivatedError,
    InvalidCredentials,
    InvalidEmailFormat,
    ValidationError,
)
from chatkeep.service.tokens import TokenClaims, TokenExpired, TokenIssuer, TokenMalformed
from chatkeep.storage.models import User

logger = get_logger(__name__)


class AuthRejection(str, Enum):
    """Why an authentication attempt was refused.

    ``message`` is safe to return to the caller; ``redirect_code`` is the
    ``?error=`` value used when a browser page bounces to the login screen.
    """

    MISSING_TOKEN = "missing_token"
    INVALID = "invalid"
    EXPIRED = "expired"
    USER_NOT_FOUND = "user_not_found"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    TOKEN_REVOKED = "token_revoked"

    @property
    def message(self) -> str:
        return _REJECTION_MESSAGES[self]

    @property
    def redirect_code(self) -> Optional[str]:
        return _REJECTION_REDIRECT_CODES[self]


_REJECTION_MESSAGES = {
    AuthRejection.MISSING_TOKEN: "Access denied. No token provided.",
    AuthRejection.INVALID: "Invalid token.",
    AuthRejection.EXPIRED: "Token expired. Please login again.",
    AuthRejection.USER_NOT_FOUND: "User not found.",
    AuthRejection.ACCOUNT_DEACTIVATED: "Account is deactivated.",
    AuthRejection.TOKEN_REVOKED: "Token is invalid or has been revoked.",
}

_REJECTION_REDIRECT_CODES = {
    AuthRejection.MISSING_TOKEN: None,
    AuthRejection.INVALID: "invalid",
    AuthRejection.EXPIRED: "expired",
    AuthRejection.USER_NOT_FOUND: "user-not-found",
    AuthRejection.ACCOUNT_DEACTIVATED: "account-deactivated",
    AuthRejection.TOKEN_REVOKED: "invalid-token",
}


@dataclass
class AuthOutcome:
    """Result of one authentication attempt: either a principal or a rejection."""

    rejection: Optional[AuthRejection] = None
    user: Optional[User] = None
    token: Optional[str] = None
    claims: Optional[TokenClaims] = None

    @property
    def ok(self) -> bool:
        return self.rejection is None

    @classmethod
    def rejected(cls, reason: AuthRejection, token: Optional[str] = None) -> "AuthOutcome":
        return cls(rejection=reason, token=token)


class SessionAuthority:
    """Decides whether a presented token authenticates a request or connection.

    The signature/expiry check runs first and needs no storage round trip.
    Only tokens that pass it are looked up in the owner's ledgers, which is the
    one place a logout can invalidate a token before it expires. Rejections are
    returned as values; ``StorageError`` is the only thing that propagates.
    """

    def __init__(self, issuer: TokenIssuer, credentials: CredentialStore) -> None:
        self.issuer = issuer
        self.credentials = credentials

    async def authenticate(self, token: Optional[str]) -> AuthOutcome:
        if not token:
            return AuthOutcome.rejected(AuthRejection.MISSING_TOKEN)

        try:
            claims = self.issuer.verify(token)
        except TokenExpired:
            return self._reject(AuthRejection.EXPIRED, token)
        except TokenMalformed as exc:
            logger.info("auth_token_malformed", reason=str(exc))
            return self._reject(AuthRejection.INVALID, token)

        user = await self.credentials.find_by_id(claims.user_id)
        if user is None:
            return self._reject(AuthRejection.USER_NOT_FOUND, token, user_id=claims.user_id)
        if not user.is_active:
            return self._reject(AuthRejection.ACCOUNT_DEACTIVATED, token, user_id=user.id)
        if not await self.credentials.is_token_valid(user, token):
            return self._reject(AuthRejection.TOKEN_REVOKED, token, user_id=user.id)

        return AuthOutcome(user=user, token=token, claims=claims)

    def _reject(
        self, reason: AuthRejection, token: str, *, user_id: Optional[str] = None
    ) -> AuthOutcome:
        logger.info(
            "auth_rejected",
            reason=reason.value,
            user_id=user_id,
            fingerprint=token_fingerprint(token),
        )
        return AuthOutcome.rejected(reason, token)


class AuthService:
    """Signup, login and logout on top of the credential store and issuer."""

    def __init__(
        self,
        credentials: CredentialStore,
        issuer: TokenIssuer,
        authority: SessionAuthority,
    ) -> None:
        self.credentials = credentials
        self.issuer = issuer
        self.authority = authority

    async def _issue_for(self, user: User) -> str:
        token, expires_at = self.issuer.issue_with_expiry(user.id)
        await self.credentials.add_valid_token(user, token, expires_at)
        return token

    async def signup(
        self,
        first_name: str,
        last_name: str,
        email: str,
        password: str,
        confirm_password: str,
    ) -> Tuple[User, str]:
        if not all([first_name, last_name, email, password, confirm_password]):
            raise ValidationError("All fields are required")
        if not is_valid_email(normalize_email(email)):
            raise InvalidEmailFormat()
        if password != confirm_password:
            raise ValidationError("Passwords do not match")
        user = await self.credentials.create(first_name, last_name, email, password)
        token = await self._issue_for(user)
        logger.info("signup_complete", user_id=user.id)
        return user, token

    async def login(self, email: str, password: str) -> Tuple[User, str]:
        if not email or not password:
            raise ValidationError("Email and password are required")
        if not is_valid_email(normalize_email(email)):
            raise InvalidEmailFormat()
        user = await self.credentials.find_by_email(email)
        if user is None:
            await self.credentials.dummy_verify(password)
            logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentials()
        if not await self.credentials.verify_password(user, password):
            logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentials()
        if not user.is_active:
            logger.info("login_failed", reason="deactivated", user_id=user.id)
            raise AccountDeactivatedError()
        await self.credentials.record_login(user)
        token = await self._issue_for(user)
        logger.info("login_complete", user_id=user.id)
        return user, token

    async def logout(self, user: User, token: str, claims: Optional[TokenClaims] = None) -> User:
        expires_at = claims.expires_at if claims else None
        return await self.credentials.blacklist_token(user, token, expires_at)

    async def logout_all(self, user: User) -> User:
        return await self.credentials.logout_all_devices(user)
