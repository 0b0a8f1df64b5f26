from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on; ``message`` is always safe to show a caller,
    while ``detail`` holds internal context that only development mode exposes.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidEmailFormat(ValidationError):
    """Email address failed the syntax check (400)."""
    error_code = "invalid_email"

    def __init__(self, message: str = "Please enter a valid email address", **kwargs) -> None:
        super().__init__(message, **kwargs)


class DuplicateIdentity(ServiceError):
    """A user with this email already exists (400)."""
    status_code = 400
    error_code = "duplicate_identity"

    def __init__(self, message: str = "User with this email already exists", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Login failed. The message never reveals whether the account exists."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDeactivatedError(AuthenticationError):
    error_code = "account_deactivated"

    def __init__(self, message: str = "Account is deactivated.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthRejectedError(AuthenticationError):
    """Raised by the HTTP adapter to turn an authentication rejection into a 401."""

    def __init__(self, rejection) -> None:
        super().__init__(rejection.message, error_code=rejection.value)
        self.rejection = rejection


class EncryptionError(ServiceError):
    """Email encryption failed or no key is configured (500)."""
    status_code = 500
    error_code = "encryption_error"


class DecryptionError(ServiceError):
    """Ciphertext is malformed, from another key, or decrypts to nothing (500)."""
    status_code = 500
    error_code = "decryption_error"


class StorageError(ServiceError):
    """The document store failed or missed its deadline (500)."""
    status_code = 500
    error_code = "storage_error"

    def __init__(self, message: str = "Storage is temporarily unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidEmailFormat",
    "DuplicateIdentity",
    "AuthenticationError",
    "InvalidCredentials",
    "AccountDeactivatedError",
    "AuthRejectedError",
    "EncryptionError",
    "DecryptionError",
    "StorageError",
]
