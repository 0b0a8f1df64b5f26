from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from chatkeep.logging import get_logger, token_fingerprint
from chatkeep.service.email_crypto import EmailCrypto
from chatkeep.service.errors import (
    DecryptionError,
    DuplicateIdentity,
    StorageError,
    ValidationError,
)
from chatkeep.storage.errors import ConstraintViolation
from chatkeep.storage.models import BlacklistedToken, User, ValidToken

logger = get_logger(__name__)

MAX_NAME_LENGTH = 50
MIN_PASSWORD_LENGTH = 8
ENCRYPTED_EMAIL_PLACEHOLDER = "[Email Encrypted]"


class DocumentStore(Protocol):
    def insert_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_digest(self, email_digest: str) -> Optional[User]: ...

    def save_user(self, user: User) -> User: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


def _validate_name(value: str, label: str, errors: List[str]) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        errors.append(f"{label} is required")
    elif len(cleaned) > MAX_NAME_LENGTH:
        errors.append(f"{label} cannot exceed {MAX_NAME_LENGTH} characters")
    return cleaned


class CredentialStore:
    """Durable user records, password verifiers and per-user token ledgers.

    Backend calls are synchronous, so each one runs in a worker thread under a
    deadline. A timeout or backend failure surfaces as ``StorageError``; it is
    never reported as "not found" or "token invalid".

    Ledger operations mutate the ``User`` passed in and persist the whole
    document. Two concurrent writers for the same user race and the last save
    wins; there is no cross-request locking.
    """

    def __init__(
        self,
        store: DocumentStore,
        crypto: EmailCrypto,
        *,
        timeout_seconds: float = 5.0,
        blacklist_retention: timedelta = timedelta(hours=24),
        hash_time_cost: int = 3,
        hash_memory_cost: int = 65536,
    ) -> None:
        self.store = store
        self.crypto = crypto
        self.timeout_seconds = timeout_seconds
        self.blacklist_retention = blacklist_retention
        self._pwd_hasher = PasswordHasher(
            time_cost=hash_time_cost, memory_cost=hash_memory_cost, type=Type.ID
        )
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        timeout: Optional[float] = None,
    ) -> Any:
        deadline = timeout if timeout is not None else self.timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), deadline)
        except asyncio.TimeoutError as exc:
            logger.error("storage_timeout", operation=operation, timeout=deadline)
            raise StorageError(
                detail={"operation": operation, "reason": "timeout"}
            ) from exc
        except ConstraintViolation:
            raise
        except Exception as exc:
            logger.error(
                "storage_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StorageError(
                detail={"operation": operation, "reason": str(exc)}
            ) from exc

    async def _save(self, user: User, operation: str, timeout: Optional[float]) -> User:
        user.updated_at = self._now()
        await self._call(operation, self.store.save_user, user, timeout=timeout)
        return user

    async def create(
        self,
        first_name: str,
        last_name: str,
        email: str,
        password: str,
        *,
        timeout: Optional[float] = None,
    ) -> User:
        errors: List[str] = []
        first = _validate_name(first_name, "First name", errors)
        last = _validate_name(last_name, "Last name", errors)
        if not email or not email.strip():
            errors.append("Email is required")
        if not password:
            errors.append("Password is required")
        elif len(password) < MIN_PASSWORD_LENGTH:
            errors.append(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )
        if errors:
            raise ValidationError("Validation error", detail={"errors": errors})

        digest = self.crypto.create_searchable_digest(email)
        existing = await self._call(
            "get_user_by_digest", self.store.get_user_by_digest, digest, timeout=timeout
        )
        if existing is not None:
            raise DuplicateIdentity()

        ciphertext = self.crypto.encrypt(email)
        password_hash = await asyncio.to_thread(self._pwd_hasher.hash, password)
        user = User.new(
            first_name=first,
            last_name=last,
            email=ciphertext,
            email_digest=digest,
            password_hash=password_hash,
        )
        try:
            await self._call("insert_user", self.store.insert_user, user, timeout=timeout)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent signup for the same address
            raise DuplicateIdentity() from exc
        logger.info("user_created", user_id=user.id)
        return user

    async def find_by_email(
        self, email: str, *, timeout: Optional[float] = None
    ) -> Optional[User]:
        try:
            digest = self.crypto.create_searchable_digest(email)
        except ValidationError:
            return None
        return await self._call(
            "get_user_by_digest", self.store.get_user_by_digest, digest, timeout=timeout
        )

    async def find_by_id(
        self, user_id: str, *, timeout: Optional[float] = None
    ) -> Optional[User]:
        return await self._call("get_user", self.store.get_user, user_id, timeout=timeout)

    async def verify_password(self, user: User, candidate: str) -> bool:
        if not candidate:
            return False
        try:
            return await asyncio.to_thread(
                self._pwd_hasher.verify, user.password_hash, candidate
            )
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def dummy_verify(self, candidate: str) -> None:
        """Spend the same hashing work as a real check for an unknown account."""
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(
                self._pwd_hasher.hash, secrets.token_urlsafe(16)
            )
        try:
            await asyncio.to_thread(
                self._pwd_hasher.verify, self._dummy_hash, candidate or ""
            )
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return None

    def _purge_expired(self, user: User, now: datetime) -> bool:
        live = [entry for entry in user.valid_tokens if entry.is_live(now)]
        removed = len(live) != len(user.valid_tokens)
        user.valid_tokens = live
        return removed

    def _prune_blacklist(self, user: User, now: datetime) -> bool:
        # An entry is forgotten only once the revoked token itself has long
        # expired; signature verification rejects it from then on anyway.
        cutoff = now - self.blacklist_retention
        kept = [
            entry
            for entry in user.blacklisted_tokens
            if entry.expires_at is None or entry.expires_at > cutoff
        ]
        removed = len(kept) != len(user.blacklisted_tokens)
        user.blacklisted_tokens = kept
        return removed

    def _append_blacklist(
        self, user: User, token: str, now: datetime, expires_at: Optional[datetime]
    ) -> None:
        if user.is_blacklisted(token):
            return
        user.blacklisted_tokens.append(
            BlacklistedToken(token=token, blacklisted_at=now, expires_at=expires_at)
        )

    async def add_valid_token(
        self,
        user: User,
        token: str,
        expires_at: datetime,
        *,
        timeout: Optional[float] = None,
    ) -> User:
        now = self._now()
        self._purge_expired(user, now)
        self._prune_blacklist(user, now)
        user.valid_tokens.append(
            ValidToken(token=token, issued_at=now, expires_at=expires_at)
        )
        return await self._save(user, "add_valid_token", timeout)

    async def blacklist_token(
        self,
        user: User,
        token: str,
        expires_at: Optional[datetime] = None,
        *,
        timeout: Optional[float] = None,
    ) -> User:
        """Revoke ``token``: drop it from the valid ledger and list it (once)."""
        now = self._now()
        if expires_at is None:
            expires_at = next(
                (e.expires_at for e in user.valid_tokens if e.token == token), None
            )
        user.valid_tokens = [e for e in user.valid_tokens if e.token != token]
        self._prune_blacklist(user, now)
        self._append_blacklist(user, token, now, expires_at)
        logger.info(
            "token_blacklisted", user_id=user.id, fingerprint=token_fingerprint(token)
        )
        return await self._save(user, "blacklist_token", timeout)

    async def is_token_valid(
        self, user: User, token: str, *, timeout: Optional[float] = None
    ) -> bool:
        if not token or user.is_blacklisted(token):
            return False
        now = self._now()
        if self._purge_expired(user, now):
            await self._save(user, "purge_expired_tokens", timeout)
        return any(entry.token == token and entry.is_live(now) for entry in user.valid_tokens)

    async def logout_all_devices(
        self, user: User, *, timeout: Optional[float] = None
    ) -> User:
        now = self._now()
        self._prune_blacklist(user, now)
        revoked = len(user.valid_tokens)
        for entry in user.valid_tokens:
            self._append_blacklist(user, entry.token, now, entry.expires_at)
        user.valid_tokens = []
        logger.info("logout_all_devices", user_id=user.id, revoked=revoked)
        return await self._save(user, "logout_all_devices", timeout)

    async def record_login(self, user: User, *, timeout: Optional[float] = None) -> User:
        user.last_login = self._now()
        return await self._save(user, "record_login", timeout)

    async def update_profile(
        self,
        user: User,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> User:
        errors: List[str] = []
        if first_name is not None:
            user.first_name = _validate_name(first_name, "First name", errors)
        if last_name is not None:
            user.last_name = _validate_name(last_name, "Last name", errors)
        if errors:
            raise ValidationError("Validation error", detail={"errors": errors})
        return await self._save(user, "update_profile", timeout)

    async def set_active(
        self, user: User, active: bool, *, timeout: Optional[float] = None
    ) -> User:
        user.is_active = active
        logger.info("user_active_changed", user_id=user.id, is_active=active)
        return await self._save(user, "set_active", timeout)

    def decrypted_email(self, user: User) -> str:
        try:
            return self.crypto.decrypt(user.email)
        except DecryptionError:
            logger.warning("user_email_decrypt_failed", user_id=user.id)
            return ENCRYPTED_EMAIL_PLACEHOLDER

    def to_public(self, user: User) -> Dict[str, Any]:
        """API projection: decrypted email, no password hash, digest or ledgers."""
        return {
            "id": user.id,
            "firstName": user.first_name,
            "lastName": user.last_name,
            "email": self.decrypted_email(user),
            "isActive": user.is_active,
            "lastLogin": user.last_login.isoformat() if user.last_login else None,
            "createdAt": user.created_at.isoformat(),
            "updatedAt": user.updated_at.isoformat(),
        }
