from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ValidToken:
    """An issued session token that has not been revoked."""

    token: str
    issued_at: datetime
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class BlacklistedToken:
    """A token revoked before its natural expiry.

    ``expires_at`` is the revoked token's own expiry when it is known; it only
    drives retention pruning and never makes a listed token valid again.
    """

    token: str
    blacklisted_at: datetime
    expires_at: Optional[datetime] = None


@dataclass
class User:
    id: str
    first_name: str
    last_name: str
    email: str  # Fernet ciphertext, never the plain address
    email_digest: str
    password_hash: str
    is_active: bool = True
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    valid_tokens: List[ValidToken] = field(default_factory=list)
    blacklisted_tokens: List[BlacklistedToken] = field(default_factory=list)

    @classmethod
    def new(
        cls,
        *,
        first_name: str,
        last_name: str,
        email: str,
        email_digest: str,
        password_hash: str,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            first_name=first_name,
            last_name=last_name,
            email=email,
            email_digest=email_digest,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )

    def is_blacklisted(self, token: str) -> bool:
        return any(entry.token == token for entry in self.blacklisted_tokens)
