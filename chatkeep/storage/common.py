"""Document (de)serialization shared by the memory and postgres backends.

Both backends persist a user as a single JSON document, ledgers included, so
the same encoding is used for the state file and for the JSONB column.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from chatkeep.storage.models import BlacklistedToken, User, ValidToken


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    # Documents written without an offset are treated as UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email": user.email,
        "email_digest": user.email_digest,
        "password_hash": user.password_hash,
        "is_active": user.is_active,
        "last_login": serialize_datetime(user.last_login),
        "created_at": serialize_datetime(user.created_at),
        "updated_at": serialize_datetime(user.updated_at),
        "valid_tokens": [
            {
                "token": entry.token,
                "issued_at": serialize_datetime(entry.issued_at),
                "expires_at": serialize_datetime(entry.expires_at),
            }
            for entry in user.valid_tokens
        ],
        "blacklisted_tokens": [
            {
                "token": entry.token,
                "blacklisted_at": serialize_datetime(entry.blacklisted_at),
                "expires_at": serialize_datetime(entry.expires_at),
            }
            for entry in user.blacklisted_tokens
        ],
    }


def deserialize_user(data: Dict[str, Any]) -> User:
    return User(
        id=str(data["id"]),
        first_name=data.get("first_name", ""),
        last_name=data.get("last_name", ""),
        email=data["email"],
        email_digest=data["email_digest"],
        password_hash=data["password_hash"],
        is_active=data.get("is_active", True),
        last_login=deserialize_datetime(data.get("last_login")),
        created_at=deserialize_datetime(data["created_at"]),
        updated_at=deserialize_datetime(data.get("updated_at") or data["created_at"]),
        valid_tokens=[
            ValidToken(
                token=entry["token"],
                issued_at=deserialize_datetime(entry["issued_at"]),
                expires_at=deserialize_datetime(entry["expires_at"]),
            )
            for entry in data.get("valid_tokens", [])
        ],
        blacklisted_tokens=[
            BlacklistedToken(
                token=entry["token"],
                blacklisted_at=deserialize_datetime(entry["blacklisted_at"]),
                expires_at=deserialize_datetime(entry.get("expires_at")),
            )
            for entry in data.get("blacklisted_tokens", [])
        ],
    )
