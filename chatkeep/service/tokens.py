from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from chatkeep.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TOKEN_LIFETIME = timedelta(hours=24)
ACCESS_TOKEN_TYPE = "access"
# Longer tokens are rejected before any segment is decoded
MAX_TOKEN_LENGTH = 4096

_DURATION_RE = re.compile(r"(\d+)([smhd])")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


class TokenError(Exception):
    """Base for token verification failures."""


class TokenExpired(TokenError):
    pass


class TokenMalformed(TokenError):
    pass


def parse_duration(text: Optional[str]) -> timedelta:
    """Parse ``30m`` / ``24h`` / ``7d`` style lifetimes.

    Anything unrecognised (including zero) yields the 24 hour default.
    """
    match = _DURATION_RE.fullmatch((text or "").strip().lower())
    if not match:
        return DEFAULT_TOKEN_LIFETIME
    amount = int(match.group(1))
    if amount <= 0:
        return DEFAULT_TOKEN_LIFETIME
    return timedelta(**{_DURATION_UNITS[match.group(2)]: amount})


@dataclass
class TokenClaims:
    user_id: str
    issued_at: datetime
    expires_at: datetime
    jti: Optional[str] = None


class TokenIssuer:
    """Creates and verifies HS256 access tokens.

    Verification is purely cryptographic and time based; it never touches the
    credential store, so a verified token may still have been revoked.
    """

    def __init__(
        self,
        secret: str | None,
        *,
        expires_in: str = "24h",
        issuer: str = "chatkeep",
        audience: str = "chatkeep-clients",
    ) -> None:
        if not secret:
            raise ValueError("JWT secret is not configured")
        self._secret = secret.encode()
        self.lifetime = parse_duration(expires_in)
        self.issuer = issuer
        self.audience = audience

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def expiry_timestamp(self, now: Optional[datetime] = None) -> datetime:
        """Expiry a token issued at ``now`` carries, truncated to whole seconds."""
        issued = now or self._now()
        return datetime.fromtimestamp(
            int((issued + self.lifetime).timestamp()), tz=timezone.utc
        )

    def issue(self, user_id: str, *, now: Optional[datetime] = None) -> str:
        token, _ = self.issue_with_expiry(user_id, now=now)
        return token

    def issue_with_expiry(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Tuple[str, datetime]:
        """Issue a token and return the exact expiry embedded in it."""
        issued = now or self._now()
        expires_at = self.expiry_timestamp(issued)
        payload = {
            "userId": user_id,
            "type": ACCESS_TOKEN_TYPE,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(issued.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload), expires_at

    def verify(self, token: str, *, now: Optional[datetime] = None) -> TokenClaims:
        payload = self._decode_jwt(token)
        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise TokenMalformed("unexpected token type")
        user_id = payload.get("userId")
        if not isinstance(user_id, str) or not user_id:
            raise TokenMalformed("token has no subject")
        try:
            exp_ts = int(payload["exp"])
            iat_ts = int(payload.get("iat", exp_ts))
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformed("token has no usable expiry") from exc
        current = now or self._now()
        if exp_ts <= current.timestamp():
            raise TokenExpired("token expired")
        return TokenClaims(
            user_id=user_id,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            jti=payload.get("jti"),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenMalformed("token is not a string")
        if len(token) > MAX_TOKEN_LENGTH:
            raise TokenMalformed("token is too long")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise TokenMalformed("token must have three segments") from exc

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError, RecursionError) as exc:
            raise TokenMalformed("token header is not valid JSON") from exc
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenMalformed("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenMalformed("token signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformed("token payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise TokenMalformed("token payload is not an object")
        if payload.get("iss") != self.issuer:
            raise TokenMalformed("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenMalformed("token audience mismatch")
        return payload
