"""HS256 access token issuing and verification."""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from chatkeep.service.tokens import (
    DEFAULT_TOKEN_LIFETIME,
    MAX_TOKEN_LENGTH,
    TokenExpired,
    TokenIssuer,
    TokenMalformed,
    parse_duration,
)

SECRET = "unit-test-jwt-secret-0123456789abcdef"
NOW = datetime(2025, 3, 1, 12, 0, 0, 500000, tzinfo=timezone.utc)


@pytest.fixture
def issuer():
    return TokenIssuer(SECRET, expires_in="24h")


@pytest.mark.parametrize(
    "text,expected",
    [
        ("30s", timedelta(seconds=30)),
        ("30m", timedelta(minutes=30)),
        ("24h", timedelta(hours=24)),
        ("7d", timedelta(days=7)),
        (" 2H ", timedelta(hours=2)),
        ("", DEFAULT_TOKEN_LIFETIME),
        (None, DEFAULT_TOKEN_LIFETIME),
        ("0h", DEFAULT_TOKEN_LIFETIME),
        ("soon", DEFAULT_TOKEN_LIFETIME),
        ("10w", DEFAULT_TOKEN_LIFETIME),
        ("-5m", DEFAULT_TOKEN_LIFETIME),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


def test_issue_and_verify(issuer):
    token = issuer.issue("user-1", now=NOW)
    claims = issuer.verify(token, now=NOW + timedelta(hours=1))
    assert claims.user_id == "user-1"
    assert claims.issued_at == datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert claims.jti


def test_embedded_expiry_matches_expiry_timestamp(issuer):
    token, expires_at = issuer.issue_with_expiry("user-1", now=NOW)
    assert expires_at == issuer.expiry_timestamp(NOW)
    assert expires_at == datetime(2025, 3, 2, 12, 0, 0, tzinfo=timezone.utc)
    assert issuer.verify(token, now=NOW).expires_at == expires_at


def test_payload_fields(issuer):
    token = issuer.issue("user-1", now=NOW)
    payload = json.loads(issuer._decode_segment(token.split(".")[1]))
    assert payload["userId"] == "user-1"
    assert payload["type"] == "access"
    assert payload["iss"] == "chatkeep"
    assert payload["aud"] == "chatkeep-clients"
    assert payload["exp"] - payload["iat"] == 24 * 3600


def test_tokens_issued_in_same_second_differ(issuer):
    assert issuer.issue("user-1", now=NOW) != issuer.issue("user-1", now=NOW)


def test_expired_token_rejected(issuer):
    token = issuer.issue("user-1", now=NOW)
    with pytest.raises(TokenExpired):
        issuer.verify(token, now=NOW + timedelta(hours=24))


def test_short_lifetime_expires():
    short = TokenIssuer(SECRET, expires_in="1s")
    token = short.issue("user-1", now=NOW - timedelta(seconds=5))
    with pytest.raises(TokenExpired):
        short.verify(token, now=NOW)


def test_tampered_signature_rejected(issuer):
    token = issuer.issue("user-1", now=NOW)
    head, payload, sig = token.split(".")
    forged = f"{head}.{payload}.{'A' if sig[0] != 'A' else 'B'}{sig[1:]}"
    with pytest.raises(TokenMalformed):
        issuer.verify(forged, now=NOW)


def test_tampered_payload_rejected(issuer):
    token = issuer.issue("user-1", now=NOW)
    head, _, sig = token.split(".")
    claims = json.loads(issuer._decode_segment(token.split(".")[1]))
    claims["userId"] = "someone-else"
    body = issuer._encode_segment(json.dumps(claims).encode())
    with pytest.raises(TokenMalformed):
        issuer.verify(f"{head}.{body}.{sig}", now=NOW)


def test_alg_none_rejected(issuer):
    token = issuer.issue("user-1", now=NOW)
    _, body, _ = token.split(".")
    head = issuer._encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
    with pytest.raises(TokenMalformed):
        issuer.verify(f"{head}.{body}.", now=NOW)


def test_other_secret_rejected(issuer):
    other = TokenIssuer("another-jwt-secret-0123456789abcdef")
    with pytest.raises(TokenMalformed):
        issuer.verify(other.issue("user-1", now=NOW), now=NOW)


def test_wrong_audience_rejected(issuer):
    other = TokenIssuer(SECRET, audience="someone-else")
    with pytest.raises(TokenMalformed):
        issuer.verify(other.issue("user-1", now=NOW), now=NOW)


def test_wrong_issuer_rejected(issuer):
    other = TokenIssuer(SECRET, issuer="elsewhere")
    with pytest.raises(TokenMalformed):
        issuer.verify(other.issue("user-1", now=NOW), now=NOW)


@pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"])
def test_garbage_rejected(issuer, garbage):
    with pytest.raises(TokenMalformed):
        issuer.verify(garbage, now=NOW)


def test_missing_secret_refused():
    with pytest.raises(ValueError):
        TokenIssuer("")


def _nested_header_token(depth):
    head = base64.urlsafe_b64encode(b"[" * depth).decode().rstrip("=")
    return f"{head}.e30.sig"


@pytest.mark.parametrize("depth", [2000, 5000])
def test_deeply_nested_header_rejected(issuer, depth):
    with pytest.raises(TokenMalformed):
        issuer.verify(_nested_header_token(depth), now=NOW)


def test_oversized_token_rejected(issuer):
    token = issuer.issue("user-1", now=NOW)
    with pytest.raises(TokenMalformed):
        issuer.verify(token + "A" * MAX_TOKEN_LENGTH, now=NOW)
