from __future__ import annotations

import base64
import hashlib
import hmac
import re

from cryptography.fernet import Fernet, InvalidToken

from chatkeep.logging import get_logger
from chatkeep.service.errors import DecryptionError, EncryptionError, InvalidEmailFormat

logger = get_logger(__name__)

MAX_EMAIL_LENGTH = 254
PROTECTED_EMAIL_PLACEHOLDER = "[Protected Email]"

# word(.word|-word)*@word(.word|-word)* ; each separator must sit between word runs
_ADDRESS_RE = re.compile(r"\w+(?:[.-]\w+)*@\w+(?:[.-]\w+)*", re.ASCII)
# the domain must end in a dot followed by a 2-3 character label
_TLD_RE = re.compile(r"\.\w{2,3}", re.ASCII)


def normalize_email(value: str) -> str:
    return value.strip().lower()


def is_valid_email(value: str) -> bool:
    if not value or len(value) > MAX_EMAIL_LENGTH:
        return False
    if not _ADDRESS_RE.fullmatch(value):
        return False
    domain = value.rsplit("@", 1)[1]
    dot = domain.rfind(".")
    return dot > 0 and bool(_TLD_RE.fullmatch(domain[dot:]))


def mask_email(email: str | None) -> str:
    """Display form that keeps the first two characters of the local part."""
    if not email or not isinstance(email, str):
        return PROTECTED_EMAIL_PLACEHOLDER
    local, sep, domain = email.partition("@")
    if not sep or not local or not domain:
        return PROTECTED_EMAIL_PLACEHOLDER
    if len(local) > 2:
        local = local[:2] + "*" * (len(local) - 2)
    return f"{local}@{domain}"


class EmailCrypto:
    """Keeps email addresses confidential at rest while allowing exact lookup.

    ``encrypt``/``decrypt`` are a reversible Fernet transform keyed from the
    process secret. ``create_searchable_digest`` is a keyed one-way hash of the
    normalized address, so equality lookups never need to decrypt rows. There
    is no key rotation and no prefix search: changing the secret orphans every
    stored digest and ciphertext.
    """

    def __init__(self, secret: str | None) -> None:
        if not secret:
            raise EncryptionError("email encryption key is not configured")
        self._digest_key = secret.encode()
        try:
            self._cipher = Fernet(self._derive_cipher_key(secret))
        except (TypeError, ValueError) as exc:
            raise EncryptionError("unable to initialize email cipher") from exc

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plain_email: str) -> str:
        normalized = normalize_email(plain_email or "")
        if not normalized:
            raise EncryptionError("email is required for encryption")
        try:
            return self._cipher.encrypt(normalized.encode()).decode()
        except (TypeError, ValueError) as exc:
            logger.error("email_encrypt_failed", error_type=type(exc).__name__)
            raise EncryptionError("failed to encrypt email") from exc

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise DecryptionError("ciphertext is empty")
        try:
            plain = self._cipher.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, TypeError, ValueError) as exc:
            logger.warning("email_decrypt_failed", error_type=type(exc).__name__)
            raise DecryptionError("failed to decrypt email") from exc
        if not plain:
            raise DecryptionError("decrypted email is empty")
        return plain

    def create_searchable_digest(self, plain_email: str) -> str:
        normalized = normalize_email(plain_email or "")
        if not is_valid_email(normalized):
            raise InvalidEmailFormat()
        return hmac.new(self._digest_key, normalized.encode(), hashlib.sha256).hexdigest()

    def verify_email(self, plain_email: str, ciphertext: str) -> bool:
        try:
            return hmac.compare_digest(
                normalize_email(plain_email or "").encode(),
                self.decrypt(ciphertext).encode(),
            )
        except DecryptionError:
            return False
