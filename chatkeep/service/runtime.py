from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from chatkeep.config import get_settings, reset_settings_cache
from chatkeep.logging import get_logger
from chatkeep.service.auth import AuthService, SessionAuthority
from chatkeep.service.chat import build_chat_backend
from chatkeep.service.credentials import CredentialStore
from chatkeep.service.email_crypto import EmailCrypto
from chatkeep.service.tokens import TokenIssuer
from chatkeep.storage.memory import MemoryStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            environment=self.settings.environment.value,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                from chatkeep.storage.postgres import PostgresStore

                self.store = PostgresStore(self.settings.database_url)
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=None
                if self.settings.use_memory_store
                else _mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.crypto = EmailCrypto(self.settings.email_encryption_key)
        self.credentials = CredentialStore(
            self.store,
            self.crypto,
            timeout_seconds=self.settings.storage_timeout_seconds,
            blacklist_retention=timedelta(hours=self.settings.blacklist_retention_hours),
            hash_time_cost=self.settings.password_hash_time_cost,
            hash_memory_cost=self.settings.password_hash_memory_cost,
        )
        self.tokens = TokenIssuer(
            self.settings.jwt_secret,
            expires_in=self.settings.jwt_expires_in,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )
        self.authority = SessionAuthority(self.tokens, self.credentials)
        self.auth = AuthService(self.credentials, self.tokens, self.authority)
        self.chat_backend = build_chat_backend(
            self.settings.llm_api_key,
            base_url=self.settings.llm_base_url,
            model=self.settings.llm_model,
            timeout_seconds=self.settings.llm_timeout_seconds,
            max_tokens=self.settings.llm_max_tokens,
        )
        logger.info(
            "runtime_init_complete",
            token_lifetime_seconds=int(self.tokens.lifetime.total_seconds()),
        )

    async def close(self) -> None:
        await self.chat_backend.close()
        self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild settings and the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.store.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
