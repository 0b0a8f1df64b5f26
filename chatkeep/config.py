from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatkeep.logging import get_logger

logger = get_logger(__name__)

# Shortest accepted signing / encryption secret
MIN_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment mode; controls how much error detail reaches clients."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration read from the environment and an optional .env file."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )
    # Secrets: required, no fallback value
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    email_encryption_key: str = env_field(
        None, "EMAIL_ENCRYPTION_KEY", validate_default=True
    )
    jwt_expires_in: str = env_field(
        "24h",
        "JWT_EXPIRES_IN",
        description="Token lifetime in compact form: 30m, 24h, 7d",
    )
    jwt_issuer: str = env_field("chatkeep", "JWT_ISSUER")
    jwt_audience: str = env_field("chatkeep-clients", "JWT_AUDIENCE")
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(
        65536,
        "PASSWORD_HASH_MEMORY_COST",
        description="argon2id memory cost in KiB",
    )
    # Storage
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/chatkeep", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/chatkeep", "SHARED_FS_ROOT")
    storage_timeout_seconds: float = env_field(5.0, "STORAGE_TIMEOUT_SECONDS")
    blacklist_retention_hours: int = env_field(
        24,
        "BLACKLIST_RETENTION_HOURS",
        description="Hours a revoked token is remembered after its natural expiry",
    )
    # HTTP surface
    allowed_origins: str = env_field(
        "http://localhost:3000,http://localhost:8000", "ALLOWED_ORIGINS"
    )
    # Assistant
    llm_api_key: str | None = env_field(None, "LLM_API_KEY")
    llm_base_url: str = env_field("https://api.openai.com/v1", "LLM_BASE_URL")
    llm_model: str = env_field("gpt-4o-mini", "LLM_MODEL")
    llm_timeout_seconds: float = env_field(30.0, "LLM_TIMEOUT_SECONDS")
    llm_max_tokens: int = env_field(500, "LLM_MAX_TOKENS")
    assistant_name: str = env_field("Keeper", "ASSISTANT_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("jwt_secret", "email_encryption_key", mode="before")
    @classmethod
    def _require_secret(cls, value: str | None, info) -> str:
        env_name = info.field_name.upper()
        if not value:
            logger.error("secret_missing", setting=env_name)
            raise ValueError(f"{env_name} must be set; there is no default")
        if len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"{env_name} must be at least {MIN_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("password_hash_time_cost", "password_hash_memory_cost")
    @classmethod
    def _positive_cost(cls, value: int) -> int:
        if value < 1:
            raise ValueError("password hash cost must be positive")
        return value

    @field_validator("storage_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("STORAGE_TIMEOUT_SECONDS must be positive")
        return value

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def origins(self) -> List[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
