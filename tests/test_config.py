"""Settings loading and the no-default-secret rule."""

import pytest
from pydantic import ValidationError

from chatkeep.config import Environment, Settings, get_settings, reset_settings_cache

JWT = "j" * 40
KEY = "k" * 40


def test_missing_jwt_secret_fails_hard():
    with pytest.raises(ValidationError) as exc_info:
        Settings(email_encryption_key=KEY)
    assert "JWT_SECRET" in str(exc_info.value)


def test_missing_email_key_fails_hard():
    with pytest.raises(ValidationError) as exc_info:
        Settings(jwt_secret=JWT)
    assert "EMAIL_ENCRYPTION_KEY" in str(exc_info.value)


def test_short_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="short", email_encryption_key=KEY)


def test_defaults():
    settings = Settings(jwt_secret=JWT, email_encryption_key=KEY)
    assert settings.jwt_expires_in == "24h"
    assert settings.environment == Environment.DEVELOPMENT
    assert settings.is_development
    assert settings.blacklist_retention_hours == 24
    assert settings.storage_timeout_seconds == 5.0


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("JWT_EXPIRES_IN", "7d")
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.example, https://b.example,")
    reset_settings_cache()
    settings = get_settings()
    assert settings.jwt_expires_in == "7d"
    assert settings.environment == Environment.PRODUCTION
    assert not settings.is_development
    assert settings.origins == ["https://a.example", "https://b.example"]
    reset_settings_cache()


def test_from_env_without_secret_fails(monkeypatch):
    # Restore the secret before the autouse fixture rebuilds the runtime
    with monkeypatch.context() as m:
        m.delenv("JWT_SECRET", raising=False)
        with pytest.raises(ValidationError):
            Settings.from_env()
    reset_settings_cache()
    assert get_settings().jwt_secret


def test_get_settings_is_cached():
    reset_settings_cache()
    assert get_settings() is get_settings()
