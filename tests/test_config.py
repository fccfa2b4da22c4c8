"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from apexguard.config import (
    Environment,
    KeystoreBackend,
    Settings,
    get_settings,
    reset_settings_cache,
)

_ENV_NAMES = (
    "APP_ENV",
    "ACCESS_TOKEN_EXPIRY",
    "SESSION_TIMEOUT",
    "MAX_LOGIN_ATTEMPTS",
    "KEYSTORE_BACKEND",
    "TRUST_FORWARDED_FOR",
    "REQUIRE_SPECIAL_CHARS",
    "SECURITY_MONITORING_URL",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class TestDefaults:
    def test_security_constants(self, clean_env):
        settings = Settings.from_env()

        assert settings.environment == Environment.DEVELOPMENT
        assert settings.access_token_expiry_seconds == 900
        assert settings.refresh_token_expiry_seconds == 604800
        assert settings.session_timeout_seconds == 1800
        assert settings.max_login_attempts == 5
        assert settings.login_attempt_window_seconds == 900
        assert settings.rate_limit_window_seconds == 60
        assert settings.default_rate_limit_attempts == 5
        assert settings.min_password_length == 8
        assert settings.keystore_backend == KeystoreBackend.MEMORY
        assert settings.trust_forwarded_for is False
        assert settings.security_monitoring_url is None
        assert settings.is_development is True


class TestFromEnv:
    def test_environment_variables_override(self, clean_env):
        clean_env.setenv("APP_ENV", "Production")
        clean_env.setenv("ACCESS_TOKEN_EXPIRY", "300")
        clean_env.setenv("TRUST_FORWARDED_FOR", "true")
        clean_env.setenv("REQUIRE_SPECIAL_CHARS", "false")

        settings = Settings.from_env()

        assert settings.environment == Environment.PRODUCTION
        assert settings.is_development is False
        assert settings.access_token_expiry_seconds == 300
        assert settings.trust_forwarded_for is True
        assert settings.require_special_chars is False

    def test_dotenv_file_is_read(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("SESSION_TIMEOUT=120\nKEYSTORE_BACKEND=redis\n")

        settings = Settings.from_env()

        assert settings.session_timeout_seconds == 120
        assert settings.keystore_backend == KeystoreBackend.REDIS

    def test_environment_beats_dotenv(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("MAX_LOGIN_ATTEMPTS=9\n")
        clean_env.setenv("MAX_LOGIN_ATTEMPTS", "3")

        assert Settings.from_env().max_login_attempts == 3

    def test_get_settings_is_cached(self, clean_env):
        first = get_settings()
        clean_env.setenv("SESSION_TIMEOUT", "42")

        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().session_timeout_seconds == 42


class TestValidation:
    @pytest.mark.parametrize(
        "field", ["access_token_expiry_seconds", "max_login_attempts", "session_timeout_seconds"]
    )
    def test_non_positive_values_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_unknown_environment_rejected(self):
        with pytest.raises(ValidationError):
            Settings(environment="staging")

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings(keystore_backend="memcached")
