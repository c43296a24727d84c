"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from schoolgate.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret="x" * 32)
        assert settings.otp_ttl_seconds == 100
        assert settings.otp_max_attempts == 3
        assert settings.principal_cache_ttl_seconds == 300
        assert settings.login_lockout_minutes == 30
        assert settings.parent_child_cache_empty is False

    def test_missing_secret_fails_fast(self):
        with pytest.raises(ValidationError):
            Settings()
        with pytest.raises(ValidationError):
            Settings(jwt_secret="   ")

    def test_non_positive_ttl_is_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 32, otp_ttl_seconds=0)

    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "from-env-secret")
        monkeypatch.setenv("OTP_TTL_SECONDS", "120")
        monkeypatch.setenv("PARENT_CHILD_CACHE_EMPTY", "true")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        settings = Settings.from_env()
        assert settings.jwt_secret == "from-env-secret"
        assert settings.otp_ttl_seconds == 120
        assert settings.parent_child_cache_empty is True
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("OTP_MAX_ATTEMPTS", "5")
        reset_settings_cache()
        assert get_settings().otp_max_attempts == 5
        reset_settings_cache()
