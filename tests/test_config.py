"""Tests for environment-driven settings."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from sessionguard.config import Settings, get_settings, reset_settings_cache


class TestSettingsFromEnv:
    def test_env_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("INACTIVITY_TIMEOUT_SECONDS", "120")
        monkeypatch.setenv("WRITE_THROTTLE_SECONDS", "2.5")
        monkeypatch.setenv("CLIENT_MAX_RETRIES", "3")

        settings = Settings.from_env()

        assert settings.inactivity_timeout == timedelta(seconds=120)
        assert settings.write_throttle_seconds == 2.5
        assert settings.client_max_retries == 3

    def test_defaults(self):
        settings = Settings(jwt_secret="x")
        assert settings.inactivity_timeout_seconds == 86400
        assert settings.write_throttle_seconds == 300
        assert settings.logout_ttl == timedelta(hours=1)
        assert settings.sessions_namespace == "user_sessions"
        assert settings.logouts_namespace == "user_logouts"
        assert settings.logout_endpoint == "/auth/logout"

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("LOGOUT_TTL_SECONDS", "10")
        reset_settings_cache()
        assert get_settings().logout_ttl_seconds == 10


class TestSettingsValidation:
    @pytest.mark.parametrize(
        "field", ["inactivity_timeout_seconds", "write_throttle_seconds", "store_timeout_seconds"]
    )
    def test_non_positive_durations_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x", **{field: 0})

    def test_negative_retries_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x", client_max_retries=-1)

    def test_secret_required_unless_verification_skipped(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=None)
        assert Settings(jwt_secret=None, skip_token_verification=True).jwt_secret is None
