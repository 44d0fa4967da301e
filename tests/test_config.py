"""Tests for settings loading and validation."""

import pytest
from pydantic import ValidationError

from projectauth.config import Settings, get_settings, reset_settings_cache


class TestSettingsValidation:
    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    def test_secret_required_outside_test_mode(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=None, test_mode=False)

    def test_test_mode_generates_secret(self):
        settings = Settings(jwt_secret=None, test_mode=True)
        assert len(settings.jwt_secret) >= 32

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError):
            Settings(test_mode=True, reset_token_ttl_minutes=0)

    def test_negative_retries_clamped(self):
        assert Settings(test_mode=True, transient_retry_attempts=-3).transient_retry_attempts == 0

    def test_api_key_pepper_defaults_to_jwt_secret(self, settings):
        assert settings.effective_api_key_pepper == settings.jwt_secret
        peppered = Settings(test_mode=True, api_key_pepper="pepper")
        assert peppered.effective_api_key_pepper == "pepper"


class TestFromEnv:
    """Environment variables override values from .env."""

    def test_env_values_loaded(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("JWT_SECRET", "x" * 40)
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("REVOKE_FAMILY_ON_REUSE", "false")
        settings = Settings.from_env()
        assert settings.jwt_secret == "x" * 40
        assert settings.access_token_ttl_minutes == 5
        assert settings.revoke_family_on_reuse is False

    def test_dotenv_file_used_when_env_missing(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("JWT_ISSUER", raising=False)
        (tmp_path / ".env").write_text("JWT_ISSUER=from-dotenv\nCLOCK_SKEW_SECONDS=5\n")
        settings = Settings.from_env()
        assert settings.jwt_issuer == "from-dotenv"
        assert settings.clock_skew_seconds == 5

    def test_environment_beats_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("JWT_ISSUER=from-dotenv\n")
        monkeypatch.setenv("JWT_ISSUER", "from-env")
        assert Settings.from_env().jwt_issuer == "from-env"

    def test_cached_settings(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        reset_settings_cache()
        try:
            assert get_settings() is get_settings()
        finally:
            reset_settings_cache()
