"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from issuetrack.config import AppEnv, Settings, get_settings, reset_settings_cache

SECRETS = {
    "jwt_secret": "jwt-secret-value-for-config-tests",
    "refresh_token_secret": "refresh-secret-value-for-config-tests",
}


@pytest.fixture
def isolated_env(monkeypatch, tmp_path):
    """Run from an empty directory so no stray .env file is merged."""
    monkeypatch.chdir(tmp_path)
    yield monkeypatch
    reset_settings_cache()


class TestDefaults:
    def test_documented_defaults(self):
        settings = Settings(**SECRETS)

        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.max_login_attempts == 5
        assert settings.lockout_duration_minutes == 15
        assert settings.rate_limit_window_seconds == 900
        assert (settings.auth_rate_limit, settings.api_rate_limit, settings.public_rate_limit) == (
            5,
            100,
            200,
        )
        assert settings.rate_limit_sweep_interval_seconds == 300
        assert settings.redis_url is None
        assert settings.is_production is False


class TestSecrets:
    @pytest.mark.parametrize("missing", ["jwt_secret", "refresh_token_secret"])
    def test_missing_secret_fails(self, missing):
        values = dict(SECRETS)
        values.pop(missing)
        with pytest.raises(ValidationError, match=f"{missing.upper()} must be set"):
            Settings(**values)

    def test_blank_secret_fails(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="   ", refresh_token_secret="x")


class TestValidation:
    def test_non_positive_limits_are_rejected(self):
        with pytest.raises(ValidationError, match="auth_rate_limit must be positive"):
            Settings(auth_rate_limit=0, **SECRETS)

    def test_app_env_is_case_insensitive(self):
        settings = Settings(app_env=" Production ", **SECRETS)
        assert settings.app_env == AppEnv.PRODUCTION
        assert settings.is_production is True

    def test_blank_redis_url_means_unset(self):
        assert Settings(redis_url="  ", **SECRETS).redis_url is None

    def test_origins_split_from_string(self):
        settings = Settings(cors_allow_origins="https://a.example, https://b.example,", **SECRETS)
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


class TestFromEnv:
    def test_reads_named_environment_variables(self, isolated_env):
        isolated_env.setenv("AUTH_RATE_LIMIT", "9")
        isolated_env.setenv("ACCESS_TOKEN_TTL_MINUTES", "30")
        isolated_env.setenv("APP_ENV", "staging")

        settings = Settings.from_env()

        assert settings.auth_rate_limit == 9
        assert settings.access_token_ttl_minutes == 30
        assert settings.app_env == AppEnv.STAGING

    def test_dotenv_fills_gaps_but_environment_wins(self, isolated_env, tmp_path):
        (tmp_path / ".env").write_text("API_RATE_LIMIT=42\nPUBLIC_RATE_LIMIT=7\n")
        isolated_env.setenv("PUBLIC_RATE_LIMIT", "300")

        settings = Settings.from_env()

        assert settings.api_rate_limit == 42
        assert settings.public_rate_limit == 300

    def test_get_settings_is_cached_until_reset(self, isolated_env):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        isolated_env.setenv("API_RATE_LIMIT", "11")
        reset_settings_cache()
        assert get_settings().api_rate_limit == 11
