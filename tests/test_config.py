import pytest

from edenauth.config import (
    ConfigurationError,
    Settings,
    get_settings,
    reset_settings_cache,
)


class TestFromEnv:
    def test_reads_environment_variables(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "30")
        monkeypatch.setenv("MAX_FAILED_LOGIN_ATTEMPTS", "3")
        monkeypatch.setenv("ENVIRONMENT", "production")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 30
        assert settings.max_failed_login_attempts == 3
        assert settings.is_production is True

    def test_dotenv_file_fills_unset_values(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("JWT_ISSUER", raising=False)
        monkeypatch.setenv("LOCKOUT_MINUTES", "20")
        (tmp_path / ".env").write_text("JWT_ISSUER=from-dotenv\nLOCKOUT_MINUTES=99\n")

        settings = Settings.from_env()

        assert settings.jwt_issuer == "from-dotenv"
        # process environment wins over the file
        assert settings.lockout_minutes == 20

    def test_blank_redis_url_means_unset(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("REDIS_URL", "  ")
        assert Settings.from_env().redis_url is None


def test_defaults_match_storefront_policy():
    settings = Settings()

    assert settings.jwt_issuer == "eden-perfume"
    assert settings.jwt_audience == "eden-perfume-users"
    assert settings.access_token_ttl_minutes == 7 * 24 * 60
    assert settings.refresh_token_ttl_minutes == 30 * 24 * 60
    assert settings.max_failed_login_attempts == 5
    assert settings.lockout_minutes == 15
    assert settings.signin_rate_limit == 5
    assert settings.signin_rate_window_seconds == 900
    assert settings.signup_rate_limit == 3
    assert settings.signup_rate_window_seconds == 3600
    assert settings.is_production is False


class TestRequireJwtSecret:
    def test_missing_secret_is_fatal(self):
        with pytest.raises(ConfigurationError):
            Settings(jwt_secret=None).require_jwt_secret()

    def test_whitespace_secret_counts_as_missing(self):
        settings = Settings(jwt_secret="   ")
        assert settings.jwt_secret is None
        with pytest.raises(ConfigurationError):
            settings.require_jwt_secret()

    def test_short_secret_is_accepted(self):
        assert Settings(jwt_secret="short").require_jwt_secret() == "short"


def test_settings_cache_reset(monkeypatch):
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("LOCKOUT_MINUTES", "42")
    reset_settings_cache()

    assert get_settings() is not first
    assert get_settings().lockout_minutes == 42
