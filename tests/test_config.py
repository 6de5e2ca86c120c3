"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from authguard.config import Settings, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # Keep a developer's .env out of the picture
    monkeypatch.chdir(tmp_path)
    for name in ("AUTH_PROGRESSIVE_DELAYS", "JWT_KDF_ITERATIONS", "JWT_KEY_ROTATION_ENABLED"):
        monkeypatch.delenv(name, raising=False)
    yield monkeypatch
    reset_settings_cache()


class TestFromEnv:
    """Tests for Settings.from_env."""

    def test_defaults(self, clean_env):
        settings = Settings.from_env()

        assert settings.auth_max_per_ip == 5
        assert settings.auth_progressive_delays == [0, 1000, 5000, 15000, 30000, 60000]
        assert settings.jwt_kdf_iterations == 100_000
        assert settings.key_rotation_enabled is True

    def test_list_fields_parse_comma_strings(self, clean_env):
        clean_env.setenv("AUTH_PROGRESSIVE_DELAYS", "0, 500,1500")
        clean_env.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com")

        settings = Settings.from_env()

        assert settings.auth_progressive_delays == [0, 500, 1500]
        assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]

    def test_dotenv_file_is_read(self, clean_env, tmp_path):
        clean_env.delenv("AUTH_MAX_ATTEMPTS_PER_IP", raising=False)
        (tmp_path / ".env").write_text("AUTH_MAX_ATTEMPTS_PER_IP=7\n")

        assert Settings.from_env().auth_max_per_ip == 7

    def test_environment_beats_dotenv(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("AUTH_MAX_ATTEMPTS_PER_IP=7\n")
        clean_env.setenv("AUTH_MAX_ATTEMPTS_PER_IP", "9")

        assert Settings.from_env().auth_max_per_ip == 9

    def test_get_settings_is_cached(self, clean_env):
        reset_settings_cache()

        assert get_settings() is get_settings()


class TestSigningMaterial:
    """Tests for the key-encryption secret requirement."""

    def test_missing_secret_fails_outside_test_mode(self):
        with pytest.raises(ValidationError):
            Settings(test_mode=False, jwt_secret=None, jwt_encryption_key=None)

    def test_test_mode_generates_ephemeral_secret(self):
        settings = Settings(test_mode=True, jwt_secret=None, jwt_encryption_key=None)

        assert len(settings.key_encryption_secret) == 64

    def test_encryption_key_preferred_over_jwt_secret(self):
        settings = Settings(jwt_secret="jwt", jwt_encryption_key="enc")

        assert settings.key_encryption_secret == "enc"


class TestDerivedConfig:
    """Tests for the nested config objects handed to the services."""

    def test_rate_limit_config(self):
        settings = Settings(
            jwt_secret="s",
            auth_max_per_ip=8,
            auth_before_captcha=2,
            auth_block_duration_ms=60_000,
            auth_email_fail_open=True,
        )

        auth = settings.rate_limit_config().auth

        assert auth.max_attempts.per_ip == 8
        assert auth.max_attempts.before_captcha == 2
        assert auth.block_duration_ms == 60_000
        assert auth.email_fail_open is True

    def test_jwt_key_config(self):
        settings = Settings(jwt_secret="s", jwt_max_active_keys=2, jwt_kdf_iterations=5000)

        config = settings.jwt_key_config()

        assert config.rotation.max_active_keys == 2
        assert config.encryption.iterations == 5000
        assert config.storage.key_prefix == "jwt:keys:"

    def test_lockout_config(self):
        settings = Settings(jwt_secret="s", auth_before_lockout=4, product_name="Acme")

        config = settings.lockout_config()

        assert config.before_lockout == 4
        assert config.product_name == "Acme"
