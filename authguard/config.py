from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authguard.logging import get_logger

logger = get_logger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

DEFAULT_PROGRESSIVE_DELAYS = [0, 1000, 5000, 15000, 30000, 60000]


class MaxAttempts(BaseModel):
    """Attempt thresholds shared by the limiter tiers and the lockout manager."""

    per_ip: int = Field(5, ge=1)
    per_email: int = Field(10, ge=1)
    before_captcha: int = Field(3, ge=1)
    before_lockout: int = Field(10, ge=1)


class AuthLimits(BaseModel):
    """Mirror of ``rateLimitConfig.auth``; durations are milliseconds unless noted."""

    window_ms: int = Field(15 * MINUTE_MS, gt=0)
    email_window_ms: int = Field(HOUR_MS, gt=0)
    max_attempts: MaxAttempts = Field(default_factory=MaxAttempts)
    progressive_delays: List[int] = Field(
        default_factory=lambda: list(DEFAULT_PROGRESSIVE_DELAYS)
    )
    block_duration_ms: int = Field(15 * MINUTE_MS, ge=0)
    captcha_ttl: int = Field(300, gt=0, description="CAPTCHA challenge TTL in seconds")
    # Outage policy for the per-email limiter; False means a store error rejects the request
    email_fail_open: bool = False

    @field_validator("progressive_delays")
    @classmethod
    def _validate_delays(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("progressive_delays must contain at least one entry")
        if any(delay < 0 for delay in value):
            raise ValueError("progressive_delays must be non-negative")
        return value

    @property
    def window_seconds(self) -> int:
        return max(1, self.window_ms // 1000)


class RateLimitConfig(BaseModel):
    auth: AuthLimits = Field(default_factory=AuthLimits)


class LockoutConfig(BaseModel):
    """Account lockout and unlock-link settings."""

    before_lockout: int = Field(10, ge=1)
    unlock_token_ttl_seconds: int = Field(24 * 60 * 60, gt=0)
    lock_marker_ttl_seconds: int = Field(24 * 60 * 60, gt=0)
    app_base_url: str = "http://localhost:8000"
    product_name: str = "AuthGuard"


class RotationConfig(BaseModel):
    interval_ms: int = Field(30 * DAY_MS, gt=0)
    grace_period_ms: int = Field(7 * DAY_MS, ge=0)
    max_active_keys: int = Field(3, ge=1)
    check_interval_ms: int = Field(HOUR_MS, gt=0)


class EncryptionConfig(BaseModel):
    algorithm: str = "aes-256-gcm"
    key_derivation: str = "pbkdf2"
    iterations: int = Field(100_000, ge=1)
    salt_length: int = Field(32, ge=16)
    iv_length: int = Field(16, ge=12, le=128)
    tag_length: int = 16

    @field_validator("algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        if value.lower() != "aes-256-gcm":
            raise ValueError("only aes-256-gcm is supported for key storage")
        return value.lower()

    @field_validator("key_derivation")
    @classmethod
    def _validate_kdf(cls, value: str) -> str:
        if value.lower() != "pbkdf2":
            raise ValueError("only pbkdf2 key derivation is supported")
        return value.lower()

    @field_validator("tag_length")
    @classmethod
    def _validate_tag_length(cls, value: int) -> int:
        # AESGCM always emits a 128-bit tag
        if value != 16:
            raise ValueError("tag_length must be 16 for AES-GCM")
        return value


class StorageConfig(BaseModel):
    key_prefix: str = "jwt:keys:"
    ttl: int = Field(45 * 24 * 60 * 60, gt=0, description="Revoked key retention in seconds")


class JWTKeyConfig(BaseModel):
    """Mirror of ``jwtKeyConfig``."""

    rotation: RotationConfig = Field(default_factory=RotationConfig)
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication defense service."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the in-process store and skip the Redis connectivity check.",
    )
    rate_limiting_enabled: bool = env_field(True, "RATE_LIMITING_ENABLED")
    admin_api_token: str | None = env_field(None, "ADMIN_API_TOKEN")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    product_name: str = env_field("AuthGuard", "PRODUCT_NAME")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # Access tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_encryption_key: str | None = env_field(None, "JWT_ENCRYPTION_KEY")
    jwt_issuer: str = env_field("authguard", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    register_legacy_jwt_key: bool = env_field(
        False,
        "REGISTER_LEGACY_JWT_KEY",
        description="Register JWT_SECRET as a verify-only key on startup",
    )
    key_rotation_enabled: bool = env_field(True, "JWT_KEY_ROTATION_ENABLED")

    # rateLimitConfig.auth
    auth_window_ms: int = env_field(15 * MINUTE_MS, "AUTH_WINDOW_MS")
    auth_email_window_ms: int = env_field(HOUR_MS, "AUTH_EMAIL_WINDOW_MS")
    auth_max_per_ip: int = env_field(5, "AUTH_MAX_ATTEMPTS_PER_IP")
    auth_max_per_email: int = env_field(10, "AUTH_MAX_ATTEMPTS_PER_EMAIL")
    auth_before_captcha: int = env_field(3, "AUTH_ATTEMPTS_BEFORE_CAPTCHA")
    auth_before_lockout: int = env_field(10, "AUTH_ATTEMPTS_BEFORE_LOCKOUT")
    auth_progressive_delays: List[int] = env_field(
        list(DEFAULT_PROGRESSIVE_DELAYS), "AUTH_PROGRESSIVE_DELAYS"
    )
    auth_block_duration_ms: int = env_field(15 * MINUTE_MS, "AUTH_BLOCK_DURATION_MS")
    auth_captcha_ttl: int = env_field(300, "AUTH_CAPTCHA_TTL")
    auth_email_fail_open: bool = env_field(False, "AUTH_EMAIL_FAIL_OPEN")

    # jwtKeyConfig
    jwt_rotation_interval_ms: int = env_field(30 * DAY_MS, "JWT_ROTATION_INTERVAL_MS")
    jwt_rotation_grace_ms: int = env_field(7 * DAY_MS, "JWT_ROTATION_GRACE_PERIOD_MS")
    jwt_max_active_keys: int = env_field(3, "JWT_MAX_ACTIVE_KEYS")
    jwt_rotation_check_interval_ms: int = env_field(HOUR_MS, "JWT_ROTATION_CHECK_INTERVAL_MS")
    jwt_kdf_iterations: int = env_field(100_000, "JWT_KDF_ITERATIONS")
    jwt_key_ttl_seconds: int = env_field(45 * 24 * 60 * 60, "JWT_KEY_RETENTION_SECONDS")

    # Email delivery (dev mode logs instead of sending when host is unset)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthGuard Security", "EMAIL_FROM_NAME")

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

    @field_validator("auth_progressive_delays", mode="before")
    @classmethod
    def _parse_delays(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [int(part) for part in value.split(",") if part.strip()]
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _parse_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_signing_material(self) -> "Settings":
        if not (self.jwt_encryption_key or self.jwt_secret):
            if not self.test_mode:
                raise ValueError("JWT_ENCRYPTION_KEY or JWT_SECRET must be set")
            logger.warning(
                "jwt_secret_missing_test_mode",
                message="Using an ephemeral key-encryption secret; stored keys will not survive restart",
            )
            self.jwt_encryption_key = os.urandom(32).hex()
        return self

    @property
    def key_encryption_secret(self) -> str:
        return self.jwt_encryption_key or self.jwt_secret or ""

    def rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            auth=AuthLimits(
                window_ms=self.auth_window_ms,
                email_window_ms=self.auth_email_window_ms,
                max_attempts=MaxAttempts(
                    per_ip=self.auth_max_per_ip,
                    per_email=self.auth_max_per_email,
                    before_captcha=self.auth_before_captcha,
                    before_lockout=self.auth_before_lockout,
                ),
                progressive_delays=self.auth_progressive_delays,
                block_duration_ms=self.auth_block_duration_ms,
                captcha_ttl=self.auth_captcha_ttl,
                email_fail_open=self.auth_email_fail_open,
            )
        )

    def lockout_config(self) -> LockoutConfig:
        return LockoutConfig(
            before_lockout=self.auth_before_lockout,
            app_base_url=self.app_base_url,
            product_name=self.product_name,
        )

    def jwt_key_config(self) -> JWTKeyConfig:
        return JWTKeyConfig(
            rotation=RotationConfig(
                interval_ms=self.jwt_rotation_interval_ms,
                grace_period_ms=self.jwt_rotation_grace_ms,
                max_active_keys=self.jwt_max_active_keys,
                check_interval_ms=self.jwt_rotation_check_interval_ms,
            ),
            encryption=EncryptionConfig(iterations=self.jwt_kdf_iterations),
            storage=StorageConfig(ttl=self.jwt_key_ttl_seconds),
        )


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
