from __future__ import annotations

import os
import re
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from portfolio_auth.logging import get_logger

logger = get_logger(__name__)

# Substituted only when APP_ENV=development or TEST_MODE is on
DEV_JWT_SECRET = "development-only-jwt-secret-change-me-0123456789abcdef"
DEV_ENCRYPTION_KEY = "0" * 64

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


class AppEnv(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


class ConfigurationError(RuntimeError):
    """Raised at startup when required secrets are missing or malformed."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("invalid configuration: " + "; ".join(problems))
        self.problems = problems


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    app_env: AppEnv = env_field(AppEnv.PRODUCTION, "APP_ENV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the synchronous Redis client and development secrets.",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    database_url: str = env_field(
        "postgresql://localhost:5432/portfolio", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    memory_store_path: str | None = env_field(None, "MEMORY_STORE_PATH")

    # Session tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("portfolio-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("portfolio-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime; values below 15 are raised to 15.",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime; values below one day are raised to one day.",
    )
    rotate_refresh_tokens: bool = env_field(True, "ROTATE_REFRESH_TOKENS")
    temp_token_ttl_minutes: int = env_field(5, "TEMP_TOKEN_TTL_MINUTES")

    # Secrets at rest
    oauth_encryption_key: str | None = env_field(None, "OAUTH_ENCRYPTION_KEY")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    # Admin access
    admin_allowed_emails: list[str] = env_field([], "ADMIN_ALLOWED_EMAILS")
    admin_setup_token: str | None = env_field(None, "ADMIN_SETUP_TOKEN")
    admin_setup_enabled: bool = env_field(True, "ADMIN_SETUP_ENABLED")
    admin_setup_token_ttl_hours: int = env_field(24, "ADMIN_SETUP_TOKEN_TTL_HOURS")
    totp_issuer: str = env_field("Portfolio-DevPanel", "TOTP_ISSUER")

    # OAuth providers
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_url: str | None = env_field(None, "GOOGLE_REDIRECT_URL")
    google_scopes: list[str] = env_field(
        ["openid", "email", "profile"], "GOOGLE_SCOPES"
    )
    github_client_id: str | None = env_field(None, "GITHUB_CLIENT_ID")
    github_client_secret: str | None = env_field(None, "GITHUB_CLIENT_SECRET")
    github_redirect_url: str | None = env_field(None, "GITHUB_REDIRECT_URL")
    github_scopes: list[str] = env_field(["read:user", "user:email"], "GITHUB_SCOPES")
    microsoft_client_id: str | None = env_field(None, "MICROSOFT_CLIENT_ID")
    microsoft_client_secret: str | None = env_field(None, "MICROSOFT_CLIENT_SECRET")
    microsoft_redirect_url: str | None = env_field(None, "MICROSOFT_REDIRECT_URL")
    microsoft_scopes: list[str] = env_field(
        ["openid", "email", "profile"], "MICROSOFT_SCOPES"
    )
    oauth_state_ttl_minutes: int = env_field(5, "OAUTH_STATE_TTL_MINUTES")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    oauth_allowed_redirect_origins: list[str] = env_field(
        [
            "http://localhost:3000",
            "http://localhost:3001",
            "https://jadenrazo.dev",
            "https://www.jadenrazo.dev",
        ],
        "OAUTH_ALLOWED_REDIRECT_ORIGINS",
    )
    oauth_default_redirect: str = env_field("/devpanel", "OAUTH_DEFAULT_REDIRECT")
    http_timeout_seconds: float = env_field(10.0, "HTTP_TIMEOUT_SECONDS")

    # Middleware
    public_paths: list[str] = env_field(
        [
            "/api/auth/login",
            "/api/auth/register",
            "/api/auth/refresh",
            "/api/auth/logout",
            "/api/admin/login",
            "/api/admin/mfa/verify",
            "/api/admin/setup",
            "/api/auth/admin/oauth",
            "/api/health",
            "/docs",
            "/openapi.json",
        ],
        "PUBLIC_PATHS",
    )
    rate_limit_max_attempts: int = env_field(20, "RATE_LIMIT_MAX_ATTEMPTS")
    rate_limit_window_seconds: int = env_field(300, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_block_seconds: int = env_field(300, "RATE_LIMIT_BLOCK_SECONDS")
    auth_rate_limit_max_attempts: int = env_field(5, "AUTH_RATE_LIMIT_MAX_ATTEMPTS")
    auth_rate_limit_window_seconds: int = env_field(
        300, "AUTH_RATE_LIMIT_WINDOW_SECONDS"
    )
    auth_rate_limit_block_seconds: int = env_field(
        900, "AUTH_RATE_LIMIT_BLOCK_SECONDS"
    )
    rate_limit_sweep_interval_seconds: int = env_field(
        600, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS"
    )
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )

    # Email delivery for admin setup tokens
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Portfolio DevPanel", "EMAIL_FROM_NAME")

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            return AppEnv(value.strip().lower())
        return AppEnv(value)

    @field_validator(
        "admin_allowed_emails",
        "google_scopes",
        "github_scopes",
        "microsoft_scopes",
        "oauth_allowed_redirect_origins",
        "public_paths",
        "cors_allow_origins",
        mode="before",
    )
    @classmethod
    def _split_lists(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("admin_allowed_emails")
    @classmethod
    def _normalize_emails(cls, value: list[str]) -> list[str]:
        return [entry.lower() for entry in value]

    @field_validator("oauth_encryption_key")
    @classmethod
    def _validate_encryption_key(cls, value: str | None) -> str | None:
        if not value:
            return None
        if not _HEX_KEY.match(value):
            raise ValueError("OAUTH_ENCRYPTION_KEY must be 64 hex characters")
        return value

    @field_validator("jwt_secret", "admin_setup_token", "mfa_encryption_key")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        return value or None

    @property
    def is_development(self) -> bool:
        return self.test_mode or self.app_env in {AppEnv.DEVELOPMENT, AppEnv.TEST}

    @property
    def effective_jwt_secret(self) -> str:
        if self.jwt_secret:
            return self.jwt_secret
        if self.is_development:
            return DEV_JWT_SECRET
        raise ConfigurationError(["JWT_SECRET is required"])

    @property
    def effective_oauth_key(self) -> str:
        if self.oauth_encryption_key:
            return self.oauth_encryption_key
        if self.is_development:
            return DEV_ENCRYPTION_KEY
        raise ConfigurationError(["OAUTH_ENCRYPTION_KEY is required"])

    @property
    def effective_mfa_key(self) -> str:
        return self.mfa_encryption_key or self.effective_jwt_secret

    def validate_for_startup(self) -> list[str]:
        """Return configuration problems that must stop the process.

        Development and test environments fall back to fixed local secrets so
        an empty list is returned there; every other environment must provide
        them explicitly.
        """
        problems: list[str] = []
        if self.is_development:
            if not self.jwt_secret:
                logger.warning("jwt_secret_dev_default", app_env=self.app_env.value)
            return problems
        if not self.jwt_secret:
            problems.append("JWT_SECRET is required")
        elif len(self.jwt_secret) < 32:
            problems.append("JWT_SECRET must be at least 32 characters")
        if not self.oauth_encryption_key:
            problems.append("OAUTH_ENCRYPTION_KEY is required")
        if self.admin_setup_token and len(self.admin_setup_token) < 16:
            problems.append("ADMIN_SETUP_TOKEN must be at least 16 characters")
        return problems

    def provider_config(self, provider: str) -> dict[str, Any]:
        return {
            "client_id": getattr(self, f"{provider}_client_id"),
            "client_secret": getattr(self, f"{provider}_client_secret"),
            "redirect_url": getattr(self, f"{provider}_redirect_url"),
            "scopes": list(getattr(self, f"{provider}_scopes")),
        }


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
