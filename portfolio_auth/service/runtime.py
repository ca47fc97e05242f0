from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

import httpx

from portfolio_auth.config import ConfigurationError, get_settings, reset_settings_cache
from portfolio_auth.logging import get_logger
from portfolio_auth.service.admin import AdminAuthService
from portfolio_auth.service.credentials import CredentialService
from portfolio_auth.service.crypto import TokenCipher
from portfolio_auth.service.email import EmailService
from portfolio_auth.service.oauth import OAuth2Flow, OAuthStateStore, build_providers
from portfolio_auth.service.passwords import PasswordPolicy
from portfolio_auth.service.ratelimit import RateLimitConfig, RateLimiter
from portfolio_auth.service.refresh_store import RefreshTokenStore
from portfolio_auth.service.tokens import TokenCodec
from portfolio_auth.storage.memory import MemoryStore
from portfolio_auth.storage.memory_cache import MemoryCache
from portfolio_auth.storage.postgres import PostgresStore
from portfolio_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

CacheBackend = Union[RedisCache, SyncRedisCache, MemoryCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        problems = self.settings.validate_for_startup()
        if problems:
            logger.error("runtime_config_invalid", problems=problems)
            raise ConfigurationError(problems)

        try:
            self.store = (
                MemoryStore(state_path=self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()

        self.passwords = PasswordPolicy()
        self.refresh_store = RefreshTokenStore(self.cache)
        self.codec = TokenCodec(
            self.settings.effective_jwt_secret,
            self.settings.jwt_issuer,
            self.settings.jwt_audience,
            self.refresh_store,
            access_ttl_seconds=self.settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_minutes * 60,
            temp_ttl_seconds=self.settings.temp_token_ttl_minutes * 60,
        )
        self.credentials = CredentialService(
            self.store,
            self.passwords,
            self.codec,
            self.refresh_store,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
        )
        self.general_limiter = RateLimiter(
            RateLimitConfig(
                max_attempts=self.settings.rate_limit_max_attempts,
                window_seconds=self.settings.rate_limit_window_seconds,
                block_seconds=self.settings.rate_limit_block_seconds,
            ),
            name="general",
        )
        self.auth_limiter = RateLimiter(
            RateLimitConfig(
                max_attempts=self.settings.auth_rate_limit_max_attempts,
                window_seconds=self.settings.auth_rate_limit_window_seconds,
                block_seconds=self.settings.auth_rate_limit_block_seconds,
            ),
            name="auth",
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.frontend_url,
        )
        self.mfa_cipher = TokenCipher(self.settings.effective_mfa_key)
        self.oauth_cipher = TokenCipher(self.settings.effective_oauth_key)
        self.admin = AdminAuthService(
            self.store,
            self.credentials,
            self.mfa_cipher,
            self.cache,
            self.email,
            self.auth_limiter,
            allowed_emails=self.settings.admin_allowed_emails,
            setup_token=self.settings.admin_setup_token,
            setup_enabled=self.settings.admin_setup_enabled,
            setup_token_ttl_hours=self.settings.admin_setup_token_ttl_hours,
            totp_issuer=self.settings.totp_issuer,
        )
        self.http_client = httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds, follow_redirects=False
        )
        providers = build_providers(
            {
                name: self.settings.provider_config(name)
                for name in ("google", "github", "microsoft")
            },
            self.http_client,
        )
        self.oauth = OAuth2Flow(
            providers,
            OAuthStateStore(self.cache, ttl_seconds=self.settings.oauth_state_ttl_minutes * 60),
            self.store,
            self.credentials,
            self.oauth_cipher,
            allowed_emails=self.settings.admin_allowed_emails,
            frontend_url=self.settings.frontend_url,
            allowed_redirect_origins=self.settings.oauth_allowed_redirect_origins,
            default_redirect=self.settings.oauth_default_redirect,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=not isinstance(self.cache, MemoryCache),
            email_configured=self.email.is_configured,
            oauth_providers=sorted(providers),
            admin_allow_list_size=len(self.settings.admin_allowed_emails),
        )

    def _build_cache(self) -> CacheBackend:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids cross event loop connections
                if self.settings.test_mode:
                    cache: CacheBackend = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh tokens, OAuth state, and setup tokens; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; refresh tokens and "
                "OAuth state live in process memory only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    def start_background_tasks(self) -> None:
        interval = self.settings.rate_limit_sweep_interval_seconds
        self.general_limiter.start(interval)
        self.auth_limiter.start(interval)

    async def shutdown(self) -> None:
        await self.general_limiter.stop()
        await self.auth_limiter.stop()
        await self.http_client.aclose()
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_shutdown_complete")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def close_runtime() -> None:
    global runtime
    current = runtime
    if current is None:
        return
    await current.shutdown()
    with _runtime_lock:
        if runtime is current:
            runtime = None


__all__ = [
    "Runtime",
    "close_runtime",
    "get_runtime",
    "reset_runtime_for_tests",
]
