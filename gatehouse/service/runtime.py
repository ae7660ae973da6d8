from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from gatehouse.config import get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.access_control import AccessControlService
from gatehouse.service.authorization import AuthorizationPipeline
from gatehouse.service.email import EmailService
from gatehouse.service.flows import AuthFlows
from gatehouse.service.passwords import PasswordService
from gatehouse.service.refresh import RefreshTokenManager
from gatehouse.service.resolver import AuthResolver
from gatehouse.service.sessions import SessionManager
from gatehouse.service.social import SocialAuthService
from gatehouse.service.tokens import TokenCodec
from gatehouse.service.two_factor import TwoFactorService
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.postgres import PostgresStore
from gatehouse.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        self.config = self.settings.auth_config()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    secret_encryption_key=self.settings.jwt_secret,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    secret_encryption_key=self.settings.jwt_secret,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a pytest event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, OAuth state and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        self.passwords = PasswordService()
        self.codec = TokenCodec(
            self.config.secret_key, expires_in=self.config.access_token_expires_in
        )
        self.refresh_tokens = RefreshTokenManager(self.store, self.config)
        self.two_factor = TwoFactorService(self.store, self.config)
        self.sessions = SessionManager(self.cache, self.config)
        self.resolver = AuthResolver(self.store, self.config, self.codec)
        self.pipeline = AuthorizationPipeline(self.resolver)
        self.access = AccessControlService(self.store)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.social = SocialAuthService(self.store, self.sessions, self.config)
        self.flows = AuthFlows(
            self.store,
            self.config,
            passwords=self.passwords,
            codec=self.codec,
            refresh_tokens=self.refresh_tokens,
            two_factor=self.two_factor,
            sessions=self.sessions,
            mailer=self.email,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            roles_and_permissions=self.config.roles_and_permissions,
            two_factor_auth=self.config.two_factor_auth,
            social_providers=sorted(self.config.providers),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit, in Redis when available and in-process otherwise."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining
        )
    now = datetime.utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= 1
        if allowed:
            tokens -= 1
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((1 - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
