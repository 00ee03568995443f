from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from edenauth.config import Settings, get_settings, reset_settings_cache
from edenauth.logging import get_logger
from edenauth.service.auth import AuthService
from edenauth.service.passwords import PasswordHasher
from edenauth.service.rate_limit import RateLimiter
from edenauth.service.tokens import TokenService
from edenauth.storage.memory import MemoryStore
from edenauth.storage.postgres import PostgresStore
from edenauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
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

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        # refuse to build anything without a signing secret
        secret = self.settings.require_jwt_secret()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.state_dir)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    pool_timeout=self.settings.db_pool_timeout_seconds,
                    connect_timeout=self.settings.db_connect_timeout_seconds,
                    statement_timeout_ms=self.settings.db_statement_timeout_ms,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()
        self.hasher = PasswordHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
            parallelism=self.settings.password_hash_parallelism,
        )
        self.tokens = TokenService(
            secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_ttl_minutes=self.settings.refresh_token_ttl_minutes,
            algorithm=self.settings.jwt_algorithm,
        )
        self.auth = AuthService(self.store, self.hasher, self.tokens, self.settings)
        self.rate_limiter = RateLimiter(self.cache)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
        )

    def _build_cache(self):
        redis_url = self.settings.redis_url
        if not redis_url:
            if self.settings.is_production and not self.settings.allow_redis_fallback_dev:
                logger.warning(
                    "redis_not_configured",
                    message="rate limits are per-process without REDIS_URL",
                )
            return None
        try:
            # sync client in test mode so per-test event loops are not bound
            cache = (
                SyncRedisCache(redis_url)
                if self.settings.test_mode
                else RedisCache(redis_url)
            )
            cache.verify_connection()
            return cache
        except Exception as exc:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is configured but unreachable; start Redis, unset REDIS_URL, "
                    "or set ALLOW_REDIS_FALLBACK_DEV=true for per-process rate limits."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(redis_url),
                error=str(exc),
            )
            return None

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        await self.rate_limiter.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once a runtime exists.
    """
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
            asyncio.run(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
