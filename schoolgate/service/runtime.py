from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from schoolgate.config import get_settings, reset_settings_cache
from schoolgate.logging import get_logger
from schoolgate.service.access import ParentChildValidator
from schoolgate.service.auth import AuthService
from schoolgate.service.otp import OtpManager, SmsSender
from schoolgate.service.rate_limit import (
    FileUploadRateLimiter,
    LocalCounterCache,
    RateLimiter,
)
from schoolgate.service.tokens import TokenCodec
from schoolgate.storage.memory import MemoryCache, MemoryStore
from schoolgate.storage.postgres import PostgresStore
from schoolgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

RATE_LOCAL_CACHE_MAX_ENTRIES = 1000
UPLOAD_LOCAL_CACHE_MAX_ENTRIES = 500


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
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

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
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
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for OTP records, rate limits and auth caches; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; OTP records and rate-limit "
                    "counters are held in this process only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.codec = TokenCodec(
            self.settings.jwt_secret, ttl_minutes=self.settings.token_ttl_minutes
        )
        self.otp = OtpManager(
            self.cache,
            ttl_seconds=self.settings.otp_ttl_seconds,
            max_attempts=self.settings.otp_max_attempts,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            codec=self.codec,
            otp=self.otp,
            sms=SmsSender(debug_log_codes=self.settings.otp_debug_log),
        )
        self.rate_local_cache = LocalCounterCache(
            ttl_seconds=self.settings.local_cache_ttl_seconds,
            max_entries=RATE_LOCAL_CACHE_MAX_ENTRIES,
        )
        self.upload_local_cache = LocalCounterCache(
            ttl_seconds=self.settings.local_cache_ttl_seconds,
            max_entries=UPLOAD_LOCAL_CACHE_MAX_ENTRIES,
        )
        self.rate_limiter = RateLimiter(
            self.cache, self.codec, local_cache=self.rate_local_cache
        )
        self.upload_limiter = FileUploadRateLimiter(
            self.cache, self.codec, local_cache=self.upload_local_cache
        )
        self.parent_child = ParentChildValidator(
            self.store,
            self.cache,
            ttl_seconds=self.settings.parent_child_cache_ttl_seconds,
            cache_empty=self.settings.parent_child_cache_empty,
        )
        logger.info(
            "runtime_init_completed",
            cache_type=type(self.cache).__name__,
        )

    async def close(self) -> None:
        try:
            await self.cache.close()
        except Exception as exc:
            logger.warning("runtime_cache_close_failed", error=str(exc))
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
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
        # Close existing Redis connections to avoid event loop issues
        if runtime is not None:
            cache = runtime.cache
            try:
                if isinstance(cache, SyncRedisCache):
                    cache._sync_client.close()
                elif isinstance(cache, RedisCache):
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(cache.close())
                    except RuntimeError:
                        asyncio.run(cache.close())
            except Exception as exc:
                logger.debug("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
