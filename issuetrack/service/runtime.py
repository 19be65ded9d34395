from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from issuetrack.config import get_settings, reset_settings_cache
from issuetrack.logging import get_logger
from issuetrack.service.audit import AuditRecorder
from issuetrack.service.auth import AuthService
from issuetrack.service.comments import CommentService
from issuetrack.service.issues import IssueService
from issuetrack.service.lockout import AccountSecurity, LockoutPolicy
from issuetrack.service.rate_limit import (
    InMemoryRateLimitStore,
    RateLimiter,
    RateLimitStore,
    RedisRateLimitStore,
    build_policies,
)
from issuetrack.service.stats import StatsService
from issuetrack.service.tokens import TokenService
from issuetrack.storage.memory import MemoryStore
from issuetrack.storage.postgres import PostgresStore
from issuetrack.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging."""
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
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; start Redis, unset REDIS_URL, "
                        "or set ALLOW_REDIS_FALLBACK_DEV=true for in-process rate limits."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error),
                )

        rate_store: RateLimitStore = (
            RedisRateLimitStore(self.cache) if self.cache else InMemoryRateLimitStore()
        )
        self.rate_limiter = RateLimiter(rate_store, build_policies(self.settings))

        self.tokens = TokenService(self.settings)
        self.lockout_policy = LockoutPolicy.from_settings(self.settings)
        self.account_security = AccountSecurity(self.store, self.lockout_policy)
        self.auth = AuthService(
            self.store, self.tokens, self.settings, security=self.account_security
        )
        self.audit = AuditRecorder(self.store)
        self.issues = IssueService(self.store, self.audit)
        self.comments = CommentService(self.store, self.audit)
        self.stats = StatsService(self.store, self.audit)
        logger.info(
            "runtime_init_complete",
            store_type=store_type,
            rate_limit_store=type(rate_store).__name__,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
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
    """Rebuild the runtime singleton with a fresh store; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            if runtime.cache is not None:
                try:
                    asyncio.run(runtime.cache.close())
                except RuntimeError as exc:
                    logger.warning("runtime_cache_close_skipped", error=str(exc))
            if isinstance(runtime.store, MemoryStore):
                runtime.store.reset()
        runtime = Runtime()
        if isinstance(runtime.store, MemoryStore):
            runtime.store.reset()
        return runtime
