from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from fastapi import Request

from leasekeeper.config import Settings
from leasekeeper.logging import get_logger
from leasekeeper.service.activity import ActivityRecorder
from leasekeeper.service.audit import (
    AuditSink,
    FanOutAuditSink,
    LogAuditSink,
    StoreAuditSink,
)
from leasekeeper.service.clock import Clock, utcnow
from leasekeeper.service.failures import FailureTracker
from leasekeeper.service.preferences import PreferenceService
from leasekeeper.service.revocation import RevocationService
from leasekeeper.service.sweeper import CleanupSweeper
from leasekeeper.service.tokens import TokenIssuer
from leasekeeper.service.validator import LeaseValidator
from leasekeeper.storage.memory import MemoryStore
from leasekeeper.storage.postgres import PostgresStore
from leasekeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

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
    """Service graph for one process.

    Built once at application startup and attached to ``app.state``; request
    handlers receive it through the ``get_runtime`` dependency.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Clock = utcnow,
        store: "PostgresStore | MemoryStore | None" = None,
        cache: Optional[RedisCache] = None,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.settings = settings
        self.clock = clock
        use_memory = settings.use_memory_store or settings.test_mode
        logger.info(
            "runtime_init_started",
            use_memory_store=use_memory,
            test_mode=settings.test_mode,
        )

        if store is None:
            try:
                store = MemoryStore() if use_memory else PostgresStore(settings.database_url)
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if use_memory else "postgres",
                    database_url=_mask_url_password(settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.store = store
        logger.info("runtime_store_initialized", store_type=type(store).__name__)

        self.cache = cache if cache is not None else self._connect_cache(settings)

        persist_audit = audit is None
        if audit is None:
            audit = FanOutAuditSink([LogAuditSink(), StoreAuditSink(self.store)])
        self.audit = audit

        self.failures = FailureTracker(
            self.cache,
            limit=settings.failed_validation_limit,
            window_seconds=settings.failed_validation_window_seconds,
            cooldown_seconds=settings.failed_validation_cooldown_seconds,
            clock=clock,
        )
        self.preferences = PreferenceService(self.store, settings, clock=clock)
        self.issuer = TokenIssuer(
            self.store, settings, self.preferences, audit=self.audit, clock=clock
        )
        self.validator = LeaseValidator(
            self.store,
            settings,
            self.preferences,
            self.failures,
            audit=self.audit,
            clock=clock,
        )
        self.activity = ActivityRecorder(self.store, settings, self.validator, clock=clock)
        self.revocation = RevocationService(
            self.store, self.preferences, audit=self.audit, clock=clock
        )
        self.sweeper = CleanupSweeper(
            self.store,
            settings,
            audit=self.audit,
            failures=self.failures,
            purge_audit=persist_audit,
            clock=clock,
        )

    @staticmethod
    def _connect_cache(settings: Settings) -> Optional[RedisCache]:
        if not settings.redis_url:
            logger.info("redis_not_configured", failure_tracking="in_process")
            return None
        try:
            cache = RedisCache(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is configured but unreachable; start Redis or set "
                    "ALLOW_REDIS_FALLBACK_DEV=true for in-process failure tracking."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(exc),
                mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )
            return None

    async def close(self) -> None:
        await self.sweeper.stop()
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


def build_runtime(
    settings: Settings,
    *,
    clock: Optional[Clock] = None,
    store: "PostgresStore | MemoryStore | None" = None,
    audit: Optional[AuditSink] = None,
) -> Runtime:
    return Runtime(settings, clock=clock or utcnow, store=store, audit=audit)


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency resolving the runtime built for this app."""
    return request.app.state.runtime
