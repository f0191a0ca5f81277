from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from bookingdesk.config import get_settings, reset_settings_cache
from bookingdesk.logging import get_logger
from bookingdesk.service.admin import AdminService
from bookingdesk.service.auth import AuthService
from bookingdesk.service.bookings import (
    BOOKINGS_TABLE,
    BookingEventStream,
    BookingSnapshotLoader,
    BookingSyncEngine,
)
from bookingdesk.service.console import ConsoleManager
from bookingdesk.service.login_flow import LoginFlowRegistry
from bookingdesk.service.mfa import MFAService
from bookingdesk.service.notify import Notifier
from bookingdesk.service.site_data import SiteDataService
from bookingdesk.storage.freshness import FreshnessCache
from bookingdesk.storage.memory import MemoryStore
from bookingdesk.storage.postgres import PostgresRecordStore
from bookingdesk.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
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
    except ValueError:
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

        self.store = MemoryStore(
            mfa_encryption_key=self.settings.mfa_secret_key,
            state_path=self.settings.state_path,
        )
        self.records: Union[MemoryStore, PostgresRecordStore] = self.store
        if not self.settings.use_memory_store:
            if not self.settings.database_url:
                raise RuntimeError("DATABASE_URL is required when USE_MEMORY_STORE=false")
            try:
                self.records = PostgresRecordStore(self.settings.database_url)
                self.records.verify_connection()
                self.records.install_notify_trigger(BOOKINGS_TABLE)
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="postgres",
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        logger.info(
            "runtime_store_initialized",
            record_store="memory" if self.records is self.store else "postgres",
        )

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to pytest's event loops
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
                    "Redis is required for console sessions and MFA challenges; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.auth = AuthService(self.store, self.cache, self.settings)
        self.mfa = MFAService(self.store, self.cache, self.settings)
        self.admin = AdminService(self.store, self.auth, self.mfa, self.settings)
        self.notifier = Notifier(self.settings.notify_webhook_url)
        self.site_data = SiteDataService(
            self.records, FreshnessCache(self.settings.site_cache_ttl_seconds)
        )
        self.logins = LoginFlowRegistry(
            self.auth, self.mfa, ttl_minutes=self.settings.login_flow_ttl_minutes
        )
        self.consoles = ConsoleManager(self.new_booking_engine)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            booking_limit=self.settings.booking_limit,
            webhook_configured=bool(self.settings.notify_webhook_url),
        )

    def new_booking_engine(self) -> BookingSyncEngine:
        return BookingSyncEngine(
            BookingSnapshotLoader(self.records),
            BookingEventStream(self.records),
            limit=self.settings.booking_limit,
            notifier=self.notifier,
        )

    async def shutdown(self) -> None:
        self.consoles.close_all()
        await self.logins.close_all()
        self.notifier.close()
        if isinstance(self.records, PostgresRecordStore):
            await self.records.close()
        if self.cache is not None:
            await self.cache.close()
        logger.info("runtime_shutdown")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists; the slow path re-checks under the lock before creating it.
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
        if runtime is not None:
            runtime.consoles.close_all()
            runtime.notifier.close()
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache._sync_client.close()
            elif runtime.cache is not None:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
