from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from cocoauth.config import get_settings, reset_settings_cache
from cocoauth.logging import get_logger
from cocoauth.service.coordinator import DeviceCoordinator, HttpDeviceCoordinator
from cocoauth.service.credentials import CredentialVerifier
from cocoauth.service.email import EmailService
from cocoauth.service.lifecycle import SessionLifecycleManager
from cocoauth.storage.memory import (
    MemorySessionStore,
    MemoryUserStore,
    MemoryVerificationCodeStore,
)
from cocoauth.storage.redis_cache import (
    RedisCache,
    RedisSessionStore,
    RedisVerificationCodeStore,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

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
    """Holds the process-wide stores, clients and the lifecycle manager."""

    def __init__(self, coordinator: Optional[DeviceCoordinator] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )
        self.users = MemoryUserStore(state_path=self.settings.user_store_path)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.use_memory_cache:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is not None:
            self.sessions = RedisSessionStore(self.cache)
            self.codes = RedisVerificationCodeStore(self.cache)
        else:
            if (
                not self.settings.use_memory_cache
                and not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for sessions and email codes; start Redis or set "
                    "USE_MEMORY_CACHE/TEST_MODE/ALLOW_REDIS_FALLBACK_DEV for local fallback."
                ) from redis_error
            if not self.settings.use_memory_cache:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_url_missing",
                    mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
                )
            self.sessions = MemorySessionStore()
            self.codes = MemoryVerificationCodeStore()

        self.coordinator = coordinator or HttpDeviceCoordinator(
            self.settings.gateway_base_url,
            timeout=self.settings.coordination_timeout_seconds,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.verifier = CredentialVerifier(self.users)
        self.manager = SessionLifecycleManager(
            self.settings,
            users=self.users,
            sessions=self.sessions,
            codes=self.codes,
            coordinator=self.coordinator,
            email_service=self.email,
            verifier=self.verifier,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            gateway=self.settings.gateway_base_url,
        )

    async def close(self) -> None:
        """Release the HTTP and Redis clients."""
        await self.coordinator.aclose()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
_pending_closes: set[asyncio.Task] = set()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _finish_close(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("runtime_close_failed", error=str(exc))


def reset_runtime_for_tests(coordinator: Optional[DeviceCoordinator] = None) -> Runtime:
    """Rebuild the runtime singleton from a freshly read environment."""
    global runtime

    with _runtime_lock:
        previous = runtime
        runtime = None
        if previous is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(previous.close())
            else:
                task = loop.create_task(previous.close())
                _pending_closes.add(task)
                task.add_done_callback(_finish_close)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(coordinator=coordinator)
        return runtime
