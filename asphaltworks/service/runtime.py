from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from asphaltworks.config import get_settings, reset_settings_cache
from asphaltworks.logging import get_logger
from asphaltworks.service.auth import AuthService
from asphaltworks.service.content import ContentService
from asphaltworks.service.credentials import CredentialManager
from asphaltworks.service.email import EmailDispatcher, EmailService
from asphaltworks.service.rate_limit import (
    AdmissionController,
    MemoryWindowStore,
    RedisWindowStore,
)
from asphaltworks.service.session import SessionResolver
from asphaltworks.service.tokens import TokenIssuer
from asphaltworks.service.uploads import UploadService
from asphaltworks.service.users import UserDirectory
from asphaltworks.storage.memory import MemoryStore
from asphaltworks.storage.postgres import PostgresStore
from asphaltworks.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a URL with ``***`` for logging."""
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
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    persist=self.settings.memory_store_persist,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
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
            except (RedisError, OSError) as exc:
                redis_error = exc

        if self.settings.rate_limit_backend == "redis" and self.cache is not None:
            window_store = RedisWindowStore(self.cache)
        else:
            if self.settings.rate_limit_backend == "redis":
                if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                    raise RuntimeError(
                        "RATE_LIMIT_BACKEND=redis needs a reachable REDIS_URL; "
                        "start Redis or set ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_url_missing",
                    message="Rate-limit windows are process-local; limits are per instance.",
                )
            window_store = MemoryWindowStore()

        self.credentials = CredentialManager(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
            token_bytes=self.settings.token_bytes,
        )
        self.tokens = TokenIssuer(self.settings, self.credentials)
        self.sessions = SessionResolver(self.store, self.tokens)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.client_url,
            admin_email=self.settings.admin_notification_email,
        )
        self.mailer = EmailDispatcher(self.email)
        self.auth = AuthService(
            self.store, self.credentials, self.tokens, self.mailer, self.settings
        )
        self.users = UserDirectory(self.store, self.credentials, self.mailer, self.settings)
        self.content = ContentService(self.store, self.mailer)
        self.uploads = UploadService(
            self.settings.media_path, max_bytes=self.settings.max_upload_bytes
        )
        self.admission = AdmissionController(self.settings, window_store)

        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            rate_limit_backend=type(window_store).__name__,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    async def aclose(self) -> None:
        self.mailer.shutdown()
        if self.cache is not None:
            await self.cache.close()
        close = getattr(self.store, "close", None)
        if close:
            close()


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
        if runtime is not None:
            runtime.mailer.shutdown()
            if runtime.cache is not None:
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
