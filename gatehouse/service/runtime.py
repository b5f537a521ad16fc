from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

import httpx

from gatehouse.config import Settings, get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.auth import AuthService
from gatehouse.service.email import EmailService
from gatehouse.service.identity import IdentityReconciler
from gatehouse.service.oauth import ProviderRegistry
from gatehouse.service.session import SessionBackend, SessionHandle
from gatehouse.service.tokens import TokenService
from gatehouse.service.users import UserService
from gatehouse.storage.memory import MemorySessionStore, MemoryStore
from gatehouse.storage.postgres import PostgresStore
from gatehouse.storage.redis_cache import RedisSessionStore

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
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        oauth_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.memory_store_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
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

        self.sessions: SessionBackend = self._init_session_backend()

        self.tokens = TokenService(self.store)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            frontend_url=self.settings.allowed_origin,
        )
        self.providers = ProviderRegistry.from_settings(
            self.settings, transport=oauth_transport
        )
        self.identities = IdentityReconciler(
            self.store, link_by_email=self.settings.oauth_link_by_email
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.email,
            self.providers,
            self.identities,
        )
        self.users = UserService(self.store)
        logger.info(
            "runtime_init_completed",
            oauth_providers=self.providers.names,
            email_configured=self.email.is_configured,
        )

    def _init_session_backend(self) -> SessionBackend:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                backend = RedisSessionStore(self.settings.redis_url)
                backend.verify_connection()
                return backend
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
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
        return MemorySessionStore()

    def session_handle(self, session_id: Optional[str] = None) -> SessionHandle:
        return SessionHandle(
            self.sessions,
            session_id,
            ttl_minutes=self.settings.session_ttl_minutes,
        )

    async def close(self) -> None:
        if isinstance(self.sessions, RedisSessionStore):
            await self.sessions.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


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


def reset_runtime_for_tests(
    *, oauth_transport: Optional[httpx.AsyncBaseTransport] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.sessions, RedisSessionStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, oauth_transport=oauth_transport)
        return runtime
