from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sessionguard.config import Settings, get_settings
from sessionguard.logging import get_logger
from sessionguard.service.attempts import FailedAttemptTracker
from sessionguard.service.auth import AuthService
from sessionguard.service.devices import DeviceRegistry
from sessionguard.service.email import EmailService
from sessionguard.service.profile_cache import ProfileCache
from sessionguard.service.refresh_tokens import RefreshTokenStore
from sessionguard.service.sessions import SessionStore
from sessionguard.service.tokens import TokenCodec
from sessionguard.storage.kv import KeyValueStore
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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
    """Composition root: owns the store clients and wires every service.

    Nothing here is global. The application builds one ``Runtime`` at
    startup, hands ``runtime.auth`` to its request handlers and awaits
    ``close()`` on shutdown. Tests pass their own ``kv`` and ``store``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        kv: Optional[KeyValueStore] = None,
        store: Union[MemoryStore, PostgresStore, None] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is None:
            store_type = "memory" if self.settings.use_memory_store else "postgres"
            try:
                store = (
                    MemoryStore(fs_root=self.settings.shared_fs_root)
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
        self.store = store

        # The client connects lazily; an unreachable store is tolerated here
        self.kv = kv or KeyValueStore.from_url(
            self.settings.redis_url,
            connect_timeout=self.settings.redis_connect_timeout,
            command_timeout=self.settings.redis_command_timeout,
        )

        self.email = email or EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.frontend_url,
            reset_token_ttl=self.settings.reset_token_ttl,
        )

        self.attempts = FailedAttemptTracker(
            self.kv, lockout_seconds=self.settings.lockout_time
        )
        self.sessions = SessionStore(
            self.kv,
            ttl_seconds=self.settings.session_timeout,
            refresh_throttle_seconds=self.settings.session_refresh_throttle,
        )
        self.refresh_tokens = RefreshTokenStore(
            self.kv, ttl_seconds=self.settings.refresh_token_expire
        )
        self.devices = DeviceRegistry(max_devices=self.settings.max_devices)
        self.tokens = TokenCodec(
            self.settings, clock_skew_leeway=self.settings.jwt_clock_skew_seconds
        )
        self.profiles = ProfileCache(self.kv, ttl_seconds=self.settings.user_cache_ttl)
        self.auth = AuthService(
            self.store,
            self.kv,
            self.settings,
            attempts=self.attempts,
            sessions=self.sessions,
            refresh_tokens=self.refresh_tokens,
            devices=self.devices,
            tokens=self.tokens,
            profiles=self.profiles,
            email=self.email,
        )

        logger.info(
            "runtime_initialized",
            redis_url=_mask_url_password(self.settings.redis_url),
            email_configured=self.email.is_configured,
        )

    async def startup(self) -> bool:
        """Probe the fast store once; a failure is logged, not raised."""
        ready = await self.kv.ensure_connection()
        if not ready:
            logger.warning(
                "runtime_kv_unreachable_at_startup",
                redis_url=_mask_url_password(self.settings.redis_url),
            )
        return ready

    async def close(self) -> None:
        await self.kv.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


__all__ = ["Runtime"]
