from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionguard.clock import Clock, SystemClock
from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.codec import HmacSigner, TokenCodec
from sessionguard.service.manager import AuthSessionManager
from sessionguard.storage.memory import MemoryAccessTokenBlacklist, MemorySessionStore
from sessionguard.storage.redis_store import RedisAccessTokenBlacklist, RedisSessionStore

logger = get_logger(__name__)


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
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the wired codec, stores and manager for one process."""

    def __init__(
        self, settings: Optional[Settings] = None, *, clock: Optional[Clock] = None
    ) -> None:
        self.settings = settings or get_settings()
        self.clock: Clock = clock or SystemClock()
        access_ttl = timedelta(seconds=self.settings.access_token_ttl_seconds)
        refresh_ttl = timedelta(seconds=self.settings.refresh_token_ttl_seconds)
        grace = timedelta(seconds=self.settings.session_tombstone_grace_seconds)

        self.codec = TokenCodec(
            HmacSigner(self.settings.jwt_secret, self.settings.jwt_algorithm.value),
            clock=self.clock,
            leeway=timedelta(seconds=self.settings.clock_skew_leeway_seconds),
        )
        self.store_type = "memory"
        self.sessions, self.blacklist = self._build_stores(refresh_ttl, grace)
        self.manager = AuthSessionManager(
            self.codec,
            self.sessions,
            self.blacklist,
            access_ttl=access_ttl,
            refresh_ttl=refresh_ttl,
            clock=self.clock,
            revoke_family_on_reuse=self.settings.revoke_family_on_reuse,
            logout_scope=self.settings.logout_scope,
            tombstone_grace=grace,
            cleanup_interval=timedelta(seconds=self.settings.cleanup_interval_seconds),
        )
        logger.info(
            "runtime_initialized",
            store_type=self.store_type,
            algorithm=self.codec.algorithm,
            logout_scope=self.settings.logout_scope.value,
            test_mode=self.settings.test_mode,
        )

    def _build_stores(self, refresh_ttl: timedelta, grace: timedelta):
        if not self.settings.use_memory_store:
            redis_error: Exception | None = None
            if self.settings.redis_url:
                try:
                    sessions = RedisSessionStore.from_url(
                        self.settings.redis_url,
                        refresh_ttl,
                        clock=self.clock,
                        tombstone_grace=grace,
                    )
                    sessions.client.ping()
                    blacklist = RedisAccessTokenBlacklist(sessions.client, clock=self.clock)
                    self.store_type = "redis"
                    return sessions, blacklist
                except Exception as exc:
                    redis_error = exc
            if not self.settings.test_mode:
                raise RuntimeError(
                    "Redis is required when USE_MEMORY_STORE=false; start Redis "
                    "or set TEST_MODE=true for the in-memory fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
            )
        return (
            MemorySessionStore(refresh_ttl, clock=self.clock),
            MemoryAccessTokenBlacklist(clock=self.clock),
        )

    def close(self) -> None:
        client = getattr(self.sessions, "client", None)
        if client is not None:
            client.close()


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


def get_manager() -> AuthSessionManager:
    return get_runtime().manager


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.debug("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
