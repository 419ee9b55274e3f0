from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from admauth.config import get_settings, reset_settings_cache
from admauth.logging import get_logger
from admauth.service.accounts import AccountService
from admauth.service.auth import AuthService
from admauth.service.broadcast import ForceLogoutBroadcaster
from admauth.service.lockout import LockoutPolicy
from admauth.service.passwords import PasswordManager
from admauth.service.permissions import AuthorizationResolver
from admauth.service.sessions import SessionRegistry
from admauth.service.tokens import CredentialTokenCodec
from admauth.service.two_factor import TwoFactorEngine
from admauth.storage.memory import MemoryStore
from admauth.storage.postgres import PostgresStore
from admauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

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
            return urlunparse(
                (
                    parsed.scheme,
                    netloc,
                    parsed.path,
                    parsed.params,
                    parsed.query,
                    parsed.fragment,
                )
            )
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

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_secret_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_secret_key,
                )
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
                # Sync client in test mode so connections are not bound to
                # TestClient's short-lived event loops
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
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for revocation markers, 2FA challenges and force-logout "
                    "fan-out; start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true "
                    "for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; pending 2FA challenges and "
                    "force-logout events stay in this process."
                ),
                mode=fallback_mode,
            )

        self.passwords = PasswordManager()
        self.lockout = LockoutPolicy(
            self.settings.lockout_threshold, self.settings.lockout_window_seconds
        )
        self.resolver = AuthorizationResolver(self.settings.simulation_header)
        self.tokens = CredentialTokenCodec(self.settings)
        self.broadcaster = ForceLogoutBroadcaster(cache=self.cache)
        self.sessions = SessionRegistry(
            self.store,
            self.tokens,
            self.broadcaster,
            self.settings,
            cache=self.cache,
        )
        self.two_factor = TwoFactorEngine(self.store, self.settings, self.passwords)
        self.auth = AuthService(
            self.store,
            self.settings,
            sessions=self.sessions,
            two_factor=self.two_factor,
            passwords=self.passwords,
            lockout=self.lockout,
            tokens=self.tokens,
            cache=self.cache,
        )
        self.accounts = AccountService(
            self.store, self.passwords, self.resolver, self.sessions
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            lockout_threshold=self.lockout.threshold,
            session_cap_policy=self.settings.session_cap_policy.value,
        )

    def set_clock(self, clock: Callable[[], datetime]) -> None:
        """Point every time-dependent service at ``clock``."""
        self.sessions.clock = clock
        self.two_factor.clock = clock
        self.auth.clock = clock

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists, the slow path re-checks under the lock before creating it.
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
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            else:
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
