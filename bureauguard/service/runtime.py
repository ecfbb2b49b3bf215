from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from bureauguard.config import ReplayGuardBackend, Settings, get_settings, reset_settings_cache
from bureauguard.logging import get_logger
from bureauguard.service.auth import CredentialStore, LoginService
from bureauguard.service.rate_limit import LoginRateLimitService, RateLimitStore
from bureauguard.service.tokens import ReplayGuard, TokenService
from bureauguard.storage.flatfile import FileReplayGuard
from bureauguard.storage.memory import (
    MemoryCredentialStore,
    MemoryRateLimitStore,
    MemoryReplayGuard,
)
from bureauguard.storage.postgres import (
    PostgresCredentialStore,
    PostgresRateLimitStore,
    PostgresReplayGuard,
    create_pool,
)
from bureauguard.storage.redis_cache import RedisReplayGuard

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
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton store and service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.pool = None
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            replay_guard_backend=self.settings.replay_guard_backend.value,
            test_mode=self.settings.test_mode,
        )

        self.rate_limit_store: RateLimitStore
        self.credentials: CredentialStore
        if self.settings.use_memory_store:
            self.rate_limit_store = MemoryRateLimitStore()
            self.credentials = MemoryCredentialStore()
        else:
            try:
                self.pool = create_pool(self.settings.database_url)
                self.rate_limit_store = PostgresRateLimitStore(self.pool)
                self.credentials = PostgresCredentialStore(self.pool)
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="postgres",
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                self.close()
                raise
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
        )

        try:
            self.replay_guard: ReplayGuard = self._build_replay_guard()
        except Exception as exc:
            logger.error(
                "replay_guard_init_failed",
                backend=self.settings.replay_guard_backend.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.close()
            raise

        self.rate_limiter = LoginRateLimitService(
            self.rate_limit_store,
            window_minutes=self.settings.rate_limit_window_minutes,
            block_minutes=self.settings.rate_limit_block_minutes,
            account_threshold=self.settings.account_failure_threshold,
            origin_threshold=self.settings.origin_failure_threshold,
        )
        self.tokens = TokenService(self.settings, self.replay_guard)
        self.login = LoginService(
            self.credentials,
            self.rate_limiter,
            self.tokens,
            reveal_blocks=self.settings.reveal_login_blocks,
        )

    def _build_replay_guard(self) -> ReplayGuard:
        backend = self.settings.replay_guard_backend
        if backend == ReplayGuardBackend.FILE:
            return FileReplayGuard(self.settings.replay_guard_file)
        if backend == ReplayGuardBackend.REDIS:
            if not self.settings.redis_url:
                raise RuntimeError("REDIS_URL is required when REPLAY_GUARD_BACKEND=redis")
            guard = RedisReplayGuard(self.settings.redis_url)
            guard.verify_connection()
            logger.info(
                "replay_guard_redis_connected",
                redis_url=_mask_url_password(self.settings.redis_url),
            )
            return guard
        if self.pool is None:
            return MemoryReplayGuard()
        return PostgresReplayGuard(self.pool)

    def close(self) -> None:
        guard = getattr(self, "replay_guard", None)
        if isinstance(guard, RedisReplayGuard):
            guard.close()
        if self.pool is not None:
            self.pool.close()
            self.pool = None


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
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
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
