from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from gatekeep.config import get_settings, reset_settings_cache
from gatekeep.logging import get_logger
from gatekeep.service.lockout import LockoutPolicy
from gatekeep.service.notifications import EmailService
from gatekeep.service.passwords import CredentialVerifier
from gatekeep.service.revocation import (
    FallbackRevocationStore,
    LocalRevocationStore,
    RedisRevocationStore,
)
from gatekeep.service.session import SessionOrchestrator
from gatekeep.service.tokens import TokenService
from gatekeep.service.two_factor import TwoFactorEngine
from gatekeep.storage.memory import MemoryStore
from gatekeep.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        user = parsed.username or ""
        netloc = f"{user}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the wired service instances for one process."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore(mfa_encryption_key=self.settings.mfa_encryption_key)

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a closed event loop
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
                    "Redis is required for shared token revocation; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; token revocation "
                    "is per-process only."
                ),
                mode=fallback_mode,
            )

        self.revocation = FallbackRevocationStore(
            RedisRevocationStore(self.cache) if self.cache else None,
            LocalRevocationStore(),
        )
        self.credentials = CredentialVerifier(self.store)
        self.lockout = LockoutPolicy(
            self.store, max_attempts=self.settings.max_login_attempts
        )
        self.tokens = TokenService(self.settings)
        self.notifier = EmailService.from_settings(self.settings)
        self.two_factor = TwoFactorEngine(
            self.store,
            notifier=self.notifier,
            issuer=self.settings.totp_issuer,
            window=self.settings.totp_window,
            max_attempts=self.settings.mfa_max_attempts,
            lockout_minutes=self.settings.mfa_lockout_minutes,
            email_code_ttl_minutes=self.settings.email_code_ttl_minutes,
            backup_code_count=self.settings.backup_code_count,
        )
        self.orchestrator = SessionOrchestrator(
            self.store,
            credentials=self.credentials,
            lockout=self.lockout,
            tokens=self.tokens,
            revocation=self.revocation,
            two_factor=self.two_factor,
        )
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once built.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: Union[RedisCache, SyncRedisCache]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
