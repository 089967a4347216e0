from __future__ import annotations

import hashlib
import math
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol, Union

from gatekeep.logging import get_logger, log_security_event
from gatekeep.service.clock import Clock, utcnow
from gatekeep.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def revocation_key(token: str) -> str:
    """Derive the storage key for a token; raw bearer strings are never stored."""
    return hashlib.sha256(token.encode()).hexdigest()


def _ttl_seconds(ttl: Union[int, float, timedelta]) -> int:
    if isinstance(ttl, timedelta):
        ttl = ttl.total_seconds()
    # Round up so an entry never expires before the token it shadows
    return max(0, math.ceil(ttl))


class RevocationStore(Protocol):
    """``add`` returns True only for the call that created the entry."""

    async def add(self, token: str, ttl: Union[int, float, timedelta]) -> bool: ...

    async def is_revoked(self, token: str) -> bool: ...


class RedisRevocationStore:
    """Revocation set shared by every process through Redis."""

    def __init__(self, cache: Union[RedisCache, SyncRedisCache]) -> None:
        self.cache = cache

    async def add(self, token: str, ttl: Union[int, float, timedelta]) -> bool:
        seconds = _ttl_seconds(ttl)
        if seconds <= 0:
            return False
        return await self.cache.mark_token_revoked(revocation_key(token), seconds)

    async def is_revoked(self, token: str) -> bool:
        return await self.cache.is_token_revoked(revocation_key(token))


class LocalRevocationStore:
    """Process-local revocation map.

    Expiry is checked when an entry is read, and stale entries are purged
    opportunistically on writes. Revocations recorded here are NOT visible to
    other server processes.
    """

    def __init__(self, clock: Optional[Clock] = None, *, purge_interval: int = 300) -> None:
        self._clock = clock or utcnow
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._purge_interval = timedelta(seconds=purge_interval)
        self._last_purge = self._clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def add(self, token: str, ttl: Union[int, float, timedelta]) -> bool:
        seconds = _ttl_seconds(ttl)
        if seconds <= 0:
            return False
        now = self._clock()
        expires_at = now + timedelta(seconds=seconds)
        key = revocation_key(token)
        with self._lock:
            current = self._entries.get(key)
            created = current is None or current <= now
            # Entries are never shortened
            if current is None or current < expires_at:
                self._entries[key] = expires_at
        self.maybe_purge()
        return created

    async def is_revoked(self, token: str) -> bool:
        key = revocation_key(token)
        now = self._clock()
        with self._lock:
            expires_at = self._entries.get(key)
            if expires_at is None:
                return False
            if expires_at <= now:
                self._entries.pop(key, None)
                return False
            return True

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
            for key in expired:
                self._entries.pop(key, None)
            self._last_purge = now
        if expired:
            logger.debug("revocation_local_purged", purged=len(expired))
        return len(expired)

    def maybe_purge(self) -> int:
        if self._clock() - self._last_purge >= self._purge_interval:
            return self.purge_expired()
        return 0


class FallbackRevocationStore:
    """Primary distributed store with a process-local fallback.

    Writes go to the primary; when it is unreachable they land in the local
    store instead, which only protects this process until the primary
    returns. Reads consult the primary and then the local store.
    """

    def __init__(
        self,
        primary: Optional[RevocationStore],
        local: Optional[LocalRevocationStore] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.primary = primary
        self.local = local if local is not None else LocalRevocationStore(clock)

    async def add(self, token: str, ttl: Union[int, float, timedelta]) -> bool:
        if _ttl_seconds(ttl) <= 0:
            return False
        if self.primary is not None:
            try:
                return await self.primary.add(token, ttl)
            except Exception as exc:
                log_security_event(
                    "revocation_primary_unavailable",
                    action="add",
                    fallback="local",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return await self.local.add(token, ttl)

    async def is_revoked(self, token: str) -> bool:
        if self.primary is not None:
            try:
                if await self.primary.is_revoked(token):
                    return True
            except Exception as exc:
                logger.warning(
                    "revocation_primary_read_failed",
                    fallback="local",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return await self.local.is_revoked(token)
