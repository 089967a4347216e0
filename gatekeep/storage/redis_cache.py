from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the shared token revocation set."""

    REVOKED_PREFIX = "auth:revoked:"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @classmethod
    def _revoked_key(cls, token_key: str) -> str:
        return f"{cls.REVOKED_PREFIX}{token_key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def mark_token_revoked(self, token_key: str, ttl_seconds: int) -> bool:
        """Atomic SET NX with TTL; True only when this call created the key.

        An existing key is left alone: it was written for the same token, so
        its TTL already reaches the token's expiry.
        """
        if ttl_seconds <= 0:
            return False
        created = await self.client.set(
            self._revoked_key(token_key), "1", ex=ttl_seconds, nx=True
        )
        return bool(created)

    async def is_token_revoked(self, token_key: str) -> bool:
        return bool(await self.client.exists(self._revoked_key(token_key)))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper exposing the same awaitable interface.

    Used under TEST_MODE so a sync client can be shared across the
    ``asyncio.run`` loops pytest creates per test.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def mark_token_revoked(self, token_key: str, ttl_seconds: int) -> bool:
        if ttl_seconds <= 0:
            return False
        created = self.client.set(
            RedisCache._revoked_key(token_key), "1", ex=ttl_seconds, nx=True
        )
        return bool(created)

    async def is_token_revoked(self, token_key: str) -> bool:
        return bool(self.client.exists(RedisCache._revoked_key(token_key)))

    async def close(self) -> None:
        self.client.close()
