from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for OAuth state and the access-token denylist."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _state_key(state: str) -> str:
        return f"auth:state:{state}"

    @staticmethod
    def _denylist_key(jti: str) -> str:
        return f"auth:blacklist:{jti}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def store_oauth_state(self, state: str, payload: str, ttl_seconds: int) -> None:
        await self.client.set(self._state_key(state), payload, ex=ttl_seconds)

    async def consume_oauth_state(self, state: str) -> Optional[str]:
        """Read and delete in one round trip so a state is redeemed at most once."""
        return await self.client.getdel(self._state_key(state))

    async def oauth_state_exists(self, state: str) -> bool:
        return bool(await self.client.exists(self._state_key(state)))

    async def delete_oauth_state(self, state: str) -> None:
        await self.client.delete(self._state_key(state))

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Add an access token id with a TTL matching its remaining lifetime."""
        if ttl_seconds > 0:
            await self.client.set(self._denylist_key(jti), "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(self._denylist_key(jti)))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class _SyncClientAdapter:
    """Adapter that wraps a sync Redis client with async method signatures."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def getdel(self, key: str) -> Optional[str]:
        return self._sync.getdel(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    async def ping(self) -> bool:
        return self._sync.ping()

    async def aclose(self) -> None:
        self._sync.close()


class SyncRedisCache(RedisCache):
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest while keeping the awaitable surface of ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    def close_sync(self) -> None:
        self._sync_client.close()
