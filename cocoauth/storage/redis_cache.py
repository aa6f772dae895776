from __future__ import annotations

import hmac
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from cocoauth.storage.common import email_code_key, session_key
from cocoauth.storage.models import ClientType


class RedisCache:
    """Thin Redis connection wrapper shared by the session and code stores."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic compare-and-set used for refresh token rotation
    _ROTATE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and current == ARGV[1] then
  redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
  return 1
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.rotate_script = self.client.register_script(self._ROTATE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class RedisSessionStore:
    """Refresh-token session records, one key per (client type, user id)."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def put(
        self, client_type: ClientType, user_id: str, token: str, ttl_seconds: int
    ) -> None:
        await self.cache.client.set(
            session_key(client_type, user_id), token, ex=max(1, int(ttl_seconds))
        )

    async def get(self, client_type: ClientType, user_id: str) -> Optional[str]:
        return await self.cache.client.get(session_key(client_type, user_id))

    async def delete(self, client_type: ClientType, user_id: str) -> None:
        await self.cache.client.delete(session_key(client_type, user_id))

    async def matches(self, client_type: ClientType, user_id: str, token: str) -> bool:
        stored = await self.get(client_type, user_id)
        if stored is None:
            return False
        return hmac.compare_digest(stored.encode(), token.encode())

    async def rotate(
        self,
        client_type: ClientType,
        user_id: str,
        expected: str,
        new_token: str,
        ttl_seconds: int,
    ) -> bool:
        swapped = await self.cache.rotate_script(
            keys=[session_key(client_type, user_id)],
            args=[expected, new_token, max(1, int(ttl_seconds))],
        )
        return bool(int(swapped))


class RedisVerificationCodeStore:
    """Email verification codes; the newest code per email wins."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def put(self, email: str, code: str, ttl_seconds: int) -> None:
        await self.cache.client.set(email_code_key(email), code, ex=max(1, int(ttl_seconds)))

    async def get(self, email: str) -> Optional[str]:
        return await self.cache.client.get(email_code_key(email))
