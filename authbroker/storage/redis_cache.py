from __future__ import annotations

import json
import math
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError

from authbroker.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "authbroker:"

# GETDEL needs Redis 6.2+; older servers answer "unknown command"
_POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""


def _ttl(ttl_seconds: float) -> int:
    """Redis rejects zero or negative expiries; round up and clamp to one second."""
    return max(1, math.ceil(ttl_seconds))


def _decode(key: str, raw: Optional[str]) -> Optional[dict]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("redis_cache_corrupt_entry", key=key)
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Keyed TTL store for short-lived login artifacts (PKCE contexts, state tokens).

    Every value is a JSON object stored under ``authbroker:<key>`` with a
    server-side expiry, so all replicas behind a load balancer see the same
    entries and single-use pops are atomic across them.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._pop_script = self.client.register_script(_POP_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_json(self, key: str, payload: dict, ttl_seconds: float) -> None:
        await self.client.set(KEY_PREFIX + key, json.dumps(payload), ex=_ttl(ttl_seconds))

    async def pop_json(self, key: str) -> Optional[dict]:
        """Atomically get and delete ``key``.

        Two concurrent pops of the same key can never both observe the value,
        which is what makes state tokens and PKCE contexts single-use.
        """
        full_key = KEY_PREFIX + key
        try:
            raw = await self.client.getdel(full_key)
        except ResponseError:
            raw = await self._pop_script(keys=[full_key])
        return _decode(key, raw)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest and TestClient, but exposes the same async surface as
    ``RedisCache`` so callers await it uniformly.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._pop_script = self._sync_client.register_script(_POP_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def set_json(self, key: str, payload: dict, ttl_seconds: float) -> None:
        self._sync_client.set(KEY_PREFIX + key, json.dumps(payload), ex=_ttl(ttl_seconds))

    async def pop_json(self, key: str) -> Optional[dict]:
        full_key = KEY_PREFIX + key
        try:
            raw = self._sync_client.getdel(full_key)
        except ResponseError:
            raw = self._pop_script(keys=[full_key])
        return _decode(key, raw)

    async def close(self) -> None:
        self._sync_client.close()
