from typing import Optional, Any, Union
from datetime import timedelta
import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError


class RedisClient:
    """
    Async Redis client for JSON documents kept as a short-lived read cache.

    Values are always written with ``json.dumps`` and read back with
    ``json.loads``; a value that fails to decode is treated as a miss.
    Connection errors surface as ``RedisError`` so callers decide whether a
    cache outage matters.
    """

    def __init__(self, logger: logging.Logger, host: str = "localhost", port: int = 6379, password: Optional[str] = None):
        self.logger = logger
        self.host = host
        self.port = port
        self.password = password
        self._pool: Optional[aioredis.ConnectionPool] = None
        self._client: Optional[aioredis.Redis] = None

    def _redis(self) -> aioredis.Redis:
        if self._client is None:
            self._pool = aioredis.ConnectionPool(
                host=self.host,
                port=self.port,
                password=self.password,
                decode_responses=True,
                max_connections=20,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
            self._client = aioredis.Redis(connection_pool=self._pool)
        return self._client

    async def ping(self) -> bool:
        try:
            return bool(await self._redis().ping())
        except RedisError as e:
            self.logger.error(f"Redis ping failed at {self.host}:{self.port}: {e}")
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
            self.logger.info("Redis connection pool closed")

    async def get_json(self, key: str) -> Any:
        """Decoded document at ``key``, or None on a miss."""
        raw = await self._redis().get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            self.logger.warning(f"Dropping undecodable cache entry {key}")
            return None

    async def set_json(self, key: str, value: Any, ttl: Optional[Union[int, timedelta]] = None) -> bool:
        payload = json.dumps(value, default=str)
        if isinstance(ttl, timedelta):
            ttl = int(ttl.total_seconds())
        if ttl:
            return bool(await self._redis().setex(key, ttl, payload))
        return bool(await self._redis().set(key, payload))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._redis().delete(*keys)
