from typing import Any, Dict, List, Optional
import logging

import redis.asyncio as aioredis
from redis.commands.core import AsyncScript
from redis.exceptions import RedisError


class RedisClient:
    """
    Async Redis client with a shared connection pool, lock extension and
    Lua script registration.
    """

    # Atomic check-and-extend so only the owner can keep its lock alive
    EXTEND_LOCK_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("pexpire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    def __init__(self, logger: logging.Logger, url: str = "redis://localhost:6379/0", max_connections: int = 20):
        self.logger = logger
        self.url = url
        self.max_connections = max_connections
        self._pool: Optional[aioredis.ConnectionPool] = None
        self._redis: Optional[aioredis.Redis] = None
        self._scripts: Dict[str, AsyncScript] = {}

    async def connect(self) -> None:
        """Create the connection pool and verify the server answers."""
        try:
            self._pool = aioredis.ConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
                retry_on_timeout=True,
            )
            self._redis = aioredis.Redis(connection_pool=self._pool)
            await self._redis.ping()
            self.logger.info("Connected to Redis successfully")
        except RedisError as e:
            self.logger.error(f"Failed to connect to Redis: {str(e)}")
            await self.close()
            raise

    @property
    def client(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not connected; call connect() first")
        return self._redis

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            self.logger.warning(f"Redis ping failed: {str(e)}")
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
            self.logger.info("Redis connection pool closed")

    # Scripts
    def script(self, name: str, source: str) -> AsyncScript:
        """Register (once) and return a Lua script callable as ``await script(keys=..., args=...)``."""
        if name not in self._scripts:
            self._scripts[name] = self.client.register_script(source)
        return self._scripts[name]

    async def run_script(self, name: str, source: str, keys: List[str], args: List[Any]) -> Any:
        return await self.script(name, source)(keys=keys, args=args)

    # Locks
    async def extend_lock(self, lock_key: str, lock_id: str, ttl_ms: int) -> bool:
        result = await self.run_script("extend_lock", self.EXTEND_LOCK_SCRIPT, [lock_key], [lock_id, ttl_ms])
        return result == 1

