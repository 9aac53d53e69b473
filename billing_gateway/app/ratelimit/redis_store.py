"""
Redis counter store for multi-instance deployments.
"""

import asyncio
from typing import List, Optional, Sequence, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StoreUnavailableError
from shared.logging import get_logger

from .models import CounterSnapshot
from .store import CounterStore


# KEYS: counter keys. ARGV[1]: now in ms, ARGV[i + 1]: window in ms for KEYS[i].
# Returns a flat array of {count, window_start_ms} pairs in key order.
INCREMENT_SCRIPT = """
local now = tonumber(ARGV[1])
local result = {}
for i, key in ipairs(KEYS) do
  local window = tonumber(ARGV[i + 1])
  local start = tonumber(redis.call('HGET', key, 'start'))
  local count
  if start == nil or now >= start + window then
    start = now
    count = 1
    redis.call('HSET', key, 'count', 1, 'start', start)
    redis.call('PEXPIRE', key, window)
  else
    count = redis.call('HINCRBY', key, 'count', 1)
  end
  result[#result + 1] = count
  result[#result + 1] = start
end
return result
"""


def _to_ms(seconds: float) -> int:
    return int(round(seconds * 1000))


def _decode(value) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisCounterStore(CounterStore):
    """Counter store backed by one atomic Lua script per admission check.

    The script initialises a key and sets its expiry only when the key is new
    or its window has elapsed, so exactly one caller opens each window even
    with many gateway instances sharing the server.
    """

    backend = "redis"

    def __init__(self, redis_url: str, timeout: float = 0.2, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.timeout = timeout
        self.logger = get_logger("gateway.redis_counter_store")
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout,
            )
        return self._redis

    def _unavailable(self, operation: str, error: Exception) -> StoreUnavailableError:
        self.logger.error("Counter store operation failed", operation=operation, error=str(error))
        return StoreUnavailableError(self.backend, str(error) or type(error).__name__,
                                     details={"operation": operation})

    async def increment_many(self, requests: Sequence[Tuple[str, float]], now: float) -> List[CounterSnapshot]:
        if not requests:
            return []
        keys = [key for key, _ in requests]
        args = [_to_ms(now)] + [_to_ms(window) for _, window in requests]

        try:
            client = await self._get_redis()
            raw = await client.eval(INCREMENT_SCRIPT, len(keys), *keys, *args)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise self._unavailable("increment", e) from e

        return [
            CounterSnapshot(count=int(raw[i]), window_start=int(raw[i + 1]) / 1000.0)
            for i in range(0, len(raw), 2)
        ]

    async def increment(self, key: str, window: float, now: float) -> CounterSnapshot:
        snapshots = await self.increment_many([(key, window)], now)
        return snapshots[0]

    async def peek(self, key: str, window: float, now: float) -> Optional[CounterSnapshot]:
        try:
            client = await self._get_redis()
            count, start = await client.hmget(key, "count", "start")
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise self._unavailable("peek", e) from e

        count, start = _decode(count), _decode(start)
        if count is None or start is None:
            return None
        window_start = int(start) / 1000.0
        if now >= window_start + window:
            return None
        return CounterSnapshot(count=int(count), window_start=window_start)

    async def reset(self, key: str) -> None:
        try:
            client = await self._get_redis()
            await client.delete(key)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise self._unavailable("reset", e) from e

    async def ping(self) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.ping())
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            self.logger.warning("Counter store ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
