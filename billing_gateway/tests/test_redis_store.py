"""
Unit tests for the Redis counter store.
"""

import pytest
from unittest.mock import AsyncMock, patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from billing_gateway.app.ratelimit.redis_store import INCREMENT_SCRIPT, RedisCounterStore
from shared.errors import StoreUnavailableError

START = 1_700_000_000.0
START_MS = 1_700_000_000_000


class TestRedisCounterStore:
    """Test cases for RedisCounterStore."""

    @pytest.fixture
    def mock_redis(self):
        """Mock redis.asyncio client."""
        return AsyncMock()

    @pytest.fixture
    def redis_store(self, mock_redis):
        """Create RedisCounterStore instance around the mock client."""
        return RedisCounterStore("redis://localhost:6379/0", timeout=0.2, client=mock_redis)

    @pytest.mark.asyncio
    async def test_increment_many_single_round_trip(self, redis_store, mock_redis):
        """All keys of one check go to Redis in one script call."""
        mock_redis.eval.return_value = [3, START_MS - 5000, 1, START_MS]

        snapshots = await redis_store.increment_many(
            [("ratelimit:{k1}:/v1/customers:60s", 60), ("ratelimit:{k1}:/v1/customers:3600s", 3600)],
            START
        )

        mock_redis.eval.assert_awaited_once_with(
            INCREMENT_SCRIPT, 2,
            "ratelimit:{k1}:/v1/customers:60s", "ratelimit:{k1}:/v1/customers:3600s",
            START_MS, 60_000, 3_600_000
        )
        assert snapshots[0].count == 3
        assert snapshots[0].window_start == pytest.approx(START - 5)
        assert snapshots[1].count == 1
        assert snapshots[1].window_start == pytest.approx(START)

    @pytest.mark.asyncio
    async def test_increment_single_key(self, redis_store, mock_redis):
        """Single increments use the same atomic script."""
        mock_redis.eval.return_value = [1, START_MS]

        snapshot = await redis_store.increment("ratelimit:{k1}:/v1/stats:60s", 60, START)

        assert snapshot.count == 1
        assert mock_redis.eval.await_args.args[0] == INCREMENT_SCRIPT

    @pytest.mark.asyncio
    async def test_increment_many_empty(self, redis_store, mock_redis):
        """No keys means no Redis call."""
        assert await redis_store.increment_many([], START) == []
        mock_redis.eval.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        RedisConnectionError("Connection refused"),
        RedisTimeoutError("Timeout reading from socket"),
        OSError("Network unreachable"),
    ])
    async def test_backend_errors_raise_store_unavailable(self, redis_store, mock_redis, error):
        """Connection failures surface as StoreUnavailableError, never a decision."""
        mock_redis.eval.side_effect = error

        with pytest.raises(StoreUnavailableError) as exc_info:
            await redis_store.increment("ratelimit:{k1}:/v1/stats:60s", 60, START)

        assert exc_info.value.backend == "redis"
        assert exc_info.value.code == "STORE_UNAVAILABLE"
        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_connection_setup_error(self):
        """A failing connection factory is also reported as unavailable."""
        redis_store = RedisCounterStore("redis://localhost:6379/0")

        with patch.object(redis_store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_get_redis.side_effect = RedisConnectionError("Redis connection failed")

            with pytest.raises(StoreUnavailableError):
                await redis_store.increment("k", 60, START)

    @pytest.mark.asyncio
    async def test_peek_live_window(self, redis_store, mock_redis):
        """Peek decodes the stored hash without incrementing."""
        mock_redis.hmget.return_value = [b"7", str(START_MS).encode()]

        snapshot = await redis_store.peek("k", 60, START + 10)

        mock_redis.hmget.assert_awaited_once_with("k", "count", "start")
        mock_redis.eval.assert_not_awaited()
        assert snapshot.count == 7
        assert snapshot.window_start == pytest.approx(START)

    @pytest.mark.asyncio
    async def test_peek_missing_or_elapsed(self, redis_store, mock_redis):
        """Missing keys and elapsed windows read as no counter."""
        mock_redis.hmget.return_value = [None, None]
        assert await redis_store.peek("k", 60, START) is None

        mock_redis.hmget.return_value = [b"7", str(START_MS).encode()]
        assert await redis_store.peek("k", 60, START + 60) is None

    @pytest.mark.asyncio
    async def test_reset_deletes_key(self, redis_store, mock_redis):
        """Reset removes the counter hash."""
        await redis_store.reset("k")

        mock_redis.delete.assert_awaited_once_with("k")

    @pytest.mark.asyncio
    async def test_ping(self, redis_store, mock_redis):
        """Ping reports reachability without raising."""
        mock_redis.ping.return_value = True
        assert await redis_store.ping() is True

        mock_redis.ping.side_effect = RedisConnectionError("down")
        assert await redis_store.ping() is False

    @pytest.mark.asyncio
    async def test_close(self, redis_store, mock_redis):
        """Close releases the client."""
        await redis_store.close()

        mock_redis.aclose.assert_awaited_once()
        assert redis_store._redis is None

    @pytest.mark.asyncio
    async def test_lazy_client_uses_timeouts(self):
        """The client is created on first use with bounded socket timeouts."""
        redis_store = RedisCounterStore("redis://cache:6379/1", timeout=0.15)

        with patch("billing_gateway.app.ratelimit.redis_store.redis.from_url") as from_url:
            client = await redis_store._get_redis()

        from_url.assert_called_once_with(
            "redis://cache:6379/1", socket_timeout=0.15, socket_connect_timeout=0.15
        )
        assert client is from_url.return_value

    def test_script_only_sets_expiry_on_new_window(self):
        """The script expires keys only where it opens a window."""
        new_window = INCREMENT_SCRIPT.index("if start == nil or now >= start + window then")
        expire = INCREMENT_SCRIPT.index("PEXPIRE")
        incr = INCREMENT_SCRIPT.index("HINCRBY")

        assert new_window < expire < incr
