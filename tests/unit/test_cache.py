"""两级缓存的单元测试"""

import json

import pytest
from unittest.mock import AsyncMock
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from correcte.services.cache import CacheConfig, TwoTierCache


@pytest.fixture
def mock_redis():
    """创建 Mock Redis 客户端"""
    redis_mock = AsyncMock()
    redis_mock.get.return_value = None
    redis_mock.set.return_value = True
    return redis_mock


@pytest.fixture
def local_cache(clock):
    return TwoTierCache(config=CacheConfig(local_max_entries=3, fallback_retry_interval=30.0), clock=clock)


@pytest.fixture
def remote_cache(mock_redis, clock):
    return TwoTierCache(redis_client=mock_redis, config=CacheConfig(fallback_retry_interval=30.0), clock=clock)


class TestLocalTier:
    """测试纯本地缓存"""

    @pytest.mark.asyncio
    async def test_set_then_get(self, local_cache):
        assert await local_cache.set("k", {"text": "Bonjour"}, 60) is False
        assert await local_cache.get("k") == {"text": "Bonjour"}
        assert not local_cache.has_remote

    @pytest.mark.asyncio
    async def test_entry_expires(self, local_cache, clock):
        await local_cache.set("k", "v", 60)
        clock.advance(61)
        assert await local_cache.get("k") is None

    @pytest.mark.asyncio
    async def test_lru_eviction(self, local_cache):
        for key in ("a", "b", "c"):
            await local_cache.set(key, key, 60)
        await local_cache.get("a")
        await local_cache.set("d", "d", 60)

        assert await local_cache.get("b") is None
        assert await local_cache.get("a") == "a"
        assert local_cache.stats.evictions == 1

    @pytest.mark.asyncio
    async def test_none_is_not_stored(self, local_cache):
        await local_cache.set("k", None, 60)
        assert await local_cache.get("k") is None

    @pytest.mark.asyncio
    async def test_add_only_when_absent(self, local_cache):
        assert await local_cache.add("once", 1, 60)
        assert not await local_cache.add("once", 2, 60)
        assert await local_cache.get("once") == 1

    @pytest.mark.asyncio
    async def test_incr(self, local_cache):
        assert await local_cache.incr("hits") == 1
        assert await local_cache.incr("hits", 2) == 3

    @pytest.mark.asyncio
    async def test_delete_by_prefix(self, local_cache):
        await local_cache.set("extraction:a", 1, 60)
        await local_cache.set("extraction:b", 2, 60)
        await local_cache.set("grading:c", 3, 60)

        assert await local_cache.delete_by_prefix("extraction:") == 2
        assert await local_cache.get("grading:c") == 3


class TestRemoteTier:
    """测试 Redis 层与降级"""

    @pytest.mark.asyncio
    async def test_redis_hit_backfills_local(self, remote_cache, mock_redis, clock):
        mock_redis.get.return_value = json.dumps({"value": {"score": 15}, "expires_at": clock() + 100})

        assert await remote_cache.get("k") == {"score": 15}
        assert await remote_cache.get("k") == {"score": 15}
        mock_redis.get.assert_awaited_once()
        assert remote_cache.stats.redis_hits == 1
        assert remote_cache.stats.local_hits == 1

    @pytest.mark.asyncio
    async def test_set_writes_redis_with_ttl(self, remote_cache, mock_redis):
        assert await remote_cache.set("k", "v", 120)
        key, ttl, payload = mock_redis.setex.await_args.args
        assert key == "correcte:cache:k"
        assert ttl == 120
        assert json.loads(payload)["value"] == "v"

    @pytest.mark.asyncio
    async def test_redis_error_returns_none(self, remote_cache, mock_redis):
        """测试 Redis 错误时返回 None（优雅降级）"""
        mock_redis.get.side_effect = RedisError("连接失败")

        assert await remote_cache.get("k") is None
        assert remote_cache.is_fallback_mode

    @pytest.mark.asyncio
    async def test_write_failure_keeps_local_copy(self, remote_cache, mock_redis):
        mock_redis.setex.side_effect = RedisConnectionError("连接断开")

        assert await remote_cache.set("k", "v", 60) is False
        assert remote_cache.is_fallback_mode
        assert await remote_cache.get("k") == "v"

    @pytest.mark.asyncio
    async def test_fallback_skips_redis_until_retry_interval(self, remote_cache, mock_redis, clock):
        mock_redis.get.side_effect = RedisError("连接失败")
        await remote_cache.get("k")
        mock_redis.get.reset_mock()

        await remote_cache.get("other")
        mock_redis.get.assert_not_awaited()

        mock_redis.get.side_effect = None
        mock_redis.get.return_value = None
        clock.advance(31)
        await remote_cache.get("other")

        mock_redis.ping.assert_awaited()
        assert not remote_cache.is_fallback_mode
        mock_redis.get.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expired_remote_envelope_is_a_miss(self, remote_cache, mock_redis, clock):
        mock_redis.get.return_value = json.dumps({"value": "old", "expires_at": clock() - 1})
        assert await remote_cache.get("k") is None

    @pytest.mark.asyncio
    async def test_corrupt_remote_entry_is_a_miss(self, remote_cache, mock_redis):
        mock_redis.get.return_value = "not json"
        assert await remote_cache.get("k") is None


class TestLocks:

    @pytest.mark.asyncio
    async def test_local_lock_is_exclusive(self, local_cache):
        token = await local_cache.acquire_lock("submission:sub_001", 30)
        assert token is not None
        assert await local_cache.acquire_lock("submission:sub_001", 30) is None

        assert await local_cache.release_lock("submission:sub_001", token)
        assert await local_cache.acquire_lock("submission:sub_001", 30) is not None

    @pytest.mark.asyncio
    async def test_local_lock_expires(self, local_cache, clock):
        assert await local_cache.acquire_lock("job", 10) is not None
        clock.advance(11)
        assert await local_cache.acquire_lock("job", 10) is not None

    @pytest.mark.asyncio
    async def test_release_with_wrong_token(self, local_cache):
        await local_cache.acquire_lock("job", 10)
        assert not await local_cache.release_lock("job", "someone-else")

    @pytest.mark.asyncio
    async def test_redis_lock_uses_set_nx(self, remote_cache, mock_redis):
        token = await remote_cache.acquire_lock("job", 5)
        assert token is not None
        kwargs = mock_redis.set.await_args.kwargs
        assert kwargs["nx"] is True
        assert kwargs["px"] == 5000

    @pytest.mark.asyncio
    async def test_redis_lock_busy(self, remote_cache, mock_redis):
        mock_redis.set.return_value = None
        assert await remote_cache.acquire_lock("job", 5) is None

    @pytest.mark.asyncio
    async def test_local_lock_extension_keeps_it_held(self, local_cache, clock):
        token = await local_cache.acquire_lock("job", 10)
        clock.advance(8)
        assert await local_cache.extend_lock("job", token, 10)

        clock.advance(8)
        assert await local_cache.acquire_lock("job", 10) is None

    @pytest.mark.asyncio
    async def test_expired_local_lock_cannot_be_extended(self, local_cache, clock):
        token = await local_cache.acquire_lock("job", 10)
        clock.advance(11)
        assert not await local_cache.extend_lock("job", token, 10)
        assert not await local_cache.extend_lock("job", "someone-else", 10)

    @pytest.mark.asyncio
    async def test_redis_lock_extension_checks_token(self, remote_cache, mock_redis):
        mock_redis.eval.return_value = 1
        token = await remote_cache.acquire_lock("job", 5)

        assert await remote_cache.extend_lock("job", token, 5)
        args = mock_redis.eval.await_args.args
        assert args[1:] == (1, "correcte:cache:lock:job", token, 5000)
