"""
两级缓存服务

本地进程内 LRU 作为第一级，Redis 作为共享的第二级。

特性：
- 读：先查本地，未命中查 Redis，Redis 命中后回填本地
- 写：同时写入两级
- 自动降级：Redis 故障时只使用本地缓存，间隔一段时间后尝试恢复
- 缓存故障从不向调用方抛出，缓存未命中与缓存不可用对调用方表现一致
"""

import asyncio
import json
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from correcte.config.settings import PipelineSettings, get_pipeline_settings

logger = logging.getLogger(__name__)

# 仅当锁仍归属于持有者时才删除
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# 仅当锁仍归属于持有者时才续期
_EXTEND_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


@dataclass
class CacheStats:
    """缓存统计信息"""
    local_hits: int = 0
    local_misses: int = 0
    redis_hits: int = 0
    redis_misses: int = 0
    writes: int = 0
    redis_errors: int = 0
    fallback_activations: int = 0
    evictions: int = 0


@dataclass
class CacheConfig:
    """缓存配置"""
    key_prefix: str = "correcte:cache"
    default_ttl_seconds: int = 3600
    local_enabled: bool = True
    local_max_entries: int = 2048
    fallback_retry_interval: float = 30.0  # 降级后重试间隔（秒）

    @classmethod
    def from_settings(cls, settings: Optional[PipelineSettings] = None) -> "CacheConfig":
        settings = settings or get_pipeline_settings()
        return cls(
            key_prefix=settings.cache_prefix,
            local_enabled=settings.cache_local_enabled,
            local_max_entries=settings.cache_local_max_entries,
            fallback_retry_interval=settings.cache_fallback_retry_seconds,
        )


class TwoTierCache:
    """
    两级缓存

    Redis 客户端可选：不传入时即为纯本地缓存（无数据库/开发模式）。
    clock 返回 Unix 时间戳（秒），测试中可替换为可控时钟。
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis_client
        self.config = config or CacheConfig()
        self._clock = clock

        self._local: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self._local_locks: Dict[str, Tuple[str, float]] = {}

        self._fallback_mode = False
        self._fallback_since: Optional[float] = None
        self._fallback_lock = asyncio.Lock()

        self._stats = CacheStats()

    @classmethod
    def from_url(
        cls,
        redis_url: Optional[str],
        config: Optional[CacheConfig] = None,
    ) -> "TwoTierCache":
        client = redis.from_url(redis_url, decode_responses=True) if redis_url else None
        return cls(redis_client=client, config=config)

    @property
    def is_fallback_mode(self) -> bool:
        return self._fallback_mode

    @property
    def has_remote(self) -> bool:
        return self._redis is not None

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def _full_key(self, key: str) -> str:
        return f"{self.config.key_prefix}:{key}"

    # ==================== 本地层 ====================

    def _local_get(self, full_key: str) -> Tuple[bool, Any]:
        if not self.config.local_enabled:
            return False, None
        entry = self._local.get(full_key)
        if entry is None:
            return False, None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._local[full_key]
            return False, None
        self._local.move_to_end(full_key)
        return True, value

    def _local_set(self, full_key: str, value: Any, expires_at: float) -> None:
        if not self.config.local_enabled:
            return
        self._local[full_key] = (value, expires_at)
        self._local.move_to_end(full_key)
        while len(self._local) > self.config.local_max_entries:
            self._local.popitem(last=False)
            self._stats.evictions += 1

    # ==================== 降级管理 ====================

    async def _enter_fallback_mode(self, reason: str) -> None:
        self._stats.redis_errors += 1
        async with self._fallback_lock:
            if not self._fallback_mode:
                self._fallback_mode = True
                self._fallback_since = self._clock()
                self._stats.fallback_activations += 1
                logger.warning(f"[TwoTierCache] 进入降级模式（仅本地缓存）: {reason}")

    async def _try_exit_fallback_mode(self) -> bool:
        async with self._fallback_lock:
            if not self._fallback_mode:
                return True

            if self._fallback_since is not None:
                elapsed = self._clock() - self._fallback_since
                if elapsed < self.config.fallback_retry_interval:
                    return False

            try:
                await self._redis.ping()
                self._fallback_mode = False
                self._fallback_since = None
                logger.info("[TwoTierCache] Redis 已恢复，退出降级模式")
                return True
            except (RedisError, RedisConnectionError, OSError) as e:
                self._fallback_since = self._clock()
                logger.debug(f"[TwoTierCache] 尝试退出降级模式失败: {e}")
                return False

    async def _remote_available(self) -> bool:
        if self._redis is None:
            return False
        if self._fallback_mode:
            return await self._try_exit_fallback_mode()
        return True

    # ==================== 基本操作 ====================

    async def get(self, key: str) -> Optional[Any]:
        """
        读取缓存（本地优先，未命中时回源 Redis 并回填本地）

        Args:
            key: 缓存键（不含前缀）

        Returns:
            缓存值；未命中、已过期或缓存不可用时返回 None
        """
        full_key = self._full_key(key)

        hit, value = self._local_get(full_key)
        if hit:
            self._stats.local_hits += 1
            return value
        self._stats.local_misses += 1

        if not await self._remote_available():
            return None

        try:
            raw = await self._redis.get(full_key)
        except (RedisError, RedisConnectionError, OSError) as e:
            await self._enter_fallback_mode(f"Redis 读取失败: {e}")
            return None

        if raw is None:
            self._stats.redis_misses += 1
            return None

        try:
            envelope = json.loads(raw)
            value = envelope["value"]
            expires_at = float(envelope["expires_at"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"[TwoTierCache] 缓存条目格式无效，忽略: key={key}, error={e}")
            return None

        if expires_at <= self._clock():
            self._stats.redis_misses += 1
            return None

        self._stats.redis_hits += 1
        self._local_set(full_key, value, expires_at)
        return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """
        写入缓存

        Args:
            key: 缓存键
            value: 可 JSON 序列化的值，None 不写入
            ttl_seconds: 过期时间，默认使用配置的 TTL

        Returns:
            是否写入了 Redis（纯本地写入返回 False）
        """
        if value is None:
            return False
        ttl = int(ttl_seconds or self.config.default_ttl_seconds)
        full_key = self._full_key(key)
        expires_at = self._clock() + ttl

        self._local_set(full_key, value, expires_at)
        self._stats.writes += 1

        if not await self._remote_available():
            return False

        payload = json.dumps({"value": value, "expires_at": expires_at}, ensure_ascii=False, default=str)
        try:
            await self._redis.setex(full_key, ttl, payload)
            return True
        except (RedisError, RedisConnectionError, OSError) as e:
            await self._enter_fallback_mode(f"Redis 写入失败: {e}")
            return False

    async def add(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """
        仅当键不存在时写入（SET NX）

        Returns:
            是否写入成功（False 表示键已存在）
        """
        ttl = int(ttl_seconds or self.config.default_ttl_seconds)
        full_key = self._full_key(key)
        expires_at = self._clock() + ttl

        hit, _ = self._local_get(full_key)
        if hit:
            return False

        if await self._remote_available():
            payload = json.dumps({"value": value, "expires_at": expires_at}, ensure_ascii=False, default=str)
            try:
                created = await self._redis.set(full_key, payload, ex=ttl, nx=True)
            except (RedisError, RedisConnectionError, OSError) as e:
                await self._enter_fallback_mode(f"Redis SET NX 失败: {e}")
            else:
                if not created:
                    return False
                self._local_set(full_key, value, expires_at)
                return True

        self._local_set(full_key, value, expires_at)
        if not self.config.local_enabled:
            # 两级都不可用时无法保证唯一性，按写入成功处理
            logger.warning(f"[TwoTierCache] 无可用缓存层，add 无法去重: key={key}")
        return True

    async def incr(self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None) -> int:
        """
        计数器自增，首次创建时设置 TTL

        Args:
            key: 计数器名称
            amount: 增量
            ttl_seconds: 计数器首次创建时的过期时间

        Returns:
            自增后的值
        """
        ttl = int(ttl_seconds or self.config.default_ttl_seconds)
        full_key = self._full_key(f"counter:{key}")

        if await self._remote_available():
            try:
                value = await self._redis.incrby(full_key, amount)
                if value == amount:
                    await self._redis.expire(full_key, ttl)
                return int(value)
            except (RedisError, RedisConnectionError, OSError) as e:
                await self._enter_fallback_mode(f"Redis INCR 失败: {e}")

        hit, current = self._local_get(full_key)
        value = (current if hit else 0) + amount
        self._local_set(full_key, value, self._clock() + ttl)
        return value

    async def delete(self, key: str) -> None:
        """
        删除两级缓存中的键

        Args:
            key: 缓存键
        """
        full_key = self._full_key(key)
        self._local.pop(full_key, None)

        if not await self._remote_available():
            return
        try:
            await self._redis.delete(full_key)
        except (RedisError, RedisConnectionError, OSError) as e:
            await self._enter_fallback_mode(f"Redis 删除失败: {e}")

    async def delete_by_prefix(self, prefix: str) -> int:
        """
        删除指定前缀下的所有键

        Args:
            prefix: 键前缀（不含全局前缀）

        Returns:
            删除数量（取本地与 Redis 中较大者）
        """
        full_prefix = self._full_key(prefix)
        local_keys = [k for k in self._local if k.startswith(full_prefix)]
        for k in local_keys:
            del self._local[k]
        deleted_count = len(local_keys)

        if not await self._remote_available():
            return deleted_count

        remote_deleted = 0
        try:
            cursor = 0
            while True:
                cursor, keys = await self._redis.scan(cursor=cursor, match=f"{full_prefix}*", count=100)
                if keys:
                    remote_deleted += await self._redis.delete(*keys)
                if cursor == 0:
                    break
        except (RedisError, RedisConnectionError, OSError) as e:
            await self._enter_fallback_mode(f"Redis 前缀删除失败: {e}")

        logger.debug(f"[TwoTierCache] 按前缀删除: prefix={prefix}, local={deleted_count}, redis={remote_deleted}")
        return max(deleted_count, remote_deleted)

    async def clear_local(self) -> None:
        """清空本地缓存（不影响 Redis）"""
        self._local.clear()

    # ==================== 分布式锁 ====================

    async def acquire_lock(self, name: str, ttl_seconds: int) -> Optional[str]:
        """
        获取互斥锁

        Args:
            name: 锁名称
            ttl_seconds: 锁的有效期，到期后自动释放

        Returns:
            持有令牌；锁已被占用时返回 None
        """
        full_key = self._full_key(f"lock:{name}")
        token = uuid.uuid4().hex

        if await self._remote_available():
            try:
                acquired = await self._redis.set(full_key, token, px=int(ttl_seconds * 1000), nx=True)
                return token if acquired else None
            except (RedisError, RedisConnectionError, OSError) as e:
                await self._enter_fallback_mode(f"Redis 加锁失败: {e}")

        now = self._clock()
        holder = self._local_locks.get(full_key)
        if holder is not None and holder[1] > now:
            return None
        self._local_locks[full_key] = (token, now + ttl_seconds)
        return token

    async def release_lock(self, name: str, token: str) -> bool:
        """
        释放锁（仅当仍由 token 持有时）

        Args:
            name: 锁名称
            token: acquire_lock 返回的持有令牌

        Returns:
            是否释放成功
        """
        full_key = self._full_key(f"lock:{name}")

        holder = self._local_locks.get(full_key)
        if holder is not None and holder[0] == token:
            del self._local_locks[full_key]
            return True

        if await self._remote_available():
            try:
                released = await self._redis.eval(_RELEASE_LOCK_SCRIPT, 1, full_key, token)
                return bool(released)
            except (RedisError, RedisConnectionError, OSError) as e:
                await self._enter_fallback_mode(f"Redis 解锁失败: {e}")
        return False

    async def extend_lock(self, name: str, token: str, ttl_seconds: float) -> bool:
        """
        续期仍由 token 持有的锁

        Args:
            name: 锁名称
            token: acquire_lock 返回的持有令牌
            ttl_seconds: 从现在起的新有效期

        Returns:
            是否续期成功（False 表示锁已过期或被他人持有）
        """
        full_key = self._full_key(f"lock:{name}")

        now = self._clock()
        holder = self._local_locks.get(full_key)
        if holder is not None and holder[0] == token:
            if holder[1] <= now:
                return False
            self._local_locks[full_key] = (token, now + ttl_seconds)
            return True

        if await self._remote_available():
            try:
                extended = await self._redis.eval(_EXTEND_LOCK_SCRIPT, 1, full_key, token, int(ttl_seconds * 1000))
                return bool(extended)
            except (RedisError, RedisConnectionError, OSError) as e:
                await self._enter_fallback_mode(f"Redis 锁续期失败: {e}")
        return False

    async def close(self) -> None:
        """关闭 Redis 连接"""
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except (RedisError, RedisConnectionError, OSError) as e:
                logger.debug(f"[TwoTierCache] 关闭 Redis 连接失败: {e}")
