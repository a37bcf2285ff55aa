"""
任务队列底层 Broker

- RedisStreamBroker: Redis Streams + 消费者组，延迟消息存放在有序集合中
- InMemoryBroker: 进程内实现，语义与 Redis 版本一致（无数据库模式与测试使用）

Broker 只负责存取消息；重试、死信、租约续期等策略由 TaskQueue 负责。
"""

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from correcte.models.task import TaskMessage

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    """一次从 Broker 取出的消息"""
    entry_id: str
    topic: str
    message: TaskMessage


class Broker(ABC):
    """Broker 接口"""

    @abstractmethod
    async def ensure_topic(self, topic: str) -> None:
        """创建主题及消费者组（幂等）"""

    @abstractmethod
    async def add(self, topic: str, message: TaskMessage, durable: bool = True) -> str:
        """写入消息，返回条目 ID；durable 时在持久化确认后返回"""

    @abstractmethod
    async def read(self, topic: str, consumer: str, count: int, block_ms: int) -> List[Delivery]:
        """读取新消息，读出的消息进入该消费者的待确认列表"""

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """确认并删除消息"""

    @abstractmethod
    async def extend_lease(self, delivery: Delivery, consumer: str) -> None:
        """重置消息的空闲计时，避免被其他消费者回收"""

    @abstractmethod
    async def reclaim_expired(self, topic: str, consumer: str, min_idle_ms: int, count: int) -> List[Delivery]:
        """回收空闲超过 min_idle_ms 的未确认消息"""

    @abstractmethod
    async def schedule(self, topic: str, message: TaskMessage, due_at: float) -> None:
        """延迟投递：due_at（Unix 时间戳）到期后进入主题"""

    @abstractmethod
    async def promote_due(self, now: float) -> int:
        """将到期的延迟消息移入主题，返回移动数量"""

    @abstractmethod
    async def peek(self, topic: str, count: int = 100) -> List[Delivery]:
        """查看主题中的消息（不改变投递状态）"""

    @abstractmethod
    async def delete(self, topic: str, entry_id: str) -> bool:
        """删除指定消息"""

    @abstractmethod
    async def depth(self, topic: str) -> int:
        """待处理消息数（含延迟消息）"""

    async def ping(self) -> bool:
        return True

    async def reconnect(self) -> None:
        """重建连接（默认无操作）"""

    async def close(self) -> None:
        """关闭连接（默认无操作）"""


# ==================== Redis Streams ====================

# 原子地取出到期延迟消息并写入流
_PROMOTE_SCRIPT = """
local items = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, item in ipairs(items) do
    redis.call('XADD', KEYS[2], '*', 'data', item)
    redis.call('ZREM', KEYS[1], item)
end
return #items
"""


class RedisStreamBroker(Broker):
    """
    基于 Redis Streams 的 Broker

    每个主题一个流与一个消费者组；确认后的消息立即从流中删除，
    因此 XLEN 即为未完成消息数。
    """

    GROUP_NAME = "workers"
    DATA_FIELD = "data"

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "correcte",
        durable_replicas: int = 0,
        replica_timeout_ms: int = 1000,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.durable_replicas = durable_replicas
        self.replica_timeout_ms = replica_timeout_ms
        self._redis: Optional[redis.Redis] = client
        self._topics: Set[str] = set()

    @property
    def client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    def _stream_key(self, topic: str) -> str:
        return f"{self.key_prefix}:stream:{topic}"

    def _delayed_key(self, topic: str) -> str:
        return f"{self.key_prefix}:delayed:{topic}"

    def _decode(self, topic: str, entry_id: str, fields: Dict[str, str]) -> Optional[Delivery]:
        raw = fields.get(self.DATA_FIELD)
        if raw is None:
            logger.warning(f"[RedisStreamBroker] 条目缺少数据字段: topic={topic}, id={entry_id}")
            return None
        return Delivery(entry_id=entry_id, topic=topic, message=TaskMessage.model_validate_json(raw))

    async def ensure_topic(self, topic: str) -> None:
        try:
            await self.client.xgroup_create(self._stream_key(topic), self.GROUP_NAME, id="0", mkstream=True)
            logger.info(f"[RedisStreamBroker] 已创建消费者组: {topic}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._topics.add(topic)

    async def add(self, topic: str, message: TaskMessage, durable: bool = True) -> str:
        entry_id = await self.client.xadd(self._stream_key(topic), {self.DATA_FIELD: message.model_dump_json()})
        if durable and self.durable_replicas > 0:
            acked = await self.client.wait(self.durable_replicas, self.replica_timeout_ms)
            if acked < self.durable_replicas:
                logger.warning(
                    f"[RedisStreamBroker] 副本确认不足: topic={topic}, "
                    f"需要 {self.durable_replicas}，实际 {acked}"
                )
        return entry_id

    async def read(self, topic: str, consumer: str, count: int, block_ms: int) -> List[Delivery]:
        response = await self.client.xreadgroup(
            self.GROUP_NAME,
            consumer,
            streams={self._stream_key(topic): ">"},
            count=count,
            block=block_ms or None,
        )
        deliveries: List[Delivery] = []
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                delivery = self._decode(topic, entry_id, fields)
                if delivery is not None:
                    deliveries.append(delivery)
        return deliveries

    async def ack(self, delivery: Delivery) -> None:
        key = self._stream_key(delivery.topic)
        await self.client.xack(key, self.GROUP_NAME, delivery.entry_id)
        await self.client.xdel(key, delivery.entry_id)

    async def extend_lease(self, delivery: Delivery, consumer: str) -> None:
        await self.client.xclaim(
            self._stream_key(delivery.topic),
            self.GROUP_NAME,
            consumer,
            min_idle_time=0,
            message_ids=[delivery.entry_id],
            justid=True,
        )

    async def reclaim_expired(self, topic: str, consumer: str, min_idle_ms: int, count: int) -> List[Delivery]:
        key = self._stream_key(topic)
        pending = await self.client.xpending_range(
            key, self.GROUP_NAME, min="-", max="+", count=count, idle=min_idle_ms
        )
        if not pending:
            return []
        ids = [item["message_id"] for item in pending]
        claimed = await self.client.xclaim(key, self.GROUP_NAME, consumer, min_idle_time=min_idle_ms, message_ids=ids)
        deliveries: List[Delivery] = []
        for entry_id, fields in claimed:
            if not fields:
                # 已被删除的条目
                await self.client.xack(key, self.GROUP_NAME, entry_id)
                continue
            delivery = self._decode(topic, entry_id, fields)
            if delivery is not None:
                deliveries.append(delivery)
        if deliveries:
            logger.info(f"[RedisStreamBroker] 回收超时消息: topic={topic}, count={len(deliveries)}")
        return deliveries

    async def schedule(self, topic: str, message: TaskMessage, due_at: float) -> None:
        await self.client.zadd(self._delayed_key(topic), {message.model_dump_json(): due_at})
        self._topics.add(topic)

    async def promote_due(self, now: float) -> int:
        promoted = 0
        for topic in list(self._topics):
            promoted += int(
                await self.client.eval(
                    _PROMOTE_SCRIPT, 2, self._delayed_key(topic), self._stream_key(topic), now, 100
                )
            )
        return promoted

    async def peek(self, topic: str, count: int = 100) -> List[Delivery]:
        entries = await self.client.xrange(self._stream_key(topic), min="-", max="+", count=count)
        deliveries = [self._decode(topic, entry_id, fields) for entry_id, fields in entries]
        return [d for d in deliveries if d is not None]

    async def delete(self, topic: str, entry_id: str) -> bool:
        return bool(await self.client.xdel(self._stream_key(topic), entry_id))

    async def depth(self, topic: str) -> int:
        length = await self.client.xlen(self._stream_key(topic))
        delayed = await self.client.zcard(self._delayed_key(topic))
        return int(length) + int(delayed)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def reconnect(self) -> None:
        await self.close()
        self._redis = redis.from_url(self.redis_url, decode_responses=True)
        await self._redis.ping()
        for topic in list(self._topics):
            await self.ensure_topic(topic)
        logger.info(f"[RedisStreamBroker] 已重新连接并恢复 {len(self._topics)} 个主题")

    async def close(self) -> None:
        if self._redis is not None:
            client, self._redis = self._redis, None
            try:
                await client.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"[RedisStreamBroker] 关闭连接失败: {e}")


# ==================== 进程内实现 ====================

@dataclass
class _InFlight:
    delivery: Delivery
    consumer: str
    leased_at: float


class _TopicState:
    def __init__(self) -> None:
        self.ready: "OrderedDict[str, TaskMessage]" = OrderedDict()
        self.in_flight: Dict[str, _InFlight] = {}
        self.delayed: List[Tuple[float, TaskMessage]] = []
        self.available = asyncio.Event()


class InMemoryBroker(Broker):
    """
    进程内 Broker

    clock 返回 Unix 时间戳（秒），测试中可替换为可控时钟。
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._topics: Dict[str, _TopicState] = {}
        self._ids = itertools.count(1)

    def _state(self, topic: str) -> _TopicState:
        state = self._topics.get(topic)
        if state is None:
            state = _TopicState()
            self._topics[topic] = state
        return state

    async def ensure_topic(self, topic: str) -> None:
        self._state(topic)

    async def add(self, topic: str, message: TaskMessage, durable: bool = True) -> str:
        state = self._state(topic)
        entry_id = f"{int(self._clock() * 1000)}-{next(self._ids)}"
        state.ready[entry_id] = message
        state.available.set()
        return entry_id

    async def read(self, topic: str, consumer: str, count: int, block_ms: int) -> List[Delivery]:
        state = self._state(topic)
        if not state.ready and block_ms > 0:
            state.available.clear()
            try:
                await asyncio.wait_for(state.available.wait(), timeout=block_ms / 1000)
            except asyncio.TimeoutError:
                return []

        deliveries: List[Delivery] = []
        while state.ready and len(deliveries) < count:
            entry_id, message = state.ready.popitem(last=False)
            delivery = Delivery(entry_id=entry_id, topic=topic, message=message)
            state.in_flight[entry_id] = _InFlight(delivery, consumer, self._clock())
            deliveries.append(delivery)
        return deliveries

    async def ack(self, delivery: Delivery) -> None:
        self._state(delivery.topic).in_flight.pop(delivery.entry_id, None)

    async def extend_lease(self, delivery: Delivery, consumer: str) -> None:
        in_flight = self._state(delivery.topic).in_flight.get(delivery.entry_id)
        if in_flight is not None:
            in_flight.consumer = consumer
            in_flight.leased_at = self._clock()

    async def reclaim_expired(self, topic: str, consumer: str, min_idle_ms: int, count: int) -> List[Delivery]:
        state = self._state(topic)
        now = self._clock()
        reclaimed: List[Delivery] = []
        for in_flight in list(state.in_flight.values()):
            if len(reclaimed) >= count:
                break
            if (now - in_flight.leased_at) * 1000 >= min_idle_ms:
                in_flight.consumer = consumer
                in_flight.leased_at = now
                reclaimed.append(in_flight.delivery)
        return reclaimed

    async def schedule(self, topic: str, message: TaskMessage, due_at: float) -> None:
        self._state(topic).delayed.append((due_at, message))

    async def promote_due(self, now: float) -> int:
        promoted = 0
        for topic, state in self._topics.items():
            due = [item for item in state.delayed if item[0] <= now]
            if not due:
                continue
            state.delayed = [item for item in state.delayed if item[0] > now]
            for _, message in sorted(due, key=lambda item: item[0]):
                await self.add(topic, message)
                promoted += 1
        return promoted

    async def peek(self, topic: str, count: int = 100) -> List[Delivery]:
        state = self._state(topic)
        items = [Delivery(entry_id=k, topic=topic, message=m) for k, m in state.ready.items()]
        items.extend(f.delivery for f in state.in_flight.values())
        return items[:count]

    async def delete(self, topic: str, entry_id: str) -> bool:
        state = self._state(topic)
        if state.ready.pop(entry_id, None) is not None:
            return True
        return state.in_flight.pop(entry_id, None) is not None

    async def depth(self, topic: str) -> int:
        state = self._state(topic)
        return len(state.ready) + len(state.in_flight) + len(state.delayed)

    def next_due_at(self, topic: str) -> Optional[float]:
        """最早的延迟消息到期时间（测试辅助）"""
        delayed = self._state(topic).delayed
        return min(item[0] for item in delayed) if delayed else None
