"""
任务队列服务

在 Broker 之上实现至少一次投递语义。

Features:
- 持久化发布（可选延迟）
- 每个主题多个消费者，每个消费者独立的消费者名与预取数
- 有界重试：指数退避 + 抖动，超出后进入 <topic>.dead_letter
- 长任务租约续期，崩溃消费者的未确认消息超时后被回收重投
- 传输错误时自动重连并恢复所有订阅
"""

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from correcte.config.settings import PipelineSettings, get_pipeline_settings
from correcte.models.enums import Topic
from correcte.models.task import DeadLetterRecord, TaskMessage
from correcte.services.brokers import Broker, Delivery
from correcte.services.errors import PipelineError, QuotaExceeded, TransientError, classify_exception

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (RedisError, RedisConnectionError, ConnectionError, OSError)


class HandlerOutcome(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    FATAL = "fatal"
    DEFER = "defer"


@dataclass
class HandlerResult:
    """处理器返回值"""
    outcome: HandlerOutcome
    error: Optional[PipelineError] = None
    delay_seconds: float = 0.0

    @classmethod
    def success(cls) -> "HandlerResult":
        return cls(HandlerOutcome.SUCCESS)

    @classmethod
    def retry(cls, error: Any) -> "HandlerResult":
        return cls(HandlerOutcome.RETRY, _as_pipeline_error(error))

    @classmethod
    def fatal(cls, error: Any) -> "HandlerResult":
        return cls(HandlerOutcome.FATAL, _as_pipeline_error(error))

    @classmethod
    def defer(cls, delay_seconds: float) -> "HandlerResult":
        """稍后原样重投，不计入投递次数（例如资源暂时被占用）"""
        return cls(HandlerOutcome.DEFER, delay_seconds=max(delay_seconds, 0.0))


def _as_pipeline_error(error: Any) -> PipelineError:
    if isinstance(error, BaseException):
        return classify_exception(error)
    return TransientError(str(error))


@dataclass
class RetryPolicy:
    """重投策略：handler 对同一消息最多被调用 max_retries 次"""
    max_retries: int = 3
    initial_backoff: float = 2.0
    multiplier: float = 2.0
    max_backoff: float = 300.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.queue_max_retries,
            initial_backoff=settings.queue_initial_backoff_seconds,
            multiplier=settings.queue_backoff_multiplier,
            max_backoff=settings.queue_max_backoff_seconds,
        )

    def delay_for(self, attempt: int, error: Optional[PipelineError] = None) -> float:
        """第 attempt 次投递失败后，到下一次投递的等待时间（秒）"""
        delay = min(self.initial_backoff * (self.multiplier ** max(attempt - 1, 0)), self.max_backoff)
        if self.jitter:
            delay = delay * (0.5 + random.random() * 0.5)
        if isinstance(error, QuotaExceeded) and error.retry_after is not None:
            delay = max(delay, min(error.retry_after, self.max_backoff))
        return delay


@dataclass
class PublishOptions:
    durable: bool = True
    delay_seconds: float = 0.0
    idempotency_key: Optional[str] = None
    task_type: Optional[str] = None


@dataclass
class PublishReceipt:
    accepted: bool
    task_id: str
    error: Optional[str] = None


@dataclass
class SubscribeOptions:
    concurrency: int = 1
    prefetch: int = 1
    max_retries: Optional[int] = None


@dataclass
class TaskContext:
    """传给处理器的上下文"""
    message: TaskMessage
    attempt: int
    max_attempts: int
    _extend: Callable[[], Awaitable[None]] = field(repr=False)

    @property
    def payload(self) -> Dict[str, Any]:
        return self.message.payload

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    async def extend_lease(self) -> None:
        await self._extend()


Handler = Callable[[TaskContext], Awaitable[HandlerResult]]


@dataclass
class _Subscription:
    topic: str
    handler: Handler
    options: SubscribeOptions
    policy: RetryPolicy


class TaskQueue:
    """
    任务队列客户端

    clock 返回 Unix 时间戳（秒），测试中可替换为可控时钟。
    """

    def __init__(
        self,
        broker: Broker,
        settings: Optional[PipelineSettings] = None,
        clock: Callable[[], float] = time.time,
        consumer_prefix: Optional[str] = None,
    ):
        self.broker = broker
        self.settings = settings or get_pipeline_settings()
        self._clock = clock
        self.consumer_prefix = consumer_prefix or f"worker-{uuid.uuid4().hex[:8]}"

        self._subscriptions: Dict[str, _Subscription] = {}
        self._workers: List[asyncio.Task] = []
        self._running = False
        self._reconnect_lock = asyncio.Lock()

    @property
    def visibility_timeout_ms(self) -> int:
        return int(self.settings.queue_visibility_timeout_seconds * 1000)

    # ==================== 发布 ====================

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        options: Optional[PublishOptions] = None,
    ) -> PublishReceipt:
        """
        发布任务

        持久化发布在 Broker 确认写入后返回；Broker 出错时返回 accepted=False。

        Args:
            topic: 目标主题
            payload: 任务载荷（需可 JSON 序列化）
            options: 延迟、持久化与幂等键等选项

        Returns:
            PublishReceipt，accepted 表示 Broker 已接收
        """
        options = options or PublishOptions()
        message = TaskMessage(
            task_type=options.task_type or topic,
            topic=topic,
            payload=payload,
            idempotency_key=options.idempotency_key,
        )
        return await self._publish_message(topic, message, options)

    async def _publish_message(
        self,
        topic: str,
        message: TaskMessage,
        options: PublishOptions,
    ) -> PublishReceipt:
        if options.durable:
            return await self._write(topic, message, options.delay_seconds)

        task = asyncio.create_task(self._write(topic, message, options.delay_seconds, durable=False))
        task.add_done_callback(_log_background_failure)
        return PublishReceipt(accepted=True, task_id=message.task_id)

    async def _write(self, topic: str, message: TaskMessage, delay_seconds: float, durable: bool = True) -> PublishReceipt:
        try:
            if delay_seconds > 0:
                await self.broker.schedule(topic, message, self._clock() + delay_seconds)
            else:
                await self.broker.add(topic, message, durable=durable)
        except _TRANSPORT_ERRORS as e:
            logger.error(f"[TaskQueue] 发布失败: topic={topic}, task_id={message.task_id}, error={e}")
            return PublishReceipt(accepted=False, task_id=message.task_id, error=str(e))
        logger.debug(f"[TaskQueue] 已发布: topic={topic}, task_id={message.task_id}, delay={delay_seconds}")
        return PublishReceipt(accepted=True, task_id=message.task_id)

    # ==================== 订阅 ====================

    def subscribe(self, topic: str, handler: Handler, options: Optional[SubscribeOptions] = None) -> None:
        """注册主题处理器（在 start 之前调用）"""
        options = options or SubscribeOptions(prefetch=self.settings.worker_prefetch)
        policy = RetryPolicy.from_settings(self.settings)
        if options.max_retries is not None:
            policy.max_retries = options.max_retries
        self._subscriptions[topic] = _Subscription(topic, handler, options, policy)
        logger.info(
            f"[TaskQueue] 已注册处理器: {topic} "
            f"(concurrency={options.concurrency}, prefetch={options.prefetch}, max_retries={policy.max_retries})"
        )

    async def start(self) -> None:
        """创建主题并启动消费者与延迟消息调度"""
        if self._running:
            return
        for topic in self._subscriptions:
            await self.broker.ensure_topic(topic)

        self._running = True
        for subscription in self._subscriptions.values():
            for index in range(subscription.options.concurrency):
                consumer = f"{self.consumer_prefix}-{subscription.topic}-{index}"
                self._workers.append(asyncio.create_task(self._worker_loop(subscription, consumer)))
        self._workers.append(asyncio.create_task(self._scheduler_loop()))

        logger.info(f"[TaskQueue] 已启动 {len(self._workers) - 1} 个消费者")

    async def stop(self) -> None:
        """停止所有消费者（未确认的消息会在租约超时后被其他进程回收）"""
        self._running = False
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("[TaskQueue] 已停止所有消费者")

    async def _worker_loop(self, subscription: _Subscription, consumer: str) -> None:
        logger.info(f"[TaskQueue] 消费者 {consumer} 已启动")
        last_reclaim = 0.0
        reclaim_interval = self.settings.queue_visibility_timeout_seconds / 2

        while self._running:
            try:
                now = self._clock()
                if now - last_reclaim >= reclaim_interval:
                    last_reclaim = now
                    deliveries = await self.broker.reclaim_expired(
                        subscription.topic, consumer, self.visibility_timeout_ms, subscription.options.prefetch
                    )
                    for delivery in deliveries:
                        await self._process(subscription, delivery, consumer)

                await self.poll_once(subscription.topic, consumer, block_ms=self.settings.queue_block_ms)

            except asyncio.CancelledError:
                break
            except _TRANSPORT_ERRORS as e:
                logger.warning(f"[TaskQueue] 消费者 {consumer} 连接错误: {e}")
                await self._reconnect()
            except Exception as e:
                logger.error(f"[TaskQueue] 消费者 {consumer} 错误: {e}", exc_info=True)
                await asyncio.sleep(1)

        logger.info(f"[TaskQueue] 消费者 {consumer} 已停止")

    async def _scheduler_loop(self) -> None:
        while self._running:
            try:
                await self.promote_due()
                await asyncio.sleep(self.settings.queue_scheduler_interval_seconds)
            except asyncio.CancelledError:
                break
            except _TRANSPORT_ERRORS as e:
                logger.warning(f"[TaskQueue] 延迟消息调度连接错误: {e}")
                await self._reconnect()

    async def _reconnect(self) -> None:
        """重连 Broker 并恢复所有主题，失败时按退避重试直到成功或停止"""
        async with self._reconnect_lock:
            try:
                if await self.broker.ping():
                    return
            except _TRANSPORT_ERRORS:
                pass

            delay = self.settings.queue_reconnect_delay_seconds
            while self._running:
                try:
                    await self.broker.reconnect()
                    for topic in self._subscriptions:
                        await self.broker.ensure_topic(topic)
                    logger.info(f"[TaskQueue] 已重新连接，恢复 {len(self._subscriptions)} 个订阅")
                    return
                except _TRANSPORT_ERRORS as e:
                    logger.warning(f"[TaskQueue] 重连失败: {e}，{delay:.1f}s 后重试")
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, 60.0)

    # ==================== 消息处理 ====================

    async def poll_once(self, topic: str, consumer: Optional[str] = None, block_ms: int = 0) -> int:
        """
        读取并处理一批消息

        Args:
            topic: 已订阅的主题
            consumer: 消费者名称，默认使用该主题的 0 号消费者
            block_ms: 没有消息时最多等待的毫秒数

        Returns:
            本次处理的消息数量

        Raises:
            KeyError: 主题未订阅
        """
        subscription = self._subscriptions.get(topic)
        if subscription is None:
            raise KeyError(f"主题未订阅: {topic}")
        consumer = consumer or f"{self.consumer_prefix}-{topic}-0"

        deliveries = await self.broker.read(topic, consumer, subscription.options.prefetch, block_ms)
        for delivery in deliveries:
            await self._process(subscription, delivery, consumer)
        return len(deliveries)

    async def _process(self, subscription: _Subscription, delivery: Delivery, consumer: str) -> None:
        attempt = delivery.message.delivery_count + 1
        message = delivery.message.model_copy(update={"delivery_count": attempt})
        max_attempts = subscription.policy.max_retries

        async def extend() -> None:
            await self.broker.extend_lease(delivery, consumer)

        context = TaskContext(message=message, attempt=attempt, max_attempts=max_attempts, _extend=extend)
        heartbeat = asyncio.create_task(self._heartbeat(extend))

        try:
            result = await subscription.handler(context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"[TaskQueue] 处理器未捕获异常: topic={subscription.topic}, task_id={message.task_id}, "
                f"attempt={attempt}/{max_attempts}: {e}",
                exc_info=True,
            )
            result = HandlerResult.retry(e)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

        if result is None:
            result = HandlerResult.success()

        if result.outcome == HandlerOutcome.SUCCESS:
            await self.broker.ack(delivery)
            return

        if result.outcome == HandlerOutcome.DEFER:
            await self.broker.schedule(subscription.topic, delivery.message, self._clock() + result.delay_seconds)
            await self.broker.ack(delivery)
            logger.info(
                f"[TaskQueue] 任务延后投递: topic={subscription.topic}, task_id={message.task_id}, "
                f"delay={result.delay_seconds:.1f}s"
            )
            return

        error = result.error or TransientError("处理失败")
        message = message.model_copy(update={"last_error": error.message})

        if result.outcome == HandlerOutcome.RETRY and attempt < max_attempts:
            delay = subscription.policy.delay_for(attempt, error)
            await self.broker.schedule(subscription.topic, message, self._clock() + delay)
            await self.broker.ack(delivery)
            logger.warning(
                f"[TaskQueue] 任务将重投: topic={subscription.topic}, task_id={message.task_id}, "
                f"attempt={attempt}/{max_attempts}, delay={delay:.1f}s, error={error.message}"
            )
            return

        await self._dead_letter(subscription.topic, message, error)
        await self.broker.ack(delivery)

    async def _heartbeat(self, extend: Callable[[], Awaitable[None]]) -> None:
        interval = max(self.settings.queue_visibility_timeout_seconds / 3, 0.1)
        while True:
            await asyncio.sleep(interval)
            try:
                await extend()
            except _TRANSPORT_ERRORS as e:
                logger.warning(f"[TaskQueue] 租约续期失败: {e}")

    async def _dead_letter(self, topic: str, message: TaskMessage, error: PipelineError) -> None:
        record = DeadLetterRecord(
            message=message,
            original_topic=topic,
            error_kind=error.kind,
            error_message=error.message,
        )
        dead_letter_topic = Topic.dead_letter(topic)
        envelope = TaskMessage(
            task_id=message.task_id,
            task_type="dead_letter",
            topic=dead_letter_topic,
            payload=record.model_dump(mode="json"),
            idempotency_key=message.idempotency_key,
        )
        await self.broker.add(dead_letter_topic, envelope, durable=True)
        logger.error(
            f"[TaskQueue] 任务进入死信队列: topic={topic}, task_id={message.task_id}, "
            f"deliveries={message.delivery_count}, kind={record.error_kind.value}, error={error.message}"
        )

    # ==================== 运维 ====================

    async def promote_due(self) -> int:
        """
        将所有主题中到期的延迟消息移回待处理队列

        Returns:
            移回的消息数量
        """
        promoted = await self.broker.promote_due(self._clock())
        if promoted:
            logger.debug(f"[TaskQueue] 到期延迟消息: {promoted}")
        return promoted

    async def dead_letters(self, topic: str, limit: int = 100) -> List[DeadLetterRecord]:
        """
        查看主题的死信（不移除）

        Args:
            topic: 原主题名（不含 .dead_letter 后缀）
            limit: 最多返回的条数

        Returns:
            死信记录，按进入死信队列的先后排列
        """
        deliveries = await self.broker.peek(Topic.dead_letter(topic), limit)
        return [DeadLetterRecord.model_validate(d.message.payload) for d in deliveries]

    async def requeue_dead_letter(self, topic: str, task_id: str) -> bool:
        """
        将死信消息重新放回原主题（投递计数清零）

        Args:
            topic: 原主题名
            task_id: 要重新入队的任务 ID

        Returns:
            是否找到并重新入队
        """
        dead_letter_topic = Topic.dead_letter(topic)
        for delivery in await self.broker.peek(dead_letter_topic, 1000):
            if delivery.message.task_id != task_id:
                continue
            record = DeadLetterRecord.model_validate(delivery.message.payload)
            message = record.message.model_copy(update={"delivery_count": 0, "last_error": None})
            await self.broker.add(record.original_topic, message, durable=True)
            await self.broker.delete(dead_letter_topic, delivery.entry_id)
            logger.info(f"[TaskQueue] 死信已重新入队: topic={topic}, task_id={task_id}")
            return True
        return False

    async def queue_depth(self, topic: str) -> int:
        """
        主题积压量

        Returns:
            待处理、处理中与延迟消息的总数
        """
        return await self.broker.depth(topic)

    async def close(self) -> None:
        """停止消费者并关闭 Broker 连接"""
        await self.stop()
        await self.broker.close()


def _log_background_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"[TaskQueue] 非持久化发布失败: {exc}")
        return
    receipt = task.result()
    if not receipt.accepted:
        logger.warning(f"[TaskQueue] 非持久化发布未被接受: task_id={receipt.task_id}")
