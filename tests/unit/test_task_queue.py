"""任务队列的单元测试"""

import asyncio
import dataclasses

import pytest
from unittest.mock import AsyncMock
from redis.exceptions import ConnectionError as RedisConnectionError

from correcte.models.enums import ErrorKind, Topic
from correcte.services.brokers import InMemoryBroker
from correcte.services.errors import InvalidInput, ProviderTimeout, QuotaExceeded
from correcte.services.task_queue import (
    HandlerOutcome,
    HandlerResult,
    PublishOptions,
    RetryPolicy,
    SubscribeOptions,
    TaskQueue,
)

TOPIC = Topic.PROCESS_SUBMISSION


@pytest.fixture
def broker(clock):
    return InMemoryBroker(clock=clock)


@pytest.fixture
def queue(broker, pipeline_settings, clock):
    return TaskQueue(broker, settings=pipeline_settings, clock=clock, consumer_prefix="test")


async def _redeliver_due(queue: TaskQueue, clock, seconds: float = 11.0) -> int:
    """推进时钟越过最大退避，到期消息回到主题后处理一批"""
    clock.advance(seconds)
    await queue.promote_due()
    return await queue.poll_once(TOPIC)


class TestRetryPolicy:

    def test_exponential_backoff_without_jitter(self):
        policy = RetryPolicy(initial_backoff=2.0, multiplier=2.0, max_backoff=300.0, jitter=False)
        assert policy.delay_for(1) == 2.0
        assert policy.delay_for(2) == 4.0
        assert policy.delay_for(3) == 8.0

    def test_backoff_capped(self):
        policy = RetryPolicy(initial_backoff=2.0, multiplier=2.0, max_backoff=10.0, jitter=False)
        assert policy.delay_for(20) == 10.0

    def test_quota_retry_after_extends_delay(self):
        policy = RetryPolicy(initial_backoff=1.0, max_backoff=60.0, jitter=False)
        assert policy.delay_for(1, QuotaExceeded("429", retry_after=30.0)) == 30.0

    def test_from_settings(self, pipeline_settings):
        policy = RetryPolicy.from_settings(pipeline_settings)
        assert policy.max_retries == 3
        assert policy.max_backoff == 10.0


class TestHandlerResult:

    def test_retry_classifies_exception(self):
        result = HandlerResult.retry(asyncio.TimeoutError())
        assert result.outcome == HandlerOutcome.RETRY
        assert isinstance(result.error, ProviderTimeout)

    def test_fatal_keeps_pipeline_error(self):
        error = InvalidInput("vide")
        assert HandlerResult.fatal(error).error is error


class TestPublish:

    @pytest.mark.asyncio
    async def test_durable_publish(self, queue):
        receipt = await queue.publish(TOPIC, {"submission_id": "sub_001"}, PublishOptions(task_type="process_submission"))

        assert receipt.accepted
        assert await queue.queue_depth(TOPIC) == 1

    @pytest.mark.asyncio
    async def test_broker_failure_is_not_accepted(self, queue, broker):
        broker.add = AsyncMock(side_effect=RedisConnectionError("连接断开"))

        receipt = await queue.publish(TOPIC, {"submission_id": "sub_001"})

        assert not receipt.accepted
        assert "连接断开" in receipt.error

    @pytest.mark.asyncio
    async def test_delayed_publish(self, queue, broker, clock):
        await queue.publish(TOPIC, {"n": 1}, PublishOptions(delay_seconds=5))
        assert broker.next_due_at(TOPIC) == clock() + 5

        assert await queue.promote_due() == 0
        clock.advance(5)
        assert await queue.promote_due() == 1


class TestConsume:

    @pytest.mark.asyncio
    async def test_success_acknowledges(self, queue):
        seen = []

        async def handler(ctx):
            seen.append((ctx.payload["submission_id"], ctx.attempt))
            return HandlerResult.success()

        queue.subscribe(TOPIC, handler)
        await queue.publish(TOPIC, {"submission_id": "sub_001"})

        assert await queue.poll_once(TOPIC) == 1
        assert seen == [("sub_001", 1)]
        assert await queue.queue_depth(TOPIC) == 0

    @pytest.mark.asyncio
    async def test_none_result_counts_as_success(self, queue):
        async def handler(ctx):
            return None

        queue.subscribe(TOPIC, handler)
        await queue.publish(TOPIC, {})
        await queue.poll_once(TOPIC)

        assert await queue.queue_depth(TOPIC) == 0
        assert await queue.dead_letters(TOPIC) == []

    @pytest.mark.asyncio
    async def test_bounded_retry_then_dead_letter(self, queue, clock):
        """handler 最多被调用 max_retries 次，之后恰好一条死信"""
        attempts = []

        async def handler(ctx):
            attempts.append((ctx.attempt, ctx.max_attempts, ctx.is_last_attempt))
            return HandlerResult.retry(ProviderTimeout("OCR 超时"))

        queue.subscribe(TOPIC, handler)
        await queue.publish(TOPIC, {"submission_id": "sub_001"})

        await queue.poll_once(TOPIC)
        await _redeliver_due(queue, clock)
        await _redeliver_due(queue, clock)
        assert await _redeliver_due(queue, clock) == 0

        assert attempts == [(1, 3, False), (2, 3, False), (3, 3, True)]
        dead = await queue.dead_letters(TOPIC)
        assert len(dead) == 1
        assert dead[0].original_topic == TOPIC
        assert dead[0].error_kind == ErrorKind.TRANSIENT
        assert dead[0].message.delivery_count == 3
        assert dead[0].message.last_error == "OCR 超时"
        assert await queue.queue_depth(TOPIC) == 0

    @pytest.mark.asyncio
    async def test_fatal_goes_to_dead_letter_immediately(self, queue):
        calls = 0

        async def handler(ctx):
            nonlocal calls
            calls += 1
            return HandlerResult.fatal(InvalidInput("format non pris en charge"))

        queue.subscribe(TOPIC, handler)
        await queue.publish(TOPIC, {})
        await queue.poll_once(TOPIC)

        assert calls == 1
        dead = await queue.dead_letters(TOPIC)
        assert [d.error_kind for d in dead] == [ErrorKind.PERMANENT_INPUT]

    @pytest.mark.asyncio
    async def test_deferred_delivery_does_not_consume_attempts(self, queue, broker, clock):
        attempts = []

        async def handler(ctx):
            attempts.append(ctx.attempt)
            if len(attempts) <= 5:
                return HandlerResult.defer(2.0)
            return HandlerResult.success()

        queue.subscribe(TOPIC, handler)
        await queue.publish(TOPIC, {"submission_id": "sub_001"})
        await queue.poll_once(TOPIC)
        assert broker.next_due_at(TOPIC) == clock() + 2.0

        for _ in range(5):
            await _redeliver_due(queue, clock, seconds=2.0)

        assert attempts == [1, 1, 1, 1, 1, 1]
        assert await queue.dead_letters(TOPIC) == []
        assert await queue.queue_depth(TOPIC) == 0

    @pytest.mark.asyncio
    async def test_uncaught_exception_is_retried(self, queue, broker):
        async def handler(ctx):
            raise RuntimeError("boom")

        queue.subscribe(TOPIC, handler)
        await queue.publish(TOPIC, {})
        await queue.poll_once(TOPIC)

        assert broker.next_due_at(TOPIC) is not None
        assert await queue.dead_letters(TOPIC) == []

    @pytest.mark.asyncio
    async def test_subscribe_max_retries_override(self, queue):
        async def handler(ctx):
            return HandlerResult.retry(ProviderTimeout("timeout"))

        queue.subscribe(TOPIC, handler, SubscribeOptions(max_retries=1))
        await queue.publish(TOPIC, {})
        await queue.poll_once(TOPIC)

        assert len(await queue.dead_letters(TOPIC)) == 1

    @pytest.mark.asyncio
    async def test_poll_unsubscribed_topic(self, queue):
        with pytest.raises(KeyError):
            await queue.poll_once("unknown.topic")

    @pytest.mark.asyncio
    async def test_requeue_dead_letter(self, queue):
        async def handler(ctx):
            return HandlerResult.fatal(InvalidInput("bad"))

        queue.subscribe(TOPIC, handler)
        receipt = await queue.publish(TOPIC, {"submission_id": "sub_001"})
        await queue.poll_once(TOPIC)

        assert await queue.requeue_dead_letter(TOPIC, receipt.task_id)
        assert await queue.dead_letters(TOPIC) == []
        assert await queue.queue_depth(TOPIC) == 1
        assert not await queue.requeue_dead_letter(TOPIC, receipt.task_id)

    @pytest.mark.asyncio
    async def test_extend_lease_refreshes_in_flight(self, queue, broker, clock):
        leased = []

        async def handler(ctx):
            clock.advance(100)
            await ctx.extend_lease()
            leased.extend(await broker.reclaim_expired(TOPIC, "other", 60_000, 10))
            return HandlerResult.success()

        queue.subscribe(TOPIC, handler)
        await queue.publish(TOPIC, {})
        await queue.poll_once(TOPIC)

        assert leased == []


class TestInMemoryBroker:

    @pytest.mark.asyncio
    async def test_unacked_delivery_is_reclaimed_after_visibility_timeout(self, broker, queue, clock):
        await queue.publish(TOPIC, {"submission_id": "sub_001"})
        deliveries = await broker.read(TOPIC, "crashed", 1, 0)
        assert len(deliveries) == 1

        assert await broker.reclaim_expired(TOPIC, "survivor", 120_000, 10) == []
        clock.advance(121)
        reclaimed = await broker.reclaim_expired(TOPIC, "survivor", 120_000, 10)

        assert [d.entry_id for d in reclaimed] == [deliveries[0].entry_id]

    @pytest.mark.asyncio
    async def test_read_respects_prefetch(self, broker, queue):
        for n in range(3):
            await queue.publish(TOPIC, {"n": n})

        first = await broker.read(TOPIC, "c1", 2, 0)
        second = await broker.read(TOPIC, "c2", 2, 0)

        assert [d.message.payload["n"] for d in first] == [0, 1]
        assert [d.message.payload["n"] for d in second] == [2]


@pytest.mark.asyncio
async def test_settings_retry_bound_is_used(broker, pipeline_settings, clock):
    settings = dataclasses.replace(pipeline_settings, queue_max_retries=2)
    queue = TaskQueue(broker, settings=settings, clock=clock)
    calls = 0

    async def handler(ctx):
        nonlocal calls
        calls += 1
        return HandlerResult.retry(ProviderTimeout("timeout"))

    queue.subscribe(TOPIC, handler)
    await queue.publish(TOPIC, {})
    await queue.poll_once(TOPIC)
    await _redeliver_due(queue, clock)
    await _redeliver_due(queue, clock)

    assert calls == 2
    assert len(await queue.dead_letters(TOPIC)) == 1
