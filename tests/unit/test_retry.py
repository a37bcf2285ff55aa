"""外部调用重试的单元测试"""

import asyncio

import pytest

from correcte.services.errors import (
    InvalidInput,
    ProviderTimeout,
    ProviderUnavailable,
    QuotaExceeded,
    TransientError,
)
from correcte.utils.retry import RetryConfig, with_retry


def test_calculate_interval_without_jitter():
    """测试重试间隔计算"""
    config = RetryConfig(initial_interval=1.0, backoff_coefficient=2.0, maximum_interval=60.0, jitter=False)

    assert config.calculate_interval(0) == 1.0
    assert config.calculate_interval(1) == 2.0
    assert config.calculate_interval(2) == 4.0
    # 被限制在 maximum_interval
    assert config.calculate_interval(10) == 60.0


def test_calculate_interval_with_jitter_stays_in_range():
    config = RetryConfig(initial_interval=4.0, jitter=True)
    for _ in range(50):
        interval = config.calculate_interval(0)
        assert 2.0 <= interval <= 4.0


def test_quota_interval_uses_retry_after():
    config = RetryConfig(maximum_interval=30.0, quota_interval=10.0)
    assert config.interval_for(QuotaExceeded("slow down", retry_after=7.0), 0) == 7.0
    assert config.interval_for(QuotaExceeded("slow down"), 0) == 10.0
    assert config.interval_for(QuotaExceeded("slow down", retry_after=600.0), 0) == 30.0


@pytest.mark.asyncio
async def test_with_retry_success():
    """测试成功执行（无需重试）"""
    call_count = 0

    async def success_func():
        nonlocal call_count
        call_count += 1
        return "success"

    result = await with_retry(success_func, RetryConfig(maximum_attempts=3))

    assert result == "success"
    assert call_count == 1


@pytest.mark.asyncio
async def test_with_retry_eventual_success():
    """测试瞬时错误后最终成功"""
    call_count = 0

    async def flaky_func():
        nonlocal call_count
        call_count += 1
        if call_count < 3:
            raise ProviderUnavailable("503")
        return "success"

    config = RetryConfig(maximum_attempts=3, initial_interval=0.0, jitter=False)
    assert await with_retry(flaky_func, config) == "success"
    assert call_count == 3


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_permanent_errors():
    call_count = 0

    async def bad_input():
        nonlocal call_count
        call_count += 1
        raise InvalidInput("fichier corrompu")

    with pytest.raises(InvalidInput):
        await with_retry(bad_input, RetryConfig(maximum_attempts=3, initial_interval=0.0))
    assert call_count == 1


@pytest.mark.asyncio
async def test_with_retry_retries_unclassified_exceptions():
    call_count = 0

    async def flaky():
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise TypeError("unexpected payload")
        return "ok"

    result = await with_retry(flaky, RetryConfig(maximum_attempts=3, initial_interval=0.0), provider="test")
    assert result == "ok"
    assert call_count == 2


@pytest.mark.asyncio
async def test_with_retry_exhausted_unclassified_is_transient():
    async def broken():
        raise ValueError("bad value")

    with pytest.raises(TransientError) as exc_info:
        await with_retry(broken, RetryConfig(maximum_attempts=2, initial_interval=0.0), provider="test")
    assert exc_info.value.provider == "test"


@pytest.mark.asyncio
async def test_with_retry_exhausted_raises_last_error():
    call_count = 0

    async def always_down():
        nonlocal call_count
        call_count += 1
        raise ConnectionError(f"down #{call_count}")

    config = RetryConfig(maximum_attempts=2, initial_interval=0.0, jitter=False)
    with pytest.raises(ProviderUnavailable) as exc_info:
        await with_retry(always_down, config)
    assert call_count == 2
    assert "down #2" in str(exc_info.value)


@pytest.mark.asyncio
async def test_with_retry_timeout_becomes_provider_timeout():
    async def slow():
        await asyncio.sleep(1)

    config = RetryConfig(maximum_attempts=1, timeout=0.01)
    with pytest.raises(ProviderTimeout):
        await with_retry(slow, config)
