"""外部调用的重试与超时控制

提供商调用（OCR、LLM）在单次任务投递内做少量快速重试；超出后由队列层
负责更长间隔的重投。
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from correcte.services.errors import PipelineError, QuotaExceeded, classify_exception

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """重试策略配置

    Attributes:
        initial_interval: 初始重试间隔（秒）
        backoff_coefficient: 退避系数
        maximum_interval: 最大重试间隔（秒）
        maximum_attempts: 最大尝试次数（含首次）
        timeout: 单次调用超时（秒），None 表示无超时
        quota_interval: 限流且提供商未给出 Retry-After 时的等待（秒）
        jitter: 是否对间隔加随机抖动
    """

    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 60.0
    maximum_attempts: int = 3
    timeout: Optional[float] = None
    quota_interval: float = 10.0
    jitter: bool = True

    def calculate_interval(self, attempt: int) -> float:
        """计算第 attempt 次重试（从 0 开始）的等待间隔"""
        interval = min(self.initial_interval * (self.backoff_coefficient**attempt), self.maximum_interval)
        if self.jitter:
            interval = interval * (0.5 + random.random() * 0.5)
        return interval

    def interval_for(self, error: PipelineError, attempt: int) -> float:
        if isinstance(error, QuotaExceeded):
            wait = error.retry_after if error.retry_after is not None else self.quota_interval
            return min(wait, self.maximum_interval)
        return self.calculate_interval(attempt)


async def with_retry(
    func: Callable[..., Awaitable[T]],
    config: RetryConfig,
    *args,
    provider: Optional[str] = None,
    **kwargs,
) -> T:
    """带重试的异步调用

    只有瞬时错误会被重试；其余错误在归类后立即抛出。

    Raises:
        PipelineError: 最后一次失败的归类结果
    """
    last_error: Optional[PipelineError] = None

    for attempt in range(config.maximum_attempts):
        try:
            if config.timeout:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=config.timeout)
            return await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_exception(exc, provider=provider)
            if not error.retryable:
                logger.error(f"遇到不可重试错误: {type(error).__name__}: {error}")
                if error is exc:
                    raise
                raise error from exc

            last_error = error
            if attempt < config.maximum_attempts - 1:
                interval = config.interval_for(error, attempt)
                logger.warning(
                    f"执行失败: {type(error).__name__}: {error}，"
                    f"第 {attempt + 1}/{config.maximum_attempts} 次尝试，"
                    f"等待 {interval:.2f}s 后重试"
                )
                await asyncio.sleep(interval)
            else:
                logger.error(
                    f"重试次数耗尽（{config.maximum_attempts} 次），"
                    f"最后错误: {type(error).__name__}: {error}"
                )

    if last_error is not None:
        raise last_error

    raise RuntimeError("with_retry: maximum_attempts 必须大于 0")
