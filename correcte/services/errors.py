"""
流水线错误分类

所有外部调用的失败都被归类为以下四类之一，编排器与队列据此决定重试、
死信或空操作：

- TransientError: 网络、超时、限流、5xx，可重试
- PermanentInputError: 文件损坏、格式不支持、内容为空，不重试
- PermanentProviderError: 提供商因策略原因拒绝，或响应无法解析，不重试
- IntegrityConflict: 条件更新冲突，说明其他 worker 已推进状态
"""

import asyncio
from typing import Optional

import httpx
from redis.exceptions import RedisError

from correcte.models.enums import ErrorKind


class PipelineError(Exception):
    """流水线错误基类"""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


class TransientError(PipelineError):
    kind = ErrorKind.TRANSIENT


class ProviderUnavailable(TransientError):
    """提供商不可达或返回 5xx"""


class ProviderTimeout(TransientError):
    """提供商调用超时"""


class QuotaExceeded(TransientError):
    """限流（429），可携带提供商建议的等待时间"""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, provider: Optional[str] = None):
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class PermanentInputError(PipelineError):
    kind = ErrorKind.PERMANENT_INPUT


class InvalidInput(PermanentInputError):
    """输入无法处理：格式不支持、文件损坏、识别文本为空"""


class PermanentProviderError(PipelineError):
    kind = ErrorKind.PERMANENT_PROVIDER


class ProviderRejected(PermanentProviderError):
    """提供商拒绝请求（认证失败、内容策略等）"""


class MalformedResponse(PermanentProviderError):
    """提供商响应无法解析为预期结构"""


class IntegrityConflict(PipelineError):
    """条件更新失败：记录已被其他 worker 修改"""

    kind = ErrorKind.INTEGRITY_CONFLICT


_INPUT_STATUS_CODES = {400, 413, 415, 422}
_RETRYABLE_STATUS_CODES = {408, 409, 425, 429}


def parse_retry_after(response: Optional[httpx.Response]) -> Optional[float]:
    if response is None:
        return None
    header = response.headers.get("Retry-After")
    if not header:
        return None
    try:
        return max(float(header), 0.0)
    except ValueError:
        return None


def classify_status(status_code: int, message: str, *, retry_after: Optional[float] = None,
                    provider: Optional[str] = None) -> PipelineError:
    """按 HTTP 状态码归类"""
    if status_code == 429:
        return QuotaExceeded(message, retry_after=retry_after, provider=provider)
    if status_code >= 500 or status_code in _RETRYABLE_STATUS_CODES:
        return ProviderUnavailable(message, provider=provider)
    if status_code in _INPUT_STATUS_CODES:
        return InvalidInput(message, provider=provider)
    return ProviderRejected(message, provider=provider)


def classify_exception(exc: BaseException, *, provider: Optional[str] = None) -> PipelineError:
    """
    将任意异常归类为 PipelineError

    未知异常按瞬时错误处理：宁可有界重试后进入死信，也不静默丢弃。
    """
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ProviderTimeout(f"调用超时: {exc or type(exc).__name__}", provider=provider)
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        status_code = response.status_code if response is not None else 500
        return classify_status(
            status_code,
            f"HTTP {status_code}: {exc}",
            retry_after=parse_retry_after(response),
            provider=provider,
        )
    if isinstance(exc, (FileNotFoundError, IsADirectoryError)):
        return InvalidInput(f"文件不可读: {exc}", provider=provider)
    if isinstance(exc, (httpx.TransportError, RedisError, ConnectionError, OSError)):
        return ProviderUnavailable(f"{type(exc).__name__}: {exc}", provider=provider)
    if isinstance(exc, UnicodeDecodeError):
        return InvalidInput(f"文本编码无效: {exc}", provider=provider)
    return TransientError(f"{type(exc).__name__}: {exc}", provider=provider)
