"""
文本提取服务

- AzureReadExtractor: Azure Computer Vision Read API v3.2（异步操作，轮询结果，支持手写）
- PlainTextExtractor: 纯文本上传直接解码
- ExtractionService: 缓存优先 + 请求级重试 + 多文件合并

提供商在构造时由 ExtractionProvider 枚举选定。
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from correcte.config.providers import ExtractionConfig, ExtractionProvider
from correcte.config.settings import PipelineSettings, get_pipeline_settings
from correcte.models.submission import SourceFile
from correcte.services.cache import TwoTierCache
from correcte.services.errors import (
    InvalidInput,
    MalformedResponse,
    ProviderTimeout,
)
from correcte.utils.hashing import stable_key
from correcte.utils.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/bmp",
    "image/tiff",
    "application/pdf",
})
TEXT_MIME_TYPES = frozenset({"text/plain", "text/markdown"})


@dataclass
class ExtractedText:
    """单个文件的提取结果"""
    text: str
    confidence: float
    line_count: int
    provider: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractedText":
        return cls(
            text=data["text"],
            confidence=float(data["confidence"]),
            line_count=int(data["line_count"]),
            provider=data["provider"],
        )


@dataclass
class ExtractionOutcome:
    """整份提交的提取结果"""
    text: str
    confidence: float
    provider: str
    duration_ms: int
    cache_hits: int = 0


class TextExtractor(Protocol):
    """文本提取能力接口"""

    name: str

    def supports(self, mime_type: str) -> bool:
        ...

    async def extract(self, source: SourceFile, content: bytes) -> ExtractedText:
        ...


class FileLoader(Protocol):
    async def read(self, source: SourceFile) -> bytes:
        ...


class LocalFileLoader:
    """从本地上传目录读取文件"""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir) if base_dir else None

    def _resolve(self, uri: str) -> Path:
        path = Path(uri.removeprefix("file://"))
        if self.base_dir is not None and not path.is_absolute():
            path = self.base_dir / path
        return path

    async def read(self, source: SourceFile) -> bytes:
        return await asyncio.to_thread(self._resolve(source.uri).read_bytes)


class PlainTextExtractor:
    """纯文本文件：直接解码，置信度为 1.0"""

    name = "plain_text"

    def supports(self, mime_type: str) -> bool:
        return mime_type in TEXT_MIME_TYPES

    async def extract(self, source: SourceFile, content: bytes) -> ExtractedText:
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise InvalidInput(f"文本文件不是有效的 UTF-8: {source.uri}", provider=self.name) from e
        lines = [line for line in text.splitlines() if line.strip()]
        return ExtractedText(text=text.strip(), confidence=1.0, line_count=len(lines), provider=self.name)


class AzureReadExtractor:
    """Azure Computer Vision Read API"""

    name = "azure_read"
    API_PATH = "/vision/v3.2/read/analyze"

    def __init__(
        self,
        config: ExtractionConfig,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not config.azure_endpoint:
            raise ValueError("AZURE_COMPUTER_VISION_ENDPOINT 未配置")
        self.config = config
        self._client = client
        self._sleep = sleep

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def supports(self, mime_type: str) -> bool:
        return mime_type in IMAGE_MIME_TYPES

    async def extract(self, source: SourceFile, content: bytes) -> ExtractedText:
        client = await self._get_client()
        response = await client.post(
            f"{self.config.azure_endpoint}{self.API_PATH}",
            params={"language": self.config.language},
            headers={
                "Content-Type": "application/octet-stream",
                "Ocp-Apim-Subscription-Key": self.config.azure_key,
            },
            content=content,
        )
        response.raise_for_status()

        operation_location = response.headers.get("Operation-Location")
        if not operation_location:
            raise MalformedResponse("Azure 未返回 Operation-Location", provider=self.name)

        result = await self._poll_read_result(client, operation_location)
        return self._process_read_result(result)

    async def _poll_read_result(self, client: httpx.AsyncClient, operation_location: str) -> Dict[str, Any]:
        headers = {"Ocp-Apim-Subscription-Key": self.config.azure_key}
        deadline = time.monotonic() + self.config.poll_timeout_seconds

        while True:
            if time.monotonic() > deadline:
                raise ProviderTimeout(
                    f"等待 OCR 结果超时（{self.config.poll_timeout_seconds}s）", provider=self.name
                )
            await self._sleep(self.config.poll_interval_seconds)

            response = await client.get(operation_location, headers=headers)
            response.raise_for_status()
            result = response.json()
            status = result.get("status")

            if status == "succeeded":
                return result
            if status == "failed":
                raise InvalidInput("Azure 无法识别该文件", provider=self.name)

    def _process_read_result(self, result: Dict[str, Any]) -> ExtractedText:
        read_results = (result.get("analyzeResult") or {}).get("readResults") or []

        lines: List[str] = []
        total_confidence = 0.0
        word_count = 0
        for page in read_results:
            for line in page.get("lines") or []:
                lines.append(line.get("text", ""))
                for word in line.get("words") or []:
                    total_confidence += float(word.get("confidence", 0.0))
                    word_count += 1

        confidence = total_confidence / word_count if word_count else 0.0
        return ExtractedText(
            text="\n".join(lines).strip(),
            confidence=confidence,
            line_count=len(lines),
            provider=self.name,
        )


def create_extractor(config: ExtractionConfig, client: Optional[httpx.AsyncClient] = None) -> TextExtractor:
    """按配置创建文本提取器"""
    if config.provider == ExtractionProvider.AZURE_READ:
        return AzureReadExtractor(config, client=client)
    if config.provider == ExtractionProvider.PLAIN_TEXT:
        return PlainTextExtractor()
    raise ValueError(f"不支持的文本提取提供商: {config.provider}")


class ExtractionService:
    """
    文本提取服务

    对每个文件：查缓存 → 调用提取器（带重试与超时）→ 写缓存。
    多文件按顺序拼接，置信度按行数加权平均。
    """

    def __init__(
        self,
        extractors: Sequence[TextExtractor],
        cache: Optional[TwoTierCache] = None,
        loader: Optional[FileLoader] = None,
        settings: Optional[PipelineSettings] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        if not extractors:
            raise ValueError("至少需要一个文本提取器")
        self.extractors = list(extractors)
        self.cache = cache
        self.loader = loader or LocalFileLoader()
        self.settings = settings or get_pipeline_settings()
        self.retry_config = retry_config or RetryConfig(
            initial_interval=self.settings.provider_initial_backoff_seconds,
            maximum_attempts=self.settings.provider_max_attempts,
            maximum_interval=30.0,
            timeout=self.settings.provider_timeout_seconds,
            quota_interval=self.settings.provider_quota_backoff_seconds,
        )

    def _extractor_for(self, source: SourceFile) -> TextExtractor:
        for extractor in self.extractors:
            if extractor.supports(source.mime_type):
                return extractor
        raise InvalidInput(f"不支持的文件类型: {source.mime_type} ({source.uri})")

    def _cache_key(self, extractor: TextExtractor, digest: str) -> str:
        return "extraction:" + stable_key(digest, extractor.name, getattr(getattr(extractor, "config", None), "language", None))

    async def extract_file(self, source: SourceFile) -> Tuple[ExtractedText, bool]:
        """提取单个文件，返回（结果, 是否命中缓存）"""
        extractor = self._extractor_for(source)

        content: Optional[bytes] = None
        digest = source.checksum
        if not digest:
            content = await self.loader.read(source)
            digest = hashlib.sha256(content).hexdigest()
        cache_key = self._cache_key(extractor, digest)

        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.debug(f"[ExtractionService] 缓存命中: {source.uri}")
                return ExtractedText.from_dict(cached), True

        if content is None:
            content = await self.loader.read(source)
        if not content:
            raise InvalidInput(f"文件为空: {source.uri}")

        result = await with_retry(extractor.extract, self.retry_config, source, content, provider=extractor.name)

        if self.cache is not None and result.text:
            await self.cache.set(cache_key, result.to_dict(), self.settings.extraction_cache_ttl_seconds)
        return result, False

    async def extract_submission(
        self,
        files: Sequence[SourceFile],
        on_progress: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> ExtractionOutcome:
        """
        提取整份提交的文本

        Raises:
            InvalidInput: 文件类型不支持、文件无法读取或合并后文本为空
            PipelineError: 提供商调用失败（已归类）
        """
        started = time.monotonic()
        results: List[ExtractedText] = []
        cache_hits = 0

        for source in files:
            result, hit = await self.extract_file(source)
            results.append(result)
            cache_hits += int(hit)
            if on_progress is not None:
                await on_progress()

        texts = [r.text for r in results if r.text]
        if not texts:
            raise InvalidInput("识别文本为空")

        total_lines = sum(r.line_count for r in results)
        if total_lines:
            confidence = sum(r.confidence * r.line_count for r in results) / total_lines
        else:
            confidence = sum(r.confidence for r in results) / len(results)

        providers = sorted({r.provider for r in results})
        outcome = ExtractionOutcome(
            text="\n\n".join(texts),
            confidence=round(min(max(confidence, 0.0), 1.0), 4),
            provider="+".join(providers),
            duration_ms=int((time.monotonic() - started) * 1000),
            cache_hits=cache_hits,
        )
        logger.info(
            f"[ExtractionService] 提取完成: files={len(files)}, confidence={outcome.confidence:.2f}, "
            f"cache_hits={cache_hits}, duration={outcome.duration_ms}ms"
        )
        return outcome
