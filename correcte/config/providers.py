"""外部服务提供商配置

统一管理文本提取（OCR）与评分（LLM）两类提供商的配置。
提供商在构造时通过枚举选定，不在每次调用时按字符串分派。
"""

import os
from enum import Enum
from dataclasses import dataclass
from typing import Dict, Optional


class ExtractionProvider(Enum):
    """文本提取服务提供商"""
    AZURE_READ = "azure_read"    # Azure Computer Vision Read API（支持手写）
    PLAIN_TEXT = "plain_text"    # 纯文本上传，直接读取


class GradingProvider(Enum):
    """评分服务提供商"""
    OPENAI_COMPATIBLE = "openai_compatible"  # OpenAI / OpenRouter 兼容的 chat completions


@dataclass
class ExtractionConfig:
    """文本提取配置"""

    provider: ExtractionProvider = ExtractionProvider.AZURE_READ
    azure_endpoint: str = ""
    azure_key: str = ""
    language: str = "fr"
    detect_handwriting: bool = True
    poll_interval_seconds: float = 1.0
    poll_timeout_seconds: float = 120.0

    @classmethod
    def from_env(cls) -> "ExtractionConfig":
        """从环境变量加载配置

        未显式指定 OCR_PROVIDER 时：配置了 Azure 端点则使用 Azure，否则退化为纯文本。
        """
        endpoint = os.getenv("AZURE_COMPUTER_VISION_ENDPOINT", "").rstrip("/")
        provider_str = os.getenv("OCR_PROVIDER", "").strip().lower()

        if provider_str:
            provider = ExtractionProvider(provider_str)
        elif endpoint:
            provider = ExtractionProvider.AZURE_READ
        else:
            provider = ExtractionProvider.PLAIN_TEXT

        return cls(
            provider=provider,
            azure_endpoint=endpoint,
            azure_key=os.getenv("AZURE_COMPUTER_VISION_KEY", ""),
            language=os.getenv("OCR_LANGUAGE", "fr"),
            detect_handwriting=os.getenv("OCR_DETECT_HANDWRITING", "true").lower() in ("1", "true", "yes"),
            poll_interval_seconds=float(os.getenv("OCR_POLL_INTERVAL_SECONDS", "1.0")),
            poll_timeout_seconds=float(os.getenv("OCR_POLL_TIMEOUT_SECONDS", "120.0")),
        )


@dataclass
class GradingConfig:
    """评分 LLM 配置"""

    provider: GradingProvider = GradingProvider.OPENAI_COMPATIBLE
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o"
    temperature: float = 0.2
    max_tokens: int = 2000
    seed: Optional[int] = None
    language: str = "français"

    @classmethod
    def from_env(cls) -> "GradingConfig":
        """从环境变量加载配置"""
        openrouter_key = os.getenv("OPENROUTER_API_KEY", "")
        openai_key = os.getenv("OPENAI_API_KEY", "")

        if openrouter_key and not openai_key:
            default_base = "https://openrouter.ai/api/v1"
        else:
            default_base = "https://api.openai.com/v1"

        raw_seed = os.getenv("GRADING_SEED", "")
        return cls(
            provider=GradingProvider(os.getenv("GRADING_PROVIDER", GradingProvider.OPENAI_COMPATIBLE.value)),
            api_key=openai_key or openrouter_key,
            base_url=os.getenv("LLM_BASE_URL", default_base).rstrip("/"),
            model=os.getenv("GRADING_MODEL", "gpt-4o"),
            temperature=float(os.getenv("GRADING_TEMPERATURE", "0.2")),
            max_tokens=int(os.getenv("GRADING_MAX_TOKENS", "2000")),
            seed=int(raw_seed) if raw_seed.strip() else None,
            language=os.getenv("GRADING_LANGUAGE", "français"),
        )

    def get_headers(self) -> Dict[str, str]:
        """构造请求头"""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
