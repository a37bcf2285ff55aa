"""缓存键计算"""

import hashlib
import json
from typing import Any


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def stable_key(*parts: Any) -> str:
    """
    由若干部分计算稳定的缓存键

    各部分先规范化为排序后的 JSON，再取 SHA-256，保证相同输入跨进程得到相同键。
    """
    canonical = json.dumps(list(parts), sort_keys=True, ensure_ascii=False, default=str)
    return text_hash(canonical)
