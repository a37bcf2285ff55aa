"""Centralized runtime settings for the submission pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


def _int_env(name: str, default: int, *, min_value: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError:
            value = default
    if min_value is not None and value < min_value:
        return min_value
    return value


def _float_env(name: str, default: float, *, min_value: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = float(raw)
        except ValueError:
            value = default
    if min_value is not None and value < min_value:
        return min_value
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class PipelineSettings:
    # 队列
    queue_prefix: str
    queue_max_retries: int
    queue_initial_backoff_seconds: float
    queue_backoff_multiplier: float
    queue_max_backoff_seconds: float
    queue_visibility_timeout_seconds: float
    queue_block_ms: int
    queue_reconnect_delay_seconds: float
    queue_scheduler_interval_seconds: float
    queue_durable_replicas: int
    worker_concurrency: int
    worker_prefetch: int

    # 缓存
    cache_prefix: str
    cache_local_enabled: bool
    cache_local_max_entries: int
    cache_fallback_retry_seconds: float
    extraction_cache_ttl_seconds: int
    grading_cache_ttl_seconds: int
    grading_cache_max_temperature: float

    # 外部调用
    provider_timeout_seconds: float
    provider_max_attempts: int
    provider_initial_backoff_seconds: float
    provider_quota_backoff_seconds: float

    # 状态机
    ocr_confidence_floor: float
    staleness_window_seconds: float
    submission_lock_ttl_seconds: float
    submission_lock_retry_seconds: float


@lru_cache(maxsize=1)
def get_pipeline_settings() -> PipelineSettings:
    """Load pipeline settings from env with stable defaults."""
    return PipelineSettings(
        queue_prefix=os.getenv("QUEUE_PREFIX", "correcte"),
        queue_max_retries=_int_env("QUEUE_MAX_RETRIES", 3, min_value=1),
        queue_initial_backoff_seconds=_float_env("QUEUE_INITIAL_BACKOFF_SECONDS", 2.0, min_value=0.0),
        queue_backoff_multiplier=_float_env("QUEUE_BACKOFF_MULTIPLIER", 2.0, min_value=1.0),
        queue_max_backoff_seconds=_float_env("QUEUE_MAX_BACKOFF_SECONDS", 300.0, min_value=0.0),
        queue_visibility_timeout_seconds=_float_env("QUEUE_VISIBILITY_TIMEOUT_SECONDS", 120.0, min_value=1.0),
        queue_block_ms=_int_env("QUEUE_BLOCK_MS", 5000, min_value=0),
        queue_reconnect_delay_seconds=_float_env("QUEUE_RECONNECT_DELAY_SECONDS", 5.0, min_value=0.1),
        queue_scheduler_interval_seconds=_float_env("QUEUE_SCHEDULER_INTERVAL_SECONDS", 1.0, min_value=0.01),
        queue_durable_replicas=_int_env("QUEUE_DURABLE_REPLICAS", 0, min_value=0),
        worker_concurrency=_int_env("WORKER_CONCURRENCY", 4, min_value=1),
        worker_prefetch=_int_env("WORKER_PREFETCH", 1, min_value=1),
        cache_prefix=os.getenv("CACHE_PREFIX", "correcte:cache"),
        cache_local_enabled=_bool_env("CACHE_LOCAL_ENABLED", True),
        cache_local_max_entries=_int_env("CACHE_LOCAL_MAX_ENTRIES", 2048, min_value=1),
        cache_fallback_retry_seconds=_float_env("CACHE_FALLBACK_RETRY_SECONDS", 30.0, min_value=0.0),
        extraction_cache_ttl_seconds=_int_env("EXTRACTION_CACHE_TTL_SECONDS", 86400, min_value=0),
        grading_cache_ttl_seconds=_int_env("GRADING_CACHE_TTL_SECONDS", 3600, min_value=0),
        grading_cache_max_temperature=_float_env("GRADING_CACHE_MAX_TEMPERATURE", 0.4, min_value=0.0),
        provider_timeout_seconds=_float_env("PROVIDER_TIMEOUT_SECONDS", 120.0, min_value=1.0),
        provider_max_attempts=_int_env("PROVIDER_MAX_ATTEMPTS", 3, min_value=1),
        provider_initial_backoff_seconds=_float_env("PROVIDER_INITIAL_BACKOFF_SECONDS", 1.0, min_value=0.0),
        provider_quota_backoff_seconds=_float_env("PROVIDER_QUOTA_BACKOFF_SECONDS", 10.0, min_value=0.0),
        ocr_confidence_floor=_float_env("OCR_CONFIDENCE_FLOOR", 0.8, min_value=0.0),
        staleness_window_seconds=_float_env("STALENESS_WINDOW_SECONDS", 1800.0, min_value=1.0),
        submission_lock_ttl_seconds=_float_env("SUBMISSION_LOCK_TTL_SECONDS", 300.0, min_value=1.0),
        submission_lock_retry_seconds=_float_env("SUBMISSION_LOCK_RETRY_SECONDS", 2.0, min_value=0.0),
    )
