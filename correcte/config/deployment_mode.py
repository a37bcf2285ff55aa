"""
部署模式检测

流水线支持两种运行模式：
1. 数据库模式：提交记录保存在 PostgreSQL，队列与缓存使用 Redis
2. 无数据库模式：提交记录、队列、缓存全部在进程内存中（开发/离线）

Redis 与数据库独立检测：只配置 DATABASE_URL 时，队列与缓存退化为内存实现。
"""

import os
import logging
from enum import Enum
from typing import Optional


logger = logging.getLogger(__name__)


class DeploymentMode(Enum):
    """部署模式枚举"""
    DATABASE = "database"
    NO_DATABASE = "no_database"


class DeploymentConfig:
    """
    部署配置

    根据环境变量检测运行模式：
    - DATABASE_URL 为空或未设置：无数据库模式
    - REDIS_URL 为空或未设置：队列与缓存使用内存实现
    """

    def __init__(self, database_url: str = "", redis_url: str = ""):
        self._database_url = database_url.strip()
        self._redis_url = redis_url.strip()
        self._mode = DeploymentMode.DATABASE if self._database_url else DeploymentMode.NO_DATABASE

    @classmethod
    def from_env(cls) -> "DeploymentConfig":
        config = cls(
            database_url=os.getenv("DATABASE_URL", ""),
            redis_url=os.getenv("REDIS_URL", ""),
        )
        config.log_summary()
        return config

    def log_summary(self) -> None:
        if self.is_database_mode:
            logger.info(f"检测到数据库模式: {self.mask_connection_string(self._database_url)}")
        else:
            logger.info("检测到无数据库模式：DATABASE_URL 未设置，提交记录保存在内存中")

        if self._redis_url:
            logger.info(f"Redis 连接: {self.mask_connection_string(self._redis_url)}")
        else:
            logger.warning("REDIS_URL 未设置，任务队列与分布式缓存使用进程内实现")

    @staticmethod
    def mask_connection_string(conn_str: str) -> str:
        """遮蔽连接字符串中的凭据"""
        if not conn_str:
            return ""
        if "://" in conn_str:
            protocol, rest = conn_str.split("://", 1)
            if "@" in rest:
                _, host_part = rest.split("@", 1)
                return f"{protocol}://***@{host_part}"
            return f"{protocol}://{rest}"
        return "***"

    @property
    def mode(self) -> DeploymentMode:
        return self._mode

    @property
    def is_database_mode(self) -> bool:
        return self._mode == DeploymentMode.DATABASE

    @property
    def database_url(self) -> Optional[str]:
        return self._database_url or None

    @property
    def redis_url(self) -> Optional[str]:
        return self._redis_url or None

    @property
    def uses_redis(self) -> bool:
        return bool(self._redis_url)
