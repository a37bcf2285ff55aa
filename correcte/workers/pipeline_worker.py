"""流水线 Worker 进程

按部署模式组装组件并消费三个主题：
1. submission.process（文本提取）
2. submission.grade（评分）
3. notification.send（通知分发）

使用方法：
    python -m correcte.workers.pipeline_worker

    # 指定并发数
    WORKER_CONCURRENCY=8 python -m correcte.workers.pipeline_worker
"""

import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from correcte.config.deployment_mode import DeploymentConfig
from correcte.config.providers import ExtractionConfig, ExtractionProvider, GradingConfig
from correcte.config.settings import PipelineSettings, get_pipeline_settings
from correcte.repositories.submission import InMemorySubmissionStore, PostgresSubmissionStore, SubmissionStore
from correcte.services.brokers import Broker, InMemoryBroker, RedisStreamBroker
from correcte.services.cache import CacheConfig, TwoTierCache
from correcte.services.extraction import (
    ExtractionService,
    LocalFileLoader,
    PlainTextExtractor,
    TextExtractor,
    create_extractor,
)
from correcte.services.grading import GradingService
from correcte.services.notification import (
    InMemoryInAppChannel,
    LoggingEmailChannel,
    NotificationFanout,
)
from correcte.services.orchestrator import SubmissionOrchestrator
from correcte.services.task_queue import SubscribeOptions, TaskQueue

logger = logging.getLogger(__name__)


class PipelineWorker:
    """Worker 进程：组装组件、启动队列消费、处理关闭信号"""

    def __init__(
        self,
        deployment: DeploymentConfig,
        settings: Optional[PipelineSettings] = None,
    ):
        self.deployment = deployment
        self.settings = settings or get_pipeline_settings()
        self._stop_event = asyncio.Event()

        self.cache: Optional[TwoTierCache] = None
        self.queue: Optional[TaskQueue] = None
        self.store: Optional[SubmissionStore] = None
        self.orchestrator: Optional[SubmissionOrchestrator] = None
        self.fanout: Optional[NotificationFanout] = None

    def _build_broker(self) -> Broker:
        if self.deployment.uses_redis:
            return RedisStreamBroker(
                self.deployment.redis_url,
                key_prefix=self.settings.queue_prefix,
                durable_replicas=self.settings.queue_durable_replicas,
            )
        return InMemoryBroker()

    async def _build_store(self) -> SubmissionStore:
        if self.deployment.is_database_mode:
            return await PostgresSubmissionStore.connect(self.deployment.database_url)
        return InMemorySubmissionStore()

    def _build_extractors(self) -> List[TextExtractor]:
        config = ExtractionConfig.from_env()
        extractors: List[TextExtractor] = [create_extractor(config)]
        if config.provider != ExtractionProvider.PLAIN_TEXT:
            extractors.append(PlainTextExtractor())
        return extractors

    async def build(self) -> None:
        """按部署模式组装所有组件"""
        self.cache = TwoTierCache.from_url(self.deployment.redis_url, CacheConfig.from_settings(self.settings))
        self.queue = TaskQueue(self._build_broker(), settings=self.settings)
        self.store = await self._build_store()

        extraction = ExtractionService(
            self._build_extractors(),
            cache=self.cache,
            loader=LocalFileLoader(os.getenv("UPLOAD_DIR")),
            settings=self.settings,
        )
        grading = GradingService.from_config(GradingConfig.from_env(), cache=self.cache, settings=self.settings)

        options = SubscribeOptions(
            concurrency=self.settings.worker_concurrency,
            prefetch=self.settings.worker_prefetch,
        )
        self.orchestrator = SubmissionOrchestrator(
            store=self.store,
            queue=self.queue,
            extraction=extraction,
            grading=grading,
            cache=self.cache,
            settings=self.settings,
        )
        self.orchestrator.register(options)

        self.fanout = NotificationFanout(
            in_app=InMemoryInAppChannel(),
            cache=self.cache,
            email=LoggingEmailChannel(),
        )
        self.fanout.register(self.queue, options)

    async def run(self) -> None:
        await self.build()
        self._setup_signal_handlers()

        await self.queue.start()
        logger.info(
            f"Worker 已启动: mode={self.deployment.mode.value}, "
            f"redis={'yes' if self.deployment.uses_redis else 'no'}, "
            f"concurrency={self.settings.worker_concurrency}"
        )

        await self._stop_event.wait()
        await self.shutdown()

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop_event.set)
            except NotImplementedError:
                # Windows 不支持 add_signal_handler
                pass

    async def shutdown(self) -> None:
        """优雅关闭"""
        logger.info("收到关闭信号，开始优雅关闭...")
        if self.queue is not None:
            await self.queue.close()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresSubmissionStore):
            await self.store.close()
        logger.info("Worker 已关闭")


async def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    worker = PipelineWorker(DeploymentConfig.from_env())
    await worker.run()


def run() -> None:
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    asyncio.run(main())


if __name__ == "__main__":
    run()
