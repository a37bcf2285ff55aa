"""
提交处理编排

驱动提交在流水线中的状态变化：

    submitted → processing → ocr_complete → grading → graded
                           ↘ review_needed（识别置信度不足，等待人工）
    任意阶段 → error（永久错误或重试耗尽）

所有写入都是条件更新；冲突说明其他 worker 已推进状态，按成功空操作处理。
同一提交同一时刻只由一个 worker 处理（按提交 ID 加锁），锁被占用时消息延后重投。
重复投递进入已完成阶段时不重复工作，只补发下一阶段的任务。
后续任务发布失败与存储异常同样计入重试，耗尽后进入 error。
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from correcte.config.settings import PipelineSettings, get_pipeline_settings
from correcte.models.enums import (
    GradedBy,
    NotificationType,
    ProcessingStage,
    SubmissionStatus,
    TaskType,
    Topic,
)
from correcte.models.submission import ErrorRecord, GradeResult, Submission, SubmissionPatch, utc_now
from correcte.repositories.submission import ExpectedState, SubmissionStore
from correcte.services.cache import TwoTierCache
from correcte.services.errors import (
    IntegrityConflict,
    InvalidInput,
    ProviderUnavailable,
    classify_exception,
)
from correcte.services.extraction import ExtractionService
from correcte.services.grading import GradingService
from correcte.services.notification import build_submission_notification, publish_notification
from correcte.services.submission_state import IN_FLIGHT
from correcte.services.task_queue import (
    HandlerResult,
    PublishOptions,
    SubscribeOptions,
    TaskContext,
    TaskQueue,
)

logger = logging.getLogger(__name__)


class SubmissionOrchestrator:
    """提交处理编排器（依赖全部显式注入）"""

    def __init__(
        self,
        store: SubmissionStore,
        queue: TaskQueue,
        extraction: ExtractionService,
        grading: GradingService,
        cache: TwoTierCache,
        settings: Optional[PipelineSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.queue = queue
        self.extraction = extraction
        self.grading = grading
        self.cache = cache
        self.settings = settings or get_pipeline_settings()
        self._clock = clock

    def register(self, options: Optional[SubscribeOptions] = None) -> None:
        """在队列上注册 submission.process 与 submission.grade 处理器"""
        self.queue.subscribe(Topic.PROCESS_SUBMISSION, self.handle_process_submission, options)
        self.queue.subscribe(Topic.GRADE_SUBMISSION, self.handle_grade_submission, options)

    # ==================== 队列发布 ====================

    async def _publish_stage(self, topic: str, submission_id: str, task_type: TaskType) -> bool:
        receipt = await self.queue.publish(
            topic,
            {"submission_id": submission_id},
            PublishOptions(idempotency_key=f"{submission_id}:{task_type.value}", task_type=task_type.value),
        )
        return receipt.accepted

    async def _notify(self, submission: Submission, notification_type: NotificationType) -> bool:
        receipt = await publish_notification(self.queue, build_submission_notification(submission, notification_type))
        return receipt.accepted

    async def _after_publish(
        self,
        submission: Submission,
        accepted: bool,
        stage: ProcessingStage,
        ctx: TaskContext,
    ) -> HandlerResult:
        """后续任务或通知发布失败时按瞬时错误记录，重试耗尽后进入 error"""
        if accepted:
            return HandlerResult.success()
        error = ProviderUnavailable(f"{stage.value} 消息发布失败")
        if submission.status == SubmissionStatus.ERROR:
            return HandlerResult.retry(error)
        return await self._handle_failure(submission, stage, error, ctx)

    async def _resume_completed(self, submission: Submission, ctx: TaskContext) -> HandlerResult:
        """已完成阶段的重复投递：不重复工作，只补发后续任务或通知"""
        status = submission.status
        stage = ProcessingStage.NOTIFICATION
        if status == SubmissionStatus.OCR_COMPLETE:
            stage = ProcessingStage.QUEUE
            accepted = await self._publish_stage(
                Topic.GRADE_SUBMISSION, submission.submission_id, TaskType.GRADE_SUBMISSION
            )
        elif status == SubmissionStatus.GRADED:
            accepted = await self._notify(submission, NotificationType.GRADING_COMPLETED)
        elif status == SubmissionStatus.REVIEW_NEEDED:
            accepted = await self._notify(submission, NotificationType.REVIEW_NEEDED)
        elif status == SubmissionStatus.ERROR:
            accepted = await self._notify(submission, NotificationType.PROCESSING_ERROR)
        else:
            accepted = True

        logger.info(f"[Orchestrator] 重复投递，跳过已完成阶段: {submission.submission_id} ({status.value})")
        return await self._after_publish(submission, accepted, stage, ctx)

    # ==================== 加锁执行 ====================

    async def _with_submission_lock(self, ctx: TaskContext, stage: str, runner) -> HandlerResult:
        """
        持有提交锁执行 runner

        锁被占用时延后重投（不计入重试次数）；执行期间按 TTL 的 1/3 续期锁。
        runner 之外抛出的存储异常按 persistence 阶段的失败记录。
        """
        submission_id = ctx.payload.get("submission_id")
        if not submission_id:
            return HandlerResult.fatal(InvalidInput("消息缺少 submission_id"))

        lock_name = f"submission:{submission_id}"
        token = await self.cache.acquire_lock(lock_name, self.settings.submission_lock_ttl_seconds)
        if token is None:
            logger.info(f"[Orchestrator] 提交正由其他 worker 处理，稍后重投: {submission_id} ({stage})")
            return HandlerResult.defer(self.settings.submission_lock_retry_seconds)

        keeper = asyncio.create_task(self._keep_lock(lock_name, token))
        try:
            submission = await self.store.get_submission(submission_id)
            if submission is None:
                return HandlerResult.fatal(InvalidInput(f"提交不存在: {submission_id}"))
            try:
                return await runner(submission, ctx)
            except Exception as e:
                logger.error(f"[Orchestrator] 处理异常: {submission_id} ({stage}): {e}", exc_info=True)
                return await self._fail_unexpected(submission_id, e, ctx)
        finally:
            keeper.cancel()
            await asyncio.gather(keeper, return_exceptions=True)
            await self.cache.release_lock(lock_name, token)

    async def _keep_lock(self, lock_name: str, token: str) -> None:
        ttl = self.settings.submission_lock_ttl_seconds
        while True:
            await asyncio.sleep(ttl / 3)
            if not await self.cache.extend_lock(lock_name, token, ttl):
                logger.warning(f"[Orchestrator] 提交锁续期失败，锁可能已过期: {lock_name}")
                return

    async def _fail_unexpected(self, submission_id: str, exc: BaseException, ctx: TaskContext) -> HandlerResult:
        # 重新读取最新状态；存储仍不可用时异常交给队列重投
        current = await self.store.get_submission(submission_id)
        if current is None:
            return HandlerResult.fatal(InvalidInput(f"提交不存在: {submission_id}"))
        return await self._handle_failure(current, ProcessingStage.PERSISTENCE, exc, ctx)

    async def _update(self, submission_id: str, expected: ExpectedState, patch: SubmissionPatch) -> Optional[Submission]:
        result = await self.store.update_submission(submission_id, expected, patch)
        if not result.ok:
            logger.info(f"[Orchestrator] 条件更新冲突，视为已处理: {submission_id} ({result.reason})")
            return None
        return result.submission

    async def _handle_failure(
        self,
        submission: Submission,
        stage: ProcessingStage,
        exc: BaseException,
        ctx: TaskContext,
    ) -> HandlerResult:
        """
        记录失败

        瞬时错误：追加错误记录、重试计数 +1，交给队列重投；
        最后一次投递或永久错误：同一次更新中置为 error 并通知。
        """
        error = classify_exception(exc)
        if isinstance(error, IntegrityConflict):
            return HandlerResult.success()

        record = ErrorRecord(
            stage=stage,
            kind=error.kind,
            message=error.message,
            timestamp=self._clock(),
            attempt=ctx.attempt,
        )
        retry_count = submission.metadata.retry_count
        if error.retryable:
            retry_count = min(retry_count + 1, ctx.max_attempts)

        final = not error.retryable or ctx.is_last_attempt
        patch = SubmissionPatch(
            status=SubmissionStatus.ERROR if final else None,
            retry_count=retry_count,
            append_errors=[record],
        )
        updated = await self._update(submission.submission_id, submission.status, patch)

        if final:
            logger.error(
                f"[Orchestrator] 提交处理失败: {submission.submission_id}, stage={stage.value}, "
                f"kind={error.kind.value}, attempt={ctx.attempt}/{ctx.max_attempts}, error={error.message}"
            )
            if updated is not None:
                await self._notify(updated, NotificationType.PROCESSING_ERROR)
        else:
            logger.warning(
                f"[Orchestrator] 瞬时错误，等待重投: {submission.submission_id}, stage={stage.value}, "
                f"attempt={ctx.attempt}/{ctx.max_attempts}, error={error.message}"
            )

        if error.retryable:
            return HandlerResult.retry(error)
        return HandlerResult.fatal(error)

    # ==================== submission.process ====================

    async def handle_process_submission(self, ctx: TaskContext) -> HandlerResult:
        return await self._with_submission_lock(ctx, "process", self._process_submission)

    async def _process_submission(self, submission: Submission, ctx: TaskContext) -> HandlerResult:
        submission_id = submission.submission_id

        if submission.status == SubmissionStatus.SUBMITTED:
            submission = await self._update(
                submission_id,
                SubmissionStatus.SUBMITTED,
                SubmissionPatch(status=SubmissionStatus.PROCESSING, processing_started_at=self._clock()),
            )
            if submission is None:
                return HandlerResult.success()
        elif submission.status != SubmissionStatus.PROCESSING:
            return await self._resume_completed(submission, ctx)

        logger.info(f"[Orchestrator] 开始文本提取: {submission_id}, files={len(submission.files)}, attempt={ctx.attempt}")
        try:
            outcome = await self.extraction.extract_submission(submission.files, on_progress=ctx.extend_lease)
        except Exception as e:
            return await self._handle_failure(submission, ProcessingStage.EXTRACTION, e, ctx)

        now = self._clock()
        passed = outcome.confidence >= self.settings.ocr_confidence_floor
        patch = SubmissionPatch(
            status=SubmissionStatus.OCR_COMPLETE if passed else SubmissionStatus.REVIEW_NEEDED,
            extracted_text=outcome.text,
            text_confidence=outcome.confidence,
            extraction_provider=outcome.provider,
            ocr_completed_at=now if passed else None,
            ocr_duration_ms=outcome.duration_ms,
        )
        updated = await self._update(submission_id, SubmissionStatus.PROCESSING, patch)
        if updated is None:
            return HandlerResult.success()

        if passed:
            logger.info(f"[Orchestrator] 文本提取完成: {submission_id}, confidence={outcome.confidence:.2f}")
            accepted = await self._publish_stage(Topic.GRADE_SUBMISSION, submission_id, TaskType.GRADE_SUBMISSION)
        else:
            logger.info(
                f"[Orchestrator] 识别置信度不足，转人工确认: {submission_id}, "
                f"confidence={outcome.confidence:.2f} < {self.settings.ocr_confidence_floor}"
            )
            accepted = await self._notify(updated, NotificationType.REVIEW_NEEDED)

        stage = ProcessingStage.QUEUE if passed else ProcessingStage.NOTIFICATION
        return await self._after_publish(updated, accepted, stage, ctx)

    # ==================== submission.grade ====================

    async def handle_grade_submission(self, ctx: TaskContext) -> HandlerResult:
        return await self._with_submission_lock(ctx, "grade", self._grade_submission)

    async def _grade_submission(self, submission: Submission, ctx: TaskContext) -> HandlerResult:
        submission_id = submission.submission_id

        if submission.status == SubmissionStatus.OCR_COMPLETE:
            submission = await self._update(
                submission_id,
                SubmissionStatus.OCR_COMPLETE,
                SubmissionPatch(status=SubmissionStatus.GRADING, grading_started_at=self._clock()),
            )
            if submission is None:
                return HandlerResult.success()
        elif submission.status == SubmissionStatus.GRADED:
            return await self._resume_completed(submission, ctx)
        elif submission.status != SubmissionStatus.GRADING:
            logger.info(f"[Orchestrator] 当前状态无需评分，跳过: {submission_id} ({submission.status.value})")
            return HandlerResult.success()

        rubric = await self.store.get_assignment_rubric(submission.assignment_id)
        if rubric is None:
            return await self._handle_failure(
                submission,
                ProcessingStage.GRADING,
                InvalidInput(f"作业没有评分细则: {submission.assignment_id}"),
                ctx,
            )

        logger.info(f"[Orchestrator] 开始评分: {submission_id}, rubric={rubric.rubric_id}, attempt={ctx.attempt}")
        try:
            outcome = await self.grading.grade(submission.extracted_text or "", rubric)
        except Exception as e:
            return await self._handle_failure(submission, ProcessingStage.GRADING, e, ctx)

        now = self._clock()
        grade = outcome.grade.model_copy(update={"graded_at": now})
        updated = await self._update(
            submission_id,
            SubmissionStatus.GRADING,
            SubmissionPatch(
                status=SubmissionStatus.GRADED,
                grade=grade,
                graded_at=now,
                grading_duration_ms=outcome.duration_ms,
            ),
        )
        if updated is None:
            return HandlerResult.success()

        logger.info(f"[Orchestrator] 评分完成: {submission_id}, score={grade.score:g}/{grade.max_score:g}")
        accepted = await self._notify(updated, NotificationType.GRADING_COMPLETED)
        return await self._after_publish(updated, accepted, ProcessingStage.NOTIFICATION, ctx)

    # ==================== 人工操作 ====================

    async def retrigger(self, submission_id: str) -> bool:
        """
        人工重新触发处理（仅 error 状态）

        已有识别文本时回到 ocr_complete，否则回到 submitted；重试计数清零。
        """
        submission = await self.store.get_submission(submission_id)
        if submission is None or submission.status != SubmissionStatus.ERROR:
            return False

        has_text = bool(submission.extracted_text) and submission.metadata.ocr_completed_at is not None
        target = SubmissionStatus.OCR_COMPLETE if has_text else SubmissionStatus.SUBMITTED
        updated = await self._update(
            submission_id,
            SubmissionStatus.ERROR,
            SubmissionPatch(status=target, retry_count=0),
        )
        if updated is None:
            return False

        logger.info(f"[Orchestrator] 人工重新触发: {submission_id} → {target.value}")
        return await self._publish_stage(Topic.PROCESS_SUBMISSION, submission_id, TaskType.PROCESS_SUBMISSION)

    async def resolve_review(self, submission_id: str, corrected_text: Optional[str] = None) -> bool:
        """人工确认（或修正）低置信度文本后继续评分"""
        submission = await self.store.get_submission(submission_id)
        if submission is None or submission.status != SubmissionStatus.REVIEW_NEEDED:
            return False

        patch = SubmissionPatch(status=SubmissionStatus.OCR_COMPLETE, ocr_completed_at=self._clock())
        if corrected_text is not None:
            if not corrected_text.strip():
                raise InvalidInput("修正后的文本为空")
            patch.extracted_text = corrected_text
            patch.text_confidence = 1.0
        updated = await self._update(submission_id, SubmissionStatus.REVIEW_NEEDED, patch)
        if updated is None:
            return False

        logger.info(f"[Orchestrator] 人工确认文本: {submission_id}")
        return await self._publish_stage(Topic.GRADE_SUBMISSION, submission_id, TaskType.GRADE_SUBMISSION)

    async def apply_review_override(self, submission_id: str, grade: GradeResult, reviewer_id: str) -> Submission:
        """
        教师复核覆盖评分（graded / reviewed → reviewed）

        Raises:
            IntegrityConflict: 提交不存在、状态不允许复核或并发修改
        """
        submission = await self.store.get_submission(submission_id)
        if submission is None:
            raise IntegrityConflict(f"提交不存在: {submission_id}")
        if submission.status not in (SubmissionStatus.GRADED, SubmissionStatus.REVIEWED):
            raise IntegrityConflict(f"当前状态不允许复核: {submission_id} ({submission.status.value})")

        previous = submission.grade
        ai_involved = previous is not None and previous.graded_by in (GradedBy.AI, GradedBy.BOTH)
        now = self._clock()
        reviewed_grade = grade.model_copy(
            update={
                "graded_by": GradedBy.BOTH if ai_involved else GradedBy.HUMAN,
                "teacher_modified": True,
                "teacher_modified_at": now,
                "reviewer_id": reviewer_id,
                "model": previous.model if previous is not None else grade.model,
                "graded_at": grade.graded_at or (previous.graded_at if previous is not None else now),
            }
        )
        result = await self.store.update_submission(
            submission_id,
            (SubmissionStatus.GRADED, SubmissionStatus.REVIEWED),
            SubmissionPatch(status=SubmissionStatus.REVIEWED, grade=reviewed_grade),
        )
        if not result.ok:
            raise IntegrityConflict(f"复核写入冲突: {submission_id} ({result.reason})")

        logger.info(f"[Orchestrator] 教师复核完成: {submission_id}, reviewer={reviewer_id}, score={grade.score:g}")
        return result.submission

    async def find_stale(self, now: Optional[datetime] = None) -> List[Submission]:
        """
        查找停留在 processing / ocr_complete / grading 超过时间窗口的提交（供人工重新入队）

        ocr_complete 以识别完成时间计，说明评分任务丢失或积压。
        """
        now = now or self._clock()
        threshold = now - timedelta(seconds=self.settings.staleness_window_seconds)

        stale: List[Submission] = []
        for submission in await self.store.list_submissions(IN_FLIGHT):
            metadata = submission.metadata
            if submission.status == SubmissionStatus.PROCESSING:
                started = metadata.processing_started_at
            elif submission.status == SubmissionStatus.OCR_COMPLETE:
                started = metadata.ocr_completed_at
            else:
                started = metadata.grading_started_at
            started = started or metadata.submitted_at
            if started < threshold:
                stale.append(submission)

        if stale:
            logger.warning(f"[Orchestrator] 发现 {len(stale)} 个停滞提交")
        return stale
