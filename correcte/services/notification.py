"""
通知分发服务

消费 notification.send：站内通知总是发送，邮件按用户偏好发送。
每个渠道按 (idempotency_key, channel) 去重，重投不会重复送达已成功的渠道。
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from correcte.models.enums import NotificationType, TaskType, Topic
from correcte.models.notification import NotificationMessage, NotificationPreferences
from correcte.models.submission import Submission
from correcte.services.cache import TwoTierCache
from correcte.services.errors import InvalidInput, TransientError, classify_exception
from correcte.services.task_queue import (
    HandlerResult,
    PublishOptions,
    PublishReceipt,
    SubscribeOptions,
    TaskContext,
    TaskQueue,
)

logger = logging.getLogger(__name__)

CHANNEL_IN_APP = "in_app"
CHANNEL_EMAIL = "email"

_DELIVERED_TTL_SECONDS = 7 * 86400
_CHANNEL_LOCK_TTL_SECONDS = 60


class InAppChannel(Protocol):
    async def deliver(self, message: NotificationMessage) -> None:
        ...


class EmailChannel(Protocol):
    async def send(self, address: str, message: NotificationMessage) -> None:
        ...


class PreferenceLookup(Protocol):
    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        ...


class InMemoryInAppChannel:
    """进程内站内通知（无数据库模式与测试使用）"""

    def __init__(self) -> None:
        self.delivered: List[NotificationMessage] = []

    async def deliver(self, message: NotificationMessage) -> None:
        self.delivered.append(message)

    def for_user(self, user_id: str) -> List[NotificationMessage]:
        return [m for m in self.delivered if m.user_id == user_id]


class LoggingEmailChannel:
    """只记录日志的邮件渠道（开发环境）"""

    async def send(self, address: str, message: NotificationMessage) -> None:
        logger.info(f"[LoggingEmailChannel] 邮件: to={address}, type={message.type.value}, title={message.content.get('title')}")


class StaticPreferenceLookup:
    def __init__(self, preferences: Optional[Dict[str, NotificationPreferences]] = None):
        self._preferences = preferences or {}

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        return self._preferences.get(user_id, NotificationPreferences())


_TITLES = {
    NotificationType.GRADING_COMPLETED: "Correction terminée",
    NotificationType.REVIEW_NEEDED: "Vérification du texte requise",
    NotificationType.PROCESSING_ERROR: "Échec du traitement",
}


def build_submission_notification(submission: Submission, notification_type: NotificationType) -> NotificationMessage:
    """
    构建提交相关通知

    幂等键由提交 ID 与事件决定：同一事件的重复投递得到相同的键；
    处理错误按错误记录数区分，人工重试后的新失败会再次通知。
    """
    student = submission.student.name
    content = {
        "title": _TITLES[notification_type],
        "submission_id": submission.submission_id,
        "assignment_id": submission.assignment_id,
        "student_name": student,
        "status": submission.status.value,
        "link": f"/submissions/{submission.submission_id}",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if notification_type == NotificationType.GRADING_COMPLETED and submission.grade is not None:
        content["message"] = f"La copie de {student} a été corrigée."
        content["score"] = submission.grade.score
        content["max_score"] = submission.grade.max_score
        content["percentage"] = submission.percentage_grade()
        idempotency_key = f"{submission.submission_id}:{notification_type.value}"
    elif notification_type == NotificationType.REVIEW_NEEDED:
        content["message"] = f"Le texte reconnu pour {student} doit être vérifié avant la correction."
        content["confidence"] = submission.text_confidence
        idempotency_key = f"{submission.submission_id}:{notification_type.value}"
    else:
        last_error = submission.last_error()
        content["message"] = f"Le traitement de la copie de {student} a échoué."
        content["error"] = last_error.message if last_error else None
        content["stage"] = last_error.stage.value if last_error else None
        idempotency_key = f"{submission.submission_id}:{notification_type.value}:{len(submission.metadata.errors)}"

    return NotificationMessage(
        user_id=submission.owner_id,
        type=notification_type,
        content=content,
        related_resource_id=submission.submission_id,
        idempotency_key=idempotency_key,
    )


async def publish_notification(queue: TaskQueue, message: NotificationMessage) -> PublishReceipt:
    return await queue.publish(
        Topic.SEND_NOTIFICATION,
        message.model_dump(mode="json"),
        PublishOptions(idempotency_key=message.idempotency_key, task_type=TaskType.SEND_NOTIFICATION.value),
    )


class NotificationFanout:
    """通知分发"""

    def __init__(
        self,
        in_app: InAppChannel,
        cache: TwoTierCache,
        email: Optional[EmailChannel] = None,
        preferences: Optional[PreferenceLookup] = None,
    ):
        self.in_app = in_app
        self.cache = cache
        self.email = email
        self.preferences = preferences or StaticPreferenceLookup()

    def _delivered_key(self, idempotency_key: str, channel: str) -> str:
        return f"notification:delivered:{idempotency_key}:{channel}"

    async def _deliver_channel(self, message: NotificationMessage, channel: str, address: Optional[str]) -> bool:
        """发送单个渠道，返回本次是否实际发送"""
        delivered_key = self._delivered_key(message.idempotency_key, channel)
        if await self.cache.get(delivered_key) is not None:
            return False

        lock_name = f"notification:{message.idempotency_key}:{channel}"
        token = await self.cache.acquire_lock(lock_name, _CHANNEL_LOCK_TTL_SECONDS)
        if token is None:
            raise TransientError(f"渠道 {channel} 正在由其他 worker 发送")
        try:
            if await self.cache.get(delivered_key) is not None:
                return False
            if channel == CHANNEL_IN_APP:
                await self.in_app.deliver(message)
            else:
                await self.email.send(address, message)
            await self.cache.set(delivered_key, True, _DELIVERED_TTL_SECONDS)
            return True
        finally:
            await self.cache.release_lock(lock_name, token)

    async def deliver(self, message: NotificationMessage) -> Dict[str, bool]:
        """
        分发通知到所有启用的渠道

        Returns:
            渠道 -> 本次是否实际发送

        Raises:
            TransientError: 任一渠道失败（已成功的渠道已记录，重试时跳过）
        """
        prefs = await self.preferences.get_preferences(message.user_id)
        channels: List[tuple] = [(CHANNEL_IN_APP, None)]
        if prefs.email_enabled and prefs.email_address and self.email is not None:
            channels.append((CHANNEL_EMAIL, prefs.email_address))

        results: Dict[str, bool] = {}
        failures: List[str] = []
        for channel, address in channels:
            try:
                results[channel] = await self._deliver_channel(message, channel, address)
            except Exception as e:
                error = classify_exception(e)
                logger.warning(
                    f"[NotificationFanout] 渠道发送失败: channel={channel}, "
                    f"key={message.idempotency_key}, error={error}"
                )
                failures.append(f"{channel}: {error}")

        if failures:
            raise TransientError("; ".join(failures))

        logger.info(
            f"[NotificationFanout] 通知已分发: user={message.user_id}, type={message.type.value}, "
            f"channels={results}"
        )
        return results

    async def handle_send_notification(self, ctx: TaskContext) -> HandlerResult:
        try:
            message = NotificationMessage.model_validate(ctx.payload)
        except ValueError as e:
            return HandlerResult.fatal(InvalidInput(f"通知消息格式无效: {e}"))

        try:
            await self.deliver(message)
        except TransientError as e:
            return HandlerResult.retry(e)
        return HandlerResult.success()

    def register(self, queue: TaskQueue, options: Optional[SubscribeOptions] = None) -> None:
        queue.subscribe(Topic.SEND_NOTIFICATION, self.handle_send_notification, options)
