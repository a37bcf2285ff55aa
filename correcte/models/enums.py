"""枚举类型定义"""

from enum import Enum


class SubmissionStatus(str, Enum):
    """提交状态（生命周期）"""

    SUBMITTED = "submitted"
    PROCESSING = "processing"
    OCR_COMPLETE = "ocr_complete"
    GRADING = "grading"
    GRADED = "graded"
    REVIEW_NEEDED = "review_needed"  # 识别置信度过低，需人工确认文本
    REVIEWED = "reviewed"  # 教师人工复核后
    ERROR = "error"


class GradedBy(str, Enum):
    """评分来源"""

    AI = "ai"
    HUMAN = "human"
    BOTH = "both"


class ProcessingStage(str, Enum):
    """处理阶段（用于错误记录）"""

    EXTRACTION = "extraction"
    GRADING = "grading"
    PERSISTENCE = "persistence"
    NOTIFICATION = "notification"
    QUEUE = "queue"


class ErrorKind(str, Enum):
    """错误分类"""

    TRANSIENT = "transient"  # 网络/超时/限流，可重试
    PERMANENT_INPUT = "permanent_input"  # 文件损坏、格式不支持、内容为空
    PERMANENT_PROVIDER = "permanent_provider"  # 提供商因策略原因拒绝
    INTEGRITY_CONFLICT = "integrity_conflict"  # 条件更新冲突，视为成功空操作


class TaskType(str, Enum):
    """任务类型"""

    PROCESS_SUBMISSION = "process_submission"
    GRADE_SUBMISSION = "grade_submission"
    SEND_NOTIFICATION = "send_notification"


class NotificationType(str, Enum):
    """通知类型"""

    GRADING_COMPLETED = "grading_completed"
    REVIEW_NEEDED = "review_needed"
    PROCESSING_ERROR = "processing_error"


class Topic:
    """队列主题名称"""

    PROCESS_SUBMISSION = "submission.process"
    GRADE_SUBMISSION = "submission.grade"
    SEND_NOTIFICATION = "notification.send"
    DEAD_LETTER_SUFFIX = ".dead_letter"

    @classmethod
    def dead_letter(cls, topic: str) -> str:
        return f"{topic}{cls.DEAD_LETTER_SUFFIX}"
