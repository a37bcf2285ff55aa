"""数据模型包"""

from .enums import (
    ErrorKind,
    GradedBy,
    NotificationType,
    ProcessingStage,
    SubmissionStatus,
    TaskType,
    Topic,
)
from .rubric import Rubric, RubricCriterion, RubricLevel
from .submission import (
    CriterionScore,
    ErrorRecord,
    GradeResult,
    ImmutableTextError,
    InvalidTransitionError,
    PatchRejected,
    ProcessingMetadata,
    SourceFile,
    StudentRef,
    Submission,
    SubmissionPatch,
    apply_patch,
    utc_now,
)
from .task import DeadLetterRecord, TaskMessage
from .notification import NotificationMessage, NotificationPreferences

__all__ = [
    # 枚举
    "ErrorKind",
    "GradedBy",
    "NotificationType",
    "ProcessingStage",
    "SubmissionStatus",
    "TaskType",
    "Topic",
    # 评分细则
    "Rubric",
    "RubricCriterion",
    "RubricLevel",
    # 提交
    "CriterionScore",
    "ErrorRecord",
    "GradeResult",
    "ImmutableTextError",
    "InvalidTransitionError",
    "PatchRejected",
    "ProcessingMetadata",
    "SourceFile",
    "StudentRef",
    "Submission",
    "SubmissionPatch",
    "apply_patch",
    "utc_now",
    # 队列
    "DeadLetterRecord",
    "TaskMessage",
    # 通知
    "NotificationMessage",
    "NotificationPreferences",
]
