"""提交相关数据模型"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import ErrorKind, GradedBy, ProcessingStage, SubmissionStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StudentRef(BaseModel):
    """学生身份"""

    name: str = Field(..., description="学生姓名")
    external_id: str = Field(..., description="学生外部 ID")


class SourceFile(BaseModel):
    """上传的源文件"""

    uri: str = Field(..., description="文件路径或 URI")
    mime_type: str = Field(..., description="MIME 类型")
    size_bytes: int = Field(0, ge=0, description="文件大小（字节）")
    checksum: Optional[str] = Field(None, description="内容校验和（可选，用于缓存键）")
    original_name: Optional[str] = Field(None, description="原始文件名")


class CriterionScore(BaseModel):
    """单项评分"""

    criterion_id: str = Field(..., description="标准 ID")
    score: float = Field(..., description="得分")
    max_score: Optional[float] = Field(None, description="该项满分")
    feedback: str = Field("", description="该项反馈")


class GradeResult(BaseModel):
    """评分结果"""

    score: float = Field(..., description="总分")
    max_score: float = Field(..., description="满分")
    criterion_scores: List[CriterionScore] = Field(default_factory=list, description="各项得分")
    feedback: str = Field("", description="总体反馈")
    strengths: List[str] = Field(default_factory=list, description="优点")
    improvements: List[str] = Field(default_factory=list, description="改进建议")
    graded_by: GradedBy = Field(GradedBy.AI, description="评分来源")
    model: Optional[str] = Field(None, description="使用的模型")
    graded_at: Optional[datetime] = Field(None, description="评分时间")
    teacher_modified: bool = Field(False, description="是否经教师修改")
    teacher_modified_at: Optional[datetime] = Field(None, description="教师修改时间")
    reviewer_id: Optional[str] = Field(None, description="复核教师 ID")


class ErrorRecord(BaseModel):
    """处理错误记录"""

    stage: ProcessingStage = Field(..., description="出错阶段")
    kind: ErrorKind = Field(ErrorKind.TRANSIENT, description="错误分类")
    message: str = Field(..., description="可读的错误信息")
    timestamp: datetime = Field(default_factory=utc_now, description="发生时间")
    attempt: Optional[int] = Field(None, description="对应的投递次数")


class ProcessingMetadata(BaseModel):
    """处理元数据"""

    submitted_at: datetime = Field(default_factory=utc_now)
    processing_started_at: Optional[datetime] = None
    ocr_completed_at: Optional[datetime] = None
    grading_started_at: Optional[datetime] = None
    graded_at: Optional[datetime] = None
    ocr_duration_ms: Optional[int] = None
    grading_duration_ms: Optional[int] = None
    retry_count: int = Field(0, ge=0)
    errors: List[ErrorRecord] = Field(default_factory=list)


class Submission(BaseModel):
    """学生提交（流水线的工作单元）"""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "submission_id": "sub_001",
                "assignment_id": "asg_001",
                "owner_id": "teacher_001",
                "student": {"name": "Alice Martin", "external_id": "stu_042"},
                "files": [{"uri": "uploads/sub_001/page1.jpg", "mime_type": "image/jpeg", "size_bytes": 182044}],
                "status": "submitted",
            }
        }
    )

    submission_id: str = Field(..., description="提交 ID")
    assignment_id: str = Field(..., description="作业 ID")
    owner_id: str = Field(..., description="作业所属教师 ID（通知接收人）")
    student: StudentRef
    files: List[SourceFile] = Field(..., min_length=1)
    extracted_text: Optional[str] = None
    text_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    extraction_provider: Optional[str] = None
    grade: Optional[GradeResult] = None
    metadata: ProcessingMetadata = Field(default_factory=ProcessingMetadata)
    status: SubmissionStatus = SubmissionStatus.SUBMITTED
    version: int = Field(0, ge=0, description="乐观锁版本号")

    def total_processing_ms(self) -> int:
        """OCR 与评分耗时之和（毫秒）"""
        return (self.metadata.ocr_duration_ms or 0) + (self.metadata.grading_duration_ms or 0)

    def percentage_grade(self) -> Optional[float]:
        if self.grade is None or not self.grade.max_score:
            return None
        return self.grade.score / self.grade.max_score * 100

    def last_error(self) -> Optional[ErrorRecord]:
        return self.metadata.errors[-1] if self.metadata.errors else None

    def text_locked(self) -> bool:
        """文本是否已不可变（已通过 ocr_complete）"""
        if self.status in _TEXT_LOCKED_STATES:
            return True
        return self.status == SubmissionStatus.ERROR and self.metadata.ocr_completed_at is not None


_TEXT_LOCKED_STATES = {
    SubmissionStatus.OCR_COMPLETE,
    SubmissionStatus.GRADING,
    SubmissionStatus.GRADED,
    SubmissionStatus.REVIEWED,
}


class PatchRejected(ValueError):
    """补丁与当前记录不兼容，存储层按冲突处理"""


class ImmutableTextError(PatchRejected):
    """试图覆盖已锁定的识别文本"""


class InvalidTransitionError(PatchRejected):
    """补丁中的状态不是当前状态允许的下一状态"""


class SubmissionPatch(BaseModel):
    """
    提交记录的显式补丁

    只有显式设置的字段会被写入；错误记录只追加不覆盖。
    """

    status: Optional[SubmissionStatus] = None
    extracted_text: Optional[str] = None
    text_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    extraction_provider: Optional[str] = None
    grade: Optional[GradeResult] = None
    processing_started_at: Optional[datetime] = None
    ocr_completed_at: Optional[datetime] = None
    grading_started_at: Optional[datetime] = None
    graded_at: Optional[datetime] = None
    ocr_duration_ms: Optional[int] = None
    grading_duration_ms: Optional[int] = None
    retry_count: Optional[int] = Field(None, ge=0)
    append_errors: List[ErrorRecord] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_defaults=True)


_METADATA_FIELDS = (
    "processing_started_at",
    "ocr_completed_at",
    "grading_started_at",
    "graded_at",
    "ocr_duration_ms",
    "grading_duration_ms",
    "retry_count",
)


def apply_patch(submission: Submission, patch: SubmissionPatch) -> Submission:
    """
    将补丁应用到提交记录，返回新对象（原对象不变），版本号 +1

    Raises:
        ImmutableTextError: 文本已锁定时试图写入 extracted_text
    """
    if patch.extracted_text is not None and submission.text_locked():
        raise ImmutableTextError(
            f"提交 {submission.submission_id} 的识别文本已锁定（状态 {submission.status.value}）"
        )

    updates = {}
    for name in ("status", "extracted_text", "text_confidence", "extraction_provider", "grade"):
        value = getattr(patch, name)
        if value is not None:
            updates[name] = value

    metadata_updates = {}
    for name in _METADATA_FIELDS:
        value = getattr(patch, name)
        if value is not None:
            metadata_updates[name] = value
    if patch.append_errors:
        metadata_updates["errors"] = list(submission.metadata.errors) + list(patch.append_errors)

    updates["metadata"] = submission.metadata.model_copy(update=metadata_updates)
    updates["version"] = submission.version + 1
    return submission.model_copy(update=updates, deep=True)
