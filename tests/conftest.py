"""测试公共夹具"""

import dataclasses

import pytest

from correcte.config.settings import get_pipeline_settings
from correcte.models.rubric import Rubric, RubricCriterion
from correcte.models.submission import SourceFile, StudentRef, Submission


class FakeClock:
    """可控时钟，返回 Unix 时间戳（秒）"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pipeline_settings():
    """测试用配置：无提供商内重试，队列退避上限较小"""
    return dataclasses.replace(
        get_pipeline_settings(),
        queue_max_retries=3,
        queue_initial_backoff_seconds=1.0,
        queue_max_backoff_seconds=10.0,
        provider_max_attempts=1,
        provider_initial_backoff_seconds=0.0,
        provider_timeout_seconds=5.0,
        ocr_confidence_floor=0.8,
        staleness_window_seconds=600.0,
    )


@pytest.fixture
def rubric():
    return Rubric(
        rubric_id="rub_001",
        assignment_id="asg_001",
        title="Dissertation",
        criteria=[
            RubricCriterion(criterion_id="c1", name="Argumentation", max_score=10),
            RubricCriterion(criterion_id="c2", name="Orthographe", max_score=10),
        ],
    )


@pytest.fixture
def make_submission():
    """创建提交记录的工厂"""

    def _make(submission_id: str = "sub_001", **overrides) -> Submission:
        data = {
            "submission_id": submission_id,
            "assignment_id": "asg_001",
            "owner_id": "teacher_001",
            "student": StudentRef(name="Alice Martin", external_id="stu_042"),
            "files": [
                SourceFile(
                    uri=f"uploads/{submission_id}/page1.jpg",
                    mime_type="image/jpeg",
                    size_bytes=1024,
                    checksum=f"sha-{submission_id}",
                )
            ],
        }
        data.update(overrides)
        return Submission(**data)

    return _make
