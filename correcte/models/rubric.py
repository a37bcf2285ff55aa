"""评分细则数据模型"""

import hashlib
import json
from typing import List, Optional

from pydantic import BaseModel, Field


class RubricLevel(BaseModel):
    """评分档位"""

    label: str = Field(..., description="档位名称")
    score: float = Field(..., ge=0, description="该档位得分")
    description: str = Field("", description="档位描述")


class RubricCriterion(BaseModel):
    """评分标准项"""

    criterion_id: str = Field(..., description="标准 ID")
    name: str = Field(..., description="标准名称")
    description: str = Field("", description="标准说明")
    weight: float = Field(1.0, ge=0, description="权重")
    max_score: float = Field(..., ge=0, description="该项满分")
    levels: List[RubricLevel] = Field(default_factory=list, description="评分档位")


class Rubric(BaseModel):
    """作业评分细则"""

    rubric_id: str = Field(..., description="细则 ID")
    assignment_id: str = Field(..., description="作业 ID")
    title: str = Field("", description="标题")
    criteria: List[RubricCriterion] = Field(default_factory=list, description="评分标准列表")
    total_points: Optional[float] = Field(None, ge=0, description="总分（为空时按各项满分求和）")

    def max_score(self) -> float:
        if self.total_points is not None:
            return self.total_points
        return sum(c.max_score for c in self.criteria)

    def content_hash(self) -> str:
        """细则内容的稳定哈希，用于缓存键"""
        canonical = json.dumps(
            [c.model_dump() for c in self.criteria] + [self.total_points],
            sort_keys=True,
            ensure_ascii=False,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
