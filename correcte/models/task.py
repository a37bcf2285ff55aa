"""任务队列消息模型"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .enums import ErrorKind
from .submission import utc_now


class TaskMessage(BaseModel):
    """队列中传递的任务消息，payload 对队列不透明"""

    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task_type: str = Field(..., description="任务类型")
    topic: str = Field(..., description="所属主题")
    payload: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=utc_now)
    delivery_count: int = Field(0, ge=0, description="已投递次数")
    idempotency_key: Optional[str] = None
    last_error: Optional[str] = None


class DeadLetterRecord(BaseModel):
    """死信记录"""

    message: TaskMessage
    original_topic: str
    error_kind: ErrorKind
    error_message: str
    dead_lettered_at: datetime = Field(default_factory=utc_now)
