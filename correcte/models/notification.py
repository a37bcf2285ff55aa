"""通知相关数据模型"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .enums import NotificationType


class NotificationMessage(BaseModel):
    """notification.send 消息体"""

    user_id: str = Field(..., description="接收人 ID")
    type: NotificationType = Field(..., description="通知类型")
    content: Dict[str, Any] = Field(default_factory=dict, description="通知内容（标题、正文、链接等）")
    related_resource_id: Optional[str] = Field(None, description="关联资源 ID（通常为提交 ID）")
    idempotency_key: str = Field(..., description="幂等键，同一事件的重复投递只送达一次")


class NotificationPreferences(BaseModel):
    """用户通知偏好，站内通知始终开启"""

    in_app: bool = Field(True, frozen=True)
    email_enabled: bool = False
    email_address: Optional[str] = None
