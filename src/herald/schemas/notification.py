"""Pydantic schemas for notifications and the external send API.

Learn: NotificationCreate is the tenant-less set of fields a caller may
supply. Request bodies extend it with targeting (tenant_id / tenant_ids /
scheduled_at) and the use_queue switch. NotificationRecord is what the
persistence collaborator hands back once a notification is stored.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

Priority = Literal["low", "medium", "high", "urgent"]

DEFAULT_NOTIFICATION_TYPE = "system_update"


# ─── Notification ─────────────────────────────────────────


class NotificationCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    message: str
    type: str = DEFAULT_NOTIFICATION_TYPE
    priority: Priority = "medium"
    action_url: Optional[str] = None
    action_label: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
    target_user_id: Optional[str] = None


class NotificationRecord(NotificationCreate):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    is_read: bool = False
    is_dismissed: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ─── Send API bodies ──────────────────────────────────────


class SendNotificationRequest(NotificationCreate):
    tenant_id: str
    use_queue: bool = False


class BulkSendRequest(NotificationCreate):
    tenant_ids: list[str] = Field(..., min_length=1, max_length=1000)
    use_queue: bool = True


class ScheduleNotificationRequest(NotificationCreate):
    tenant_id: str
    scheduled_at: datetime
