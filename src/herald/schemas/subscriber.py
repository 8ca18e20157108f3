"""Pydantic schemas for external applications and webhook subscribers."""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field


class ExternalApp(BaseModel):
    """Caller identity resolved from an X-API-Key header."""

    app_id: str
    app_name: str = ""
    is_active: bool = True
    allowed_tenants: Optional[list[str]] = None

    def can_access(self, tenant_id: str) -> bool:
        return self.allowed_tenants is None or tenant_id in self.allowed_tenants


class SubscriberConfig(BaseModel):
    """Where (and how) to deliver webhooks for one application."""

    app_id: str
    callback_url: Optional[str] = None
    secret: str
    allowed_tenants: Optional[list[str]] = None


class WebhookAttempt(BaseModel):
    app_id: str
    event_type: str
    status: Literal["success", "failed"]
    attempt_number: int
    http_status: Optional[int] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
