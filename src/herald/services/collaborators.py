"""Collaborator interfaces consumed by the notification core.

Learn: persistence, the application registry and API-key authentication
are owned by other services. The core only talks to them through the
three protocols below, so a deployment can plug in its own database-
backed implementations via build_core().

The in-memory implementations are the defaults for development and the
test suite. InMemorySubscriberDirectory keeps each subscriber's webhook
audit trail in a bounded deque, so the oldest attempts fall off once the
cap is reached.
"""

from collections import deque
from typing import Optional, Protocol

from herald.schemas.notification import NotificationCreate, NotificationRecord
from herald.schemas.subscriber import ExternalApp, SubscriberConfig, WebhookAttempt


class NotificationStore(Protocol):
    async def create_notification_record(
        self, tenant_id: str, fields: dict
    ) -> NotificationRecord: ...

    async def create_notification_records_bulk(
        self, records: list[dict]
    ) -> list[NotificationRecord]: ...


class SubscriberDirectory(Protocol):
    async def resolve_subscriber_config(
        self, app_id: str
    ) -> Optional[SubscriberConfig]: ...

    async def record_webhook_attempt(
        self, app_id: str, attempt: WebhookAttempt
    ) -> None: ...

    async def list_webhook_attempts(self, app_id: str) -> list[WebhookAttempt]: ...


class ApiKeyLookup(Protocol):
    async def lookup_caller_by_api_key(self, api_key: str) -> Optional[ExternalApp]: ...


# ─── In-memory implementations ────────────────────────────


class InMemoryNotificationStore:
    """Keeps created notifications in a dict keyed by notification id."""

    def __init__(self):
        self.records: dict[str, NotificationRecord] = {}

    async def create_notification_record(
        self, tenant_id: str, fields: dict
    ) -> NotificationRecord:
        data = NotificationCreate(**fields)
        record = NotificationRecord(tenant_id=tenant_id, **data.model_dump())
        self.records[record.id] = record
        return record

    async def create_notification_records_bulk(
        self, records: list[dict]
    ) -> list[NotificationRecord]:
        created = []
        for fields in records:
            fields = dict(fields)
            tenant_id = fields.pop("tenant_id")
            created.append(await self.create_notification_record(tenant_id, fields))
        return created

    def for_tenant(self, tenant_id: str) -> list[NotificationRecord]:
        return [r for r in self.records.values() if r.tenant_id == tenant_id]


class InMemorySubscriberDirectory:
    def __init__(self, audit_cap: int = 100):
        self.audit_cap = audit_cap
        self._configs: dict[str, SubscriberConfig] = {}
        self._attempts: dict[str, deque[WebhookAttempt]] = {}

    def register(self, config: SubscriberConfig) -> None:
        self._configs[config.app_id] = config

    async def resolve_subscriber_config(self, app_id: str) -> Optional[SubscriberConfig]:
        return self._configs.get(app_id)

    async def record_webhook_attempt(self, app_id: str, attempt: WebhookAttempt) -> None:
        trail = self._attempts.setdefault(app_id, deque(maxlen=self.audit_cap))
        trail.append(attempt)

    async def list_webhook_attempts(self, app_id: str) -> list[WebhookAttempt]:
        return list(self._attempts.get(app_id, ()))


class InMemoryApiKeyLookup:
    def __init__(self):
        self._apps: dict[str, ExternalApp] = {}

    def register(self, api_key: str, app: ExternalApp) -> None:
        self._apps[api_key] = app

    async def lookup_caller_by_api_key(self, api_key: str) -> Optional[ExternalApp]:
        return self._apps.get(api_key)
