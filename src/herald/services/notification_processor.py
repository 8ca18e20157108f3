"""Notification processor — what a queue job actually does.

Learn: delivering one notification is three steps, each with its own
failure policy:

1. Persist the record through the NotificationStore. A failure here is
   the only thing that fails the job (and so triggers the tier's retry).
2. Broadcast it to the tenant's live connections. Best-effort: users who
   aren't connected will see it next time they load their list.
3. If the notification carries metadata.appId, send a notification.sent
   webhook to that subscriber. Webhook trouble is logged and reported in
   the job result, never raised. The webhook service already retried.

When a queue job exhausts its retries, report_failure sends a
notification.failed webhook to the application that queued it.

The record's metadata gets jobId (when run from a queue) and
deliveredVia, so downstream consumers can deduplicate at-least-once
redeliveries.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

from herald.dispatcher.jobs import Job
from herald.realtime.broadcast import Broadcaster
from herald.services.collaborators import NotificationStore
from herald.services.webhook_service import (
    WebhookConfigError,
    WebhookDeliveryError,
    WebhookService,
)

logger = structlog.get_logger()

ProgressCallback = Callable[[int], Awaitable[None]]


class NotificationProcessor:
    def __init__(
        self,
        store: NotificationStore,
        broadcaster: Broadcaster,
        webhooks: Optional[WebhookService] = None,
        chunk_size: int = 100,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.webhooks = webhooks
        self.chunk_size = chunk_size

    # ─── Single delivery ──────────────────────────────────

    async def deliver(
        self,
        tenant_id: str,
        data: dict,
        job_id: Optional[str] = None,
        delivered_via: str = "direct",
    ) -> dict:
        fields = dict(data)
        metadata = dict(fields.get("metadata") or {})
        metadata["deliveredVia"] = delivered_via
        if job_id:
            metadata["jobId"] = job_id
        fields["metadata"] = metadata

        record = await self.store.create_notification_record(tenant_id, fields)
        broadcast = await self._broadcast(tenant_id, record)
        webhook = await self._notify_subscriber(record)

        logger.info(
            "herald.notification.delivered",
            notification_id=record.id,
            tenant_id=tenant_id,
            job_id=job_id,
            webhook=webhook,
        )
        return {
            "notification_id": record.id,
            "tenant_id": tenant_id,
            "title": record.title,
            "created_at": record.created_at.isoformat(),
            "broadcast": broadcast,
            "webhook": webhook,
        }

    async def _broadcast(self, tenant_id: str, record: Any) -> Optional[dict]:
        try:
            return await self.broadcaster.broadcast_to_tenant(tenant_id, record)
        except Exception as e:
            logger.warning(
                "herald.notification.broadcast_failed",
                tenant_id=tenant_id,
                notification_id=record.id,
                error=str(e),
            )
            return None

    async def _notify_subscriber(self, record: Any) -> str:
        app_id = record.metadata.get("appId")
        if not app_id or self.webhooks is None:
            return "skipped"
        try:
            result = await self.webhooks.notify_notification_sent(app_id, record)
        except WebhookConfigError as e:
            logger.info("herald.notification.webhook_not_configured", app_id=app_id, error=str(e))
            return "not_configured"
        except WebhookDeliveryError as e:
            logger.warning(
                "herald.notification.webhook_failed",
                app_id=app_id,
                attempts=e.attempt,
                error=e.last_error,
            )
            return "failed"
        except Exception as e:
            logger.warning("herald.notification.webhook_failed", app_id=app_id, error=str(e))
            return "failed"
        return "delivered" if result.success else "rejected"

    # ─── Queue processors ─────────────────────────────────

    async def process_single(self, job: Job, progress: ProgressCallback) -> dict:
        payload = job.payload
        result = await self.deliver(
            payload["tenant_id"], payload["notification_data"], job_id=job.id, delivered_via="queue"
        )
        await progress(100)
        return result

    async def process_scheduled(self, job: Job, progress: ProgressCallback) -> dict:
        payload = job.payload
        result = await self.deliver(
            payload["tenant_id"], payload["notification_data"], job_id=job.id, delivered_via="scheduled"
        )
        await progress(100)
        return result

    async def process_bulk(self, job: Job, progress: ProgressCallback) -> dict:
        """Deliver a batch chunk by chunk. Item failures are tallied, not raised.

        Learn: the job only fails (and retries) if something outside the
        per-item deliveries breaks. One bad tenant in a thousand shouldn't
        re-send to the other 999.
        """
        items = job.payload["notifications"]
        chunk_size = job.payload.get("chunk_size") or self.chunk_size
        total = len(items)
        succeeded = 0
        errors: list[dict] = []

        for start in range(0, total, chunk_size):
            chunk = items[start:start + chunk_size]
            results = await asyncio.gather(
                *(
                    self.deliver(
                        item["tenant_id"], item["notification_data"],
                        job_id=job.id, delivered_via="bulk",
                    )
                    for item in chunk
                ),
                return_exceptions=True,
            )
            for item, outcome in zip(chunk, results):
                if isinstance(outcome, Exception):
                    errors.append({"tenant_id": item["tenant_id"], "error": str(outcome)})
                else:
                    succeeded += 1
            await progress(int((start + len(chunk)) * 100 / total))

        if errors:
            logger.warning(
                "herald.notification.bulk_partial",
                job_id=job.id,
                failed=len(errors),
                total=total,
            )
        return {
            "total": total,
            "succeeded": succeeded,
            "failed": len(errors),
            "errors": errors,
        }

    # ─── Direct bulk path ─────────────────────────────────

    async def deliver_many(self, records: list[dict]) -> list[dict]:
        """Persist a batch in one store call, then broadcast each record.

        Used when a bulk send skips the queue. Each element of `records`
        holds the notification fields plus tenant_id.
        """
        prepared = []
        for fields in records:
            fields = dict(fields)
            metadata = dict(fields.get("metadata") or {})
            metadata["deliveredVia"] = "direct"
            fields["metadata"] = metadata
            prepared.append(fields)

        created = await self.store.create_notification_records_bulk(prepared)
        summaries = []
        for record in created:
            broadcast = await self._broadcast(record.tenant_id, record)
            webhook = await self._notify_subscriber(record)
            summaries.append({
                "notification_id": record.id,
                "tenant_id": record.tenant_id,
                "title": record.title,
                "created_at": record.created_at.isoformat(),
                "broadcast": broadcast,
                "webhook": webhook,
            })
        logger.info("herald.notification.bulk_delivered", count=len(summaries))
        return summaries

    # ─── Terminal failures ────────────────────────────────

    async def report_failure(self, job: Job, error: str) -> None:
        """Send notification.failed to the owning application once a job gives up."""
        payload = job.payload
        if "notifications" in payload:
            items = payload["notifications"]
            data = items[0]["notification_data"] if items else {}
            target = {"tenant_ids": [item["tenant_id"] for item in items]}
        else:
            data = payload.get("notification_data", {})
            target = {"tenant_id": payload.get("tenant_id")}

        app_id = payload.get("app_id") or (data.get("metadata") or {}).get("appId")
        if not app_id or self.webhooks is None:
            return

        notification = {
            "job_id": job.id,
            "queue": job.tier.value,
            "attempts_made": job.attempts_made,
            **target,
            "title": data.get("title"),
            "metadata": data.get("metadata") or {},
        }
        try:
            await self.webhooks.notify_notification_failed(app_id, notification, error)
        except WebhookConfigError as e:
            logger.info("herald.notification.webhook_not_configured", app_id=app_id, error=str(e))
        except WebhookDeliveryError as e:
            logger.warning(
                "herald.notification.failure_webhook_failed",
                app_id=app_id,
                job_id=job.id,
                attempts=e.attempt,
                error=e.last_error,
            )
