"""External notification API — send, bulk-send, schedule, job control.

Learn: every route authenticates the calling application by API key
first, then applies its named rate-limit policy:

  POST /notifications/send        per_application
  POST /notifications/bulk-send   bulk_send
  POST /notifications/schedule    per_tenant

Dependency order matters: FastAPI resolves endpoint parameters in
declaration order, so a missing key is a 401 before it can be a 429.

With use_queue the request returns as soon as the job is stored and a
worker pool delivers it. Without, the same NotificationProcessor runs
inline and the response carries the created record summary.

Provenance is written into metadata after the caller's own keys, so a
caller can never pose as another application: appId (which routes the
notification.sent webhook back), appName, sentByExternalApp and sentAt,
plus bulkSend and totalRecipients on bulk sends.

Jobs are owned by the application that queued them. Status and cancel
requests for someone else's job answer 404, exactly like a job that
doesn't exist. Queue stats are aggregate counts and carry no job data.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from starlette.requests import Request

from herald.auth.dependencies import ensure_tenant_access, get_external_app
from herald.deps import get_core
from herald.dispatcher.jobs import Tier, UnknownTierError, parse_tier
from herald.dispatcher.queue import BulkPayloadError, JobScheduleError
from herald.middleware.rate_limit import create_limiter
from herald.schemas.notification import (
    BulkSendRequest,
    NotificationCreate,
    NotificationRecord,
    ScheduleNotificationRequest,
    SendNotificationRequest,
)
from herald.schemas.subscriber import ExternalApp

router = APIRouter(prefix="/notifications")

_TARGETING_FIELDS = {"tenant_id", "tenant_ids", "use_queue", "scheduled_at"}


def _notification_data(body, app: ExternalApp, **provenance) -> dict:
    """The tenant-less NotificationCreate fields, JSON-safe for the queue."""
    data = body.model_dump(mode="json", exclude=_TARGETING_FIELDS)
    data["metadata"] = {
        **data.get("metadata", {}),
        "sentByExternalApp": True,
        "appId": app.app_id,
        "appName": app.app_name,
        "sentAt": datetime.now(timezone.utc).isoformat(),
        **provenance,
    }
    return data


def _tier_or_404(tier: str) -> Tier:
    try:
        return parse_tier(tier)
    except UnknownTierError as e:
        raise HTTPException(status_code=404, detail={"error": "Not Found", "message": str(e)})


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": "Bad Request", "message": message})


# ─── Send ────────────────────────────────────────────────


@router.post("/send")
async def send_notification(
    body: SendNotificationRequest,
    request: Request,
    app: ExternalApp = Depends(get_external_app),
    _limit=Depends(create_limiter("per_application")),
):
    """Send one notification to a tenant, inline or through the immediate queue."""
    ensure_tenant_access(app, [body.tenant_id])
    core = get_core(request)
    data = _notification_data(body, app)

    if body.use_queue:
        handle = await core.queue.add_immediate(data, body.tenant_id, app_id=app.app_id)
        return {"success": True, "queued": True, **handle.to_dict()}

    summary = await core.processor.deliver(body.tenant_id, data)
    return {"success": True, "queued": False, "notification": summary}


@router.post("/bulk-send")
async def bulk_send(
    body: BulkSendRequest,
    request: Request,
    app: ExternalApp = Depends(get_external_app),
    _limit=Depends(create_limiter("bulk_send")),
):
    """Send the same notification to many tenants."""
    ensure_tenant_access(app, body.tenant_ids)
    core = get_core(request)
    tenant_ids = list(dict.fromkeys(body.tenant_ids))
    data = _notification_data(
        body, app, bulkSend=True, totalRecipients=len(tenant_ids)
    )

    if body.use_queue:
        try:
            handle = await core.queue.add_bulk(
                [{"notification_data": data, "tenant_id": t} for t in tenant_ids],
                app_id=app.app_id,
            )
        except BulkPayloadError as e:
            raise _bad_request(str(e))
        return {"success": True, "queued": True, **handle.to_dict()}

    if len(tenant_ids) > core.queue.bulk_max_items:
        raise _bad_request(
            f"Bulk sends are limited to {core.queue.bulk_max_items} tenants"
        )
    summaries = await core.processor.deliver_many(
        [{**data, "tenant_id": t} for t in tenant_ids]
    )
    return {
        "success": True,
        "queued": False,
        "count": len(summaries),
        "notifications": summaries,
    }


@router.post("/schedule")
async def schedule_notification(
    body: ScheduleNotificationRequest,
    request: Request,
    app: ExternalApp = Depends(get_external_app),
    _limit=Depends(create_limiter("per_tenant")),
):
    """Deliver a notification at scheduled_at through the scheduled queue."""
    ensure_tenant_access(app, [body.tenant_id])
    core = get_core(request)
    try:
        handle = await core.queue.schedule(
            _notification_data(body, app),
            body.tenant_id,
            body.scheduled_at,
            app_id=app.app_id,
        )
    except JobScheduleError as e:
        raise _bad_request(str(e))
    return {"success": True, "queued": True, **handle.to_dict()}


@router.post("/preview")
async def preview_notification(
    body: SendNotificationRequest,
    app: ExternalApp = Depends(get_external_app),
):
    """Render the record a send would create, without storing or delivering it."""
    ensure_tenant_access(app, [body.tenant_id])
    fields = NotificationCreate(**_notification_data(body, app))
    record = NotificationRecord(tenant_id=body.tenant_id, **fields.model_dump())
    return {"success": True, "preview": record}


# ─── Jobs ────────────────────────────────────────────────


@router.get("/jobs/{tier}/{job_id}")
async def get_job(
    tier: str,
    job_id: str,
    request: Request,
    app: ExternalApp = Depends(get_external_app),
):
    status = await get_core(request).queue.get_job_status(
        _tier_or_404(tier), job_id, app_id=app.app_id
    )
    if status["status"] == "not_found":
        raise HTTPException(
            status_code=404, detail={"error": "Not Found", "message": "Job not found"}
        )
    return status


@router.delete("/jobs/{tier}/{job_id}")
async def cancel_job(
    tier: str,
    job_id: str,
    request: Request,
    app: ExternalApp = Depends(get_external_app),
):
    """Cancel a job that no worker has claimed yet."""
    queue = get_core(request).queue
    result = await queue.cancel_job(_tier_or_404(tier), job_id, app_id=app.app_id)
    if result["success"]:
        return result
    if result["message"] == "Job not found":
        raise HTTPException(
            status_code=404, detail={"error": "Not Found", "message": "Job not found"}
        )
    raise HTTPException(
        status_code=409, detail={"error": "Conflict", "message": result["message"]}
    )


@router.get("/queues/{tier}/stats")
async def queue_stats(
    tier: str,
    request: Request,
    app: ExternalApp = Depends(get_external_app),
):
    return await get_core(request).queue.get_queue_stats(_tier_or_404(tier))
