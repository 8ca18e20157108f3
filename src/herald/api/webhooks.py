"""Webhooks API — the subscriber's side of webhook delivery.

Learn: three endpoints, all scoped to the calling application:
1. POST /webhooks/verify checks an HMAC signature over the raw request
   body against the caller's subscriber secret. Subscribers use it to
   confirm their verification code matches ours.
2. POST /webhooks/test sends a signed test event to the caller's
   callback URL synchronously and reports the outcome.
3. GET /webhooks/attempts returns the bounded audit trail of delivery
   attempts to the caller.
"""

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request

from herald.auth.dependencies import get_external_app
from herald.deps import get_core
from herald.events.types import WEBHOOK_TEST
from herald.schemas.subscriber import ExternalApp
from herald.services.webhook_service import (
    WebhookConfigError,
    WebhookDeliveryError,
    verify_signature,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks")


@router.post("/verify")
async def verify_webhook_signature(
    request: Request,
    x_webhook_signature: str = Header(...),
    app: ExternalApp = Depends(get_external_app),
):
    """Verify X-Webhook-Signature over the raw body with the caller's secret."""
    config = await get_core(request).subscribers.resolve_subscriber_config(app.app_id)
    if config is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "Not Found", "message": "No webhook subscriber configured"},
        )

    body = await request.body()
    if not verify_signature(body, x_webhook_signature, config.secret):
        logger.warning("herald.webhook.signature_invalid", app_id=app.app_id)
        raise HTTPException(
            status_code=401,
            detail={"error": "Unauthorized", "message": "Invalid webhook signature"},
        )
    return {"valid": True}


@router.post("/test")
async def send_test_webhook(
    request: Request,
    app: ExternalApp = Depends(get_external_app),
):
    """Deliver a webhook.test event to the caller's callback URL now."""
    webhooks = get_core(request).webhooks
    try:
        result = await webhooks.send_webhook(
            app.app_id, WEBHOOK_TEST, {"app_id": app.app_id, "message": "Test webhook"}
        )
    except WebhookConfigError as e:
        raise HTTPException(
            status_code=400, detail={"error": "Bad Request", "message": str(e)}
        )
    except WebhookDeliveryError as e:
        raise HTTPException(
            status_code=502,
            detail={
                "error": "Bad Gateway",
                "message": str(e),
                "attempts": e.attempt,
                "status": e.status,
            },
        )
    return {"success": result.success, "status": result.status, "attempts": result.attempt}


@router.get("/attempts")
async def list_webhook_attempts(
    request: Request,
    app: ExternalApp = Depends(get_external_app),
):
    attempts = await get_core(request).subscribers.list_webhook_attempts(app.app_id)
    return {"app_id": app.app_id, "attempts": attempts}
