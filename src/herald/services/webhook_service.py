"""Outbound webhook delivery to subscriber applications.

Learn: WebhookService handles three responsibilities:
1. Signing: the envelope {event, timestamp, data} is serialized once and
   signed with HMAC-SHA256 using the subscriber's secret. The signature
   travels in X-Webhook-Signature ("sha256=<hex>"), the event name in
   X-Webhook-Event.
2. Delivery with retry: network errors and 5xx responses are retried with
   exponential backoff (base, 2·base, 4·base, ...) up to max_retries.
   Any response below 500 ends delivery at once — 2xx is success, 4xx is
   the subscriber rejecting the payload and retrying won't change that.
3. Audit trail: every attempt is appended to the subscriber's bounded
   attempt log. Audit failures are logged and never abort delivery.

A missing subscriber or callback URL raises WebhookConfigError right away
(no retry can fix static config). Exhausting every attempt raises
WebhookDeliveryError carrying the attempt count and the last error; the
caller decides whether that is fatal.

verify_signature() is the inverse check for callbacks subscribers send
to us. It uses hmac.compare_digest so timing leaks nothing.
"""

import asyncio
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import structlog
from fastapi.encoders import jsonable_encoder

from herald import __version__
from herald.events.types import (
    NOTIFICATION_DISMISSED,
    NOTIFICATION_FAILED,
    NOTIFICATION_READ,
    NOTIFICATION_SENT,
)
from herald.schemas.subscriber import WebhookAttempt
from herald.services.collaborators import SubscriberDirectory

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"


class WebhookConfigError(Exception):
    pass


class WebhookDeliveryError(Exception):
    def __init__(
        self,
        app_id: str,
        event_type: str,
        attempt: int,
        last_error: str,
        status: Optional[int] = None,
    ):
        self.app_id = app_id
        self.event_type = event_type
        self.attempt = attempt
        self.last_error = last_error
        self.status = status
        super().__init__(
            f"Webhook {event_type} to {app_id} failed after {attempt} attempt(s): {last_error}"
        )


@dataclass
class WebhookResult:
    success: bool
    status: Optional[int]
    attempt: int


# ─── Signing ──────────────────────────────────────────────


def serialize_payload(payload: Any) -> bytes:
    """Canonical bytes for signing: compact JSON with sorted keys."""
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode()
    return json.dumps(
        jsonable_encoder(payload), separators=(",", ":"), sort_keys=True
    ).encode()


def sign_payload(payload: Union[bytes, str, dict], secret: str) -> str:
    digest = hmac.new(secret.encode(), serialize_payload(payload), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(payload: Union[bytes, str, dict], signature: str, secret: str) -> bool:
    """Constant-time check of an HMAC-SHA256 signature (with or without sha256= prefix)."""
    expected = sign_payload(payload, secret)[len("sha256="):]
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(expected, signature)


# ─── Delivery ─────────────────────────────────────────────


class WebhookService:
    def __init__(
        self,
        subscribers: SubscriberDirectory,
        *,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.subscribers = subscribers
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send_webhook(self, app_id: str, event_type: str, payload: Any) -> WebhookResult:
        config = await self.subscribers.resolve_subscriber_config(app_id)
        if config is None:
            raise WebhookConfigError(f"No subscriber registered for application {app_id}")
        if not config.callback_url:
            raise WebhookConfigError(f"No callback URL configured for application {app_id}")

        envelope = {
            "event": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": jsonable_encoder(payload),
        }
        body = serialize_payload(envelope)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"herald-webhooks/{__version__}",
            SIGNATURE_HEADER: sign_payload(body, config.secret),
            EVENT_HEADER: event_type,
        }

        last_error = ""
        last_status: Optional[int] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._client.post(config.callback_url, content=body, headers=headers)
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                last_status = None
            else:
                last_status = response.status_code
                if response.status_code < 500:
                    success = 200 <= response.status_code < 300
                    await self._record(
                        app_id,
                        event_type,
                        attempt,
                        success=success,
                        http_status=response.status_code,
                        error=None if success else f"HTTP {response.status_code}",
                    )
                    log = logger.info if success else logger.warning
                    log(
                        "herald.webhook.delivered" if success else "herald.webhook.rejected",
                        app_id=app_id,
                        event_type=event_type,
                        status=response.status_code,
                        attempt=attempt,
                    )
                    return WebhookResult(success=success, status=response.status_code, attempt=attempt)
                last_error = f"HTTP {response.status_code}"

            await self._record(
                app_id, event_type, attempt,
                success=False, http_status=last_status, error=last_error,
            )
            logger.warning(
                "herald.webhook.attempt_failed",
                app_id=app_id,
                event_type=event_type,
                attempt=attempt,
                error=last_error,
            )
            if attempt < self.max_retries:
                await self._sleep(self.base_delay * 2 ** (attempt - 1))

        raise WebhookDeliveryError(
            app_id, event_type, self.max_retries, last_error, status=last_status
        )

    async def _record(
        self,
        app_id: str,
        event_type: str,
        attempt: int,
        *,
        success: bool,
        http_status: Optional[int],
        error: Optional[str],
    ) -> None:
        try:
            await self.subscribers.record_webhook_attempt(
                app_id,
                WebhookAttempt(
                    app_id=app_id,
                    event_type=event_type,
                    status="success" if success else "failed",
                    attempt_number=attempt,
                    http_status=http_status,
                    error=error,
                ),
            )
        except Exception as e:
            logger.warning("herald.webhook.audit_failed", app_id=app_id, error=str(e))

    # ─── Lifecycle event wrappers ────────────────────────

    async def notify_notification_sent(self, app_id: str, notification: Any) -> WebhookResult:
        return await self.send_webhook(app_id, NOTIFICATION_SENT, notification)

    async def notify_notification_failed(
        self, app_id: str, notification: Any, error: str
    ) -> WebhookResult:
        data = {"notification": jsonable_encoder(notification), "error": error}
        return await self.send_webhook(app_id, NOTIFICATION_FAILED, data)

    async def notify_notification_read(self, app_id: str, notification: Any) -> WebhookResult:
        return await self.send_webhook(app_id, NOTIFICATION_READ, notification)

    async def notify_notification_dismissed(self, app_id: str, notification: Any) -> WebhookResult:
        return await self.send_webhook(app_id, NOTIFICATION_DISMISSED, notification)
