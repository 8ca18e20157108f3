"""Webhook delivery tests — signing, retry policy, audit trail.

Learn: Subscriber endpoints are httpx.MockTransport handlers, and the
backoff sleep is an AsyncMock, so retry timing is asserted from the
sleep calls instead of waiting for real time to pass.
"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from herald.schemas.subscriber import SubscriberConfig
from herald.services.collaborators import InMemorySubscriberDirectory
from herald.services.webhook_service import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    WebhookConfigError,
    WebhookDeliveryError,
    WebhookService,
    serialize_payload,
    sign_payload,
    verify_signature,
)

from conftest import CALLBACK_URL, WEBHOOK_SECRET, WebhookEndpoint


@pytest.fixture
def directory():
    d = InMemorySubscriberDirectory(audit_cap=100)
    d.register(SubscriberConfig(app_id="app-1", callback_url=CALLBACK_URL, secret=WEBHOOK_SECRET))
    d.register(SubscriberConfig(app_id="no-url", callback_url=None, secret="s"))
    return d


@pytest.fixture
def endpoint():
    return WebhookEndpoint()


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def service(directory, endpoint, sleep):
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return WebhookService(directory, client=client, max_retries=3, base_delay=1.0, sleep=sleep)


# ═══════════════════════════════════════════════════════════
# Signing
# ═══════════════════════════════════════════════════════════


def test_signature_round_trip():
    payload = {"event": "notification.sent", "data": {"id": "n-1"}}
    signature = sign_payload(payload, "secret")

    assert signature.startswith("sha256=")
    assert verify_signature(payload, signature, "secret")
    assert verify_signature(payload, signature.removeprefix("sha256="), "secret")


def test_signature_rejects_tampering_and_wrong_secret():
    payload = {"event": "notification.sent", "data": {"id": "n-1"}}
    signature = sign_payload(payload, "secret")

    assert not verify_signature({**payload, "data": {"id": "n-2"}}, signature, "secret")
    assert not verify_signature(payload, signature, "other-secret")


def test_serialization_is_canonical():
    assert serialize_payload({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'
    assert sign_payload({"b": 1, "a": 2}, "k") == sign_payload({"a": 2, "b": 1}, "k")


# ═══════════════════════════════════════════════════════════
# Delivery
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_delivers_signed_envelope(service, endpoint):
    result = await service.send_webhook("app-1", "notification.sent", {"id": "n-1"})

    assert result.success is True
    assert result.status == 200
    assert result.attempt == 1

    request = endpoint.requests[0]
    assert str(request.url) == CALLBACK_URL
    assert request.headers[EVENT_HEADER] == "notification.sent"
    assert verify_signature(request.content, request.headers[SIGNATURE_HEADER], WEBHOOK_SECRET)

    envelope = json.loads(request.content)
    assert envelope["event"] == "notification.sent"
    assert envelope["data"] == {"id": "n-1"}
    assert "timestamp" in envelope


@pytest.mark.asyncio
async def test_retries_server_errors_with_exponential_backoff(service, endpoint, sleep, directory):
    endpoint.statuses = [500, 503]

    result = await service.send_webhook("app-1", "notification.sent", {"id": "n-1"})

    assert result.success is True
    assert result.attempt == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    attempts = await directory.list_webhook_attempts("app-1")
    assert [(a.attempt_number, a.status, a.http_status) for a in attempts] == [
        (1, "failed", 500),
        (2, "failed", 503),
        (3, "success", 200),
    ]


@pytest.mark.asyncio
async def test_client_error_is_not_retried(service, endpoint, sleep, directory):
    endpoint.statuses = [400]

    result = await service.send_webhook("app-1", "notification.sent", {"id": "n-1"})

    assert result.success is False
    assert result.status == 400
    assert result.attempt == 1
    assert len(endpoint.requests) == 1
    sleep.assert_not_awaited()
    attempts = await directory.list_webhook_attempts("app-1")
    assert attempts[0].status == "failed"
    assert attempts[0].error == "HTTP 400"


@pytest.mark.asyncio
async def test_exhausted_retries_raise(service, endpoint, sleep):
    endpoint.statuses = [500, httpx.ConnectError("connection refused"), 502]

    with pytest.raises(WebhookDeliveryError) as exc_info:
        await service.send_webhook("app-1", "notification.sent", {"id": "n-1"})

    err = exc_info.value
    assert err.attempt == 3
    assert err.status == 502
    assert err.last_error == "HTTP 502"
    assert len(endpoint.requests) == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_network_errors_are_retried(service, endpoint):
    endpoint.statuses = [httpx.ConnectTimeout("timed out")]

    result = await service.send_webhook("app-1", "notification.sent", {})

    assert result.success is True
    assert result.attempt == 2


@pytest.mark.asyncio
async def test_missing_subscriber_or_callback_url(service, endpoint):
    with pytest.raises(WebhookConfigError):
        await service.send_webhook("unknown-app", "notification.sent", {})
    with pytest.raises(WebhookConfigError):
        await service.send_webhook("no-url", "notification.sent", {})
    assert endpoint.requests == []


@pytest.mark.asyncio
async def test_audit_failure_does_not_abort_delivery(endpoint, sleep):
    directory = AsyncMock()
    directory.resolve_subscriber_config.return_value = SubscriberConfig(
        app_id="app-1", callback_url=CALLBACK_URL, secret=WEBHOOK_SECRET
    )
    directory.record_webhook_attempt.side_effect = RuntimeError("audit store down")
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    service = WebhookService(directory, client=client, sleep=sleep)

    result = await service.send_webhook("app-1", "notification.sent", {})

    assert result.success is True
    directory.record_webhook_attempt.assert_awaited_once()


@pytest.mark.asyncio
async def test_audit_trail_is_bounded(endpoint, sleep):
    directory = InMemorySubscriberDirectory(audit_cap=3)
    directory.register(SubscriberConfig(app_id="app-1", callback_url=CALLBACK_URL, secret="s"))
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    service = WebhookService(directory, client=client, sleep=sleep)

    for n in range(5):
        await service.send_webhook("app-1", f"event.{n}", {})

    attempts = await directory.list_webhook_attempts("app-1")
    assert [a.event_type for a in attempts] == ["event.2", "event.3", "event.4"]


@pytest.mark.asyncio
async def test_lifecycle_wrappers_use_event_names(service, endpoint):
    await service.notify_notification_sent("app-1", {"id": "n"})
    await service.notify_notification_read("app-1", {"id": "n"})
    await service.notify_notification_dismissed("app-1", {"id": "n"})
    await service.notify_notification_failed("app-1", {"id": "n"}, "store down")

    events = [r.headers[EVENT_HEADER] for r in endpoint.requests]
    assert events == [
        "notification.sent",
        "notification.read",
        "notification.dismissed",
        "notification.failed",
    ]
    failed = json.loads(endpoint.requests[-1].content)
    assert failed["data"] == {"notification": {"id": "n"}, "error": "store down"}
