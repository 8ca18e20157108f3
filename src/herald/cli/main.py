"""Herald CLI — send notifications, inspect jobs, sign webhook payloads.

Usage:
    herald send "Deploy finished" "v2.3 is live" -t tenant-1     # Direct send
    herald send "Deploy finished" "v2.3 is live" -t tenant-1 --queue
    herald bulk-send "Maintenance" "Tonight 22:00 UTC" -t a -t b  # Bulk job
    herald schedule "Reminder" "Standup" -t tenant-1 --at 2026-01-05T09:00:00Z
    herald job immediate immediate_3f2a...                        # Job status
    herald cancel scheduled scheduled_9c1e...                     # Cancel pending job
    herald stats                                                  # Queue counts + health
    herald sign payload.json --secret s3cr3t                      # Webhook signature
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

from herald import __version__
from herald.dispatcher.jobs import Tier

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"

TIERS = [t.value for t in Tier]
PRIORITIES = ["low", "medium", "high", "urgent"]


def _api_url() -> str:
    return os.environ.get("HERALD_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the Herald service."""
    headers = {}
    api_key = os.environ.get("HERALD_API_KEY")
    if api_key:
        headers["X-API-Key"] = api_key
    return httpx.AsyncClient(base_url=_api_url(), headers=headers, timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _check(r: httpx.Response) -> dict:
    """Return the JSON body, or print the API error and exit."""
    if r.is_success:
        return r.json()
    try:
        detail = r.json().get("detail", r.text)
    except ValueError:
        detail = r.text
    if isinstance(detail, dict):
        detail = detail.get("message", detail)
    click.secho(f"Error {r.status_code}: {detail}", fg="red", err=True)
    retry_after = r.headers.get("Retry-After")
    if retry_after:
        click.secho(f"Retry after {retry_after}s", fg="yellow", err=True)
    sys.exit(1)


def _notification_body(title: str, message: str, notification_type: Optional[str],
                       priority: str, action_url: Optional[str],
                       metadata: Optional[str]) -> dict:
    body: dict = {"title": title, "message": message, "priority": priority}
    if notification_type:
        body["type"] = notification_type
    if action_url:
        body["action_url"] = action_url
    if metadata:
        try:
            body["metadata"] = json.loads(metadata)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"metadata is not valid JSON: {e}")
    return body


def _status_color(status: str) -> str:
    """Map job status strings to click colors."""
    colors = {
        "waiting": "white",
        "active": "yellow",
        "delayed": "cyan",
        "completed": "green",
        "failed": "red",
    }
    return colors.get(status, "white")


def notification_options(fn):
    """Options shared by every command that creates a notification."""
    fn = click.option("--metadata", "-m", help="JSON object stored with the notification")(fn)
    fn = click.option("--action-url", help="Link the notification points to")(fn)
    fn = click.option("--priority", "-p", type=click.Choice(PRIORITIES), default="medium")(fn)
    fn = click.option("--type", "notification_type", help="Notification type (default system_update)")(fn)
    return fn


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="herald")
def main():
    """Herald — send notifications and manage the delivery queues.

    Set HERALD_API_URL and HERALD_API_KEY to point at a running service.
    """


# ---------------------------------------------------------------------------
# herald send
# ---------------------------------------------------------------------------


@main.command()
@click.argument("title")
@click.argument("message")
@click.option("--tenant", "-t", "tenant_id", required=True, help="Target tenant id")
@click.option("--queue/--direct", "use_queue", default=False,
              help="Deliver through the immediate queue instead of inline")
@notification_options
def send(title: str, message: str, tenant_id: str, use_queue: bool,
         notification_type: Optional[str], priority: str,
         action_url: Optional[str], metadata: Optional[str]):
    """Send one notification to a tenant."""
    body = _notification_body(title, message, notification_type, priority, action_url, metadata)
    body.update(tenant_id=tenant_id, use_queue=use_queue)
    _run(_send_impl(body))


async def _send_impl(body: dict):
    async with _client() as c:
        data = _check(await c.post("/api/v1/notifications/send", json=body))
    if data.get("queued"):
        click.secho(f"Queued job {data['job_id']}", fg="green")
    else:
        n = data["notification"]
        click.secho(f"Sent notification {n['notification_id']}", fg="green")
        broadcast = n.get("broadcast") or {}
        if "sent" in broadcast:
            click.echo(f"  Live recipients: {broadcast['sent']}/{broadcast['total']}")
        click.echo(f"  Webhook:         {n['webhook']}")


# ---------------------------------------------------------------------------
# herald bulk-send
# ---------------------------------------------------------------------------


@main.command("bulk-send")
@click.argument("title")
@click.argument("message")
@click.option("--tenant", "-t", "tenant_ids", multiple=True, required=True,
              help="Target tenant id (repeat for several)")
@click.option("--queue/--direct", "use_queue", default=True,
              help="Deliver through the bulk queue (default) or inline")
@notification_options
def bulk_send(title: str, message: str, tenant_ids: tuple[str, ...], use_queue: bool,
              notification_type: Optional[str], priority: str,
              action_url: Optional[str], metadata: Optional[str]):
    """Send the same notification to many tenants."""
    body = _notification_body(title, message, notification_type, priority, action_url, metadata)
    body.update(tenant_ids=list(tenant_ids), use_queue=use_queue)
    _run(_bulk_send_impl(body))


async def _bulk_send_impl(body: dict):
    async with _client() as c:
        data = _check(await c.post("/api/v1/notifications/bulk-send", json=body))
    if data.get("queued"):
        click.secho(
            f"Queued bulk job {data['job_id']} ({data['total_notifications']} notifications)",
            fg="green",
        )
    else:
        click.secho(f"Sent {data['count']} notification(s)", fg="green")


# ---------------------------------------------------------------------------
# herald schedule
# ---------------------------------------------------------------------------


@main.command()
@click.argument("title")
@click.argument("message")
@click.option("--tenant", "-t", "tenant_id", required=True, help="Target tenant id")
@click.option("--at", "scheduled_at", required=True,
              help="ISO-8601 delivery time, e.g. 2026-01-05T09:00:00Z")
@notification_options
def schedule(title: str, message: str, tenant_id: str, scheduled_at: str,
             notification_type: Optional[str], priority: str,
             action_url: Optional[str], metadata: Optional[str]):
    """Schedule a notification for later delivery."""
    body = _notification_body(title, message, notification_type, priority, action_url, metadata)
    body.update(tenant_id=tenant_id, scheduled_at=scheduled_at)
    _run(_schedule_impl(body))


async def _schedule_impl(body: dict):
    async with _client() as c:
        data = _check(await c.post("/api/v1/notifications/schedule", json=body))
    click.secho(f"Scheduled job {data['job_id']}", fg="green")


# ---------------------------------------------------------------------------
# herald job / cancel
# ---------------------------------------------------------------------------


@main.command()
@click.argument("tier", type=click.Choice(TIERS))
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw JSON response")
def job(tier: str, job_id: str, as_json: bool):
    """Show the status of a queued job."""
    _run(_job_impl(tier, job_id, as_json))


async def _job_impl(tier: str, job_id: str, as_json: bool):
    async with _client() as c:
        data = _check(await c.get(f"/api/v1/notifications/jobs/{tier}/{job_id}"))
    if as_json:
        click.echo(_pretty_json(data))
        return

    status = data["status"]
    click.secho(f"Job {data['job_id']}", bold=True)
    click.echo(f"  Status:   {click.style(status, fg=_status_color(status))}")
    click.echo(f"  Progress: {data['progress']}%")
    click.echo(f"  Attempts: {data['attempts_made']}/{data['max_attempts']}")
    if data.get("error"):
        click.secho(f"  Error:    {data['error']}", fg="red")
    if data.get("result") is not None:
        click.echo("  Result:")
        click.echo(_pretty_json(data["result"]))


@main.command()
@click.argument("tier", type=click.Choice(TIERS))
@click.argument("job_id")
def cancel(tier: str, job_id: str):
    """Cancel a job that has not started yet."""
    _run(_cancel_impl(tier, job_id))


async def _cancel_impl(tier: str, job_id: str):
    async with _client() as c:
        _check(await c.delete(f"/api/v1/notifications/jobs/{tier}/{job_id}"))
    click.secho(f"Cancelled job {job_id}", fg="green")


# ---------------------------------------------------------------------------
# herald stats
# ---------------------------------------------------------------------------


@main.command()
@click.argument("tiers", nargs=-1, type=click.Choice(TIERS))
def stats(tiers: tuple[str, ...]):
    """Show job counts per queue and service health."""
    _run(_stats_impl(list(tiers) or TIERS))


async def _stats_impl(tiers: list[str]):
    async with _client() as c:
        health = _check(await c.get("/api/v1/health"))
        status_fg = "green" if health["status"] == "healthy" else "yellow"
        click.secho(f"Herald {health['version']}: {health['status']}", fg=status_fg, bold=True)
        click.echo(f"  Redis:       {health['redis']}")
        click.echo(f"  Live users:  {health['connections']['users']}")
        click.echo()

        columns = ["waiting", "active", "delayed", "completed", "failed", "total"]
        header = f"{'queue':12s}" + "".join(f"{name:>11s}" for name in columns)
        click.secho(header, bold=True)
        click.echo("-" * len(header))
        for tier in tiers:
            counts = _check(await c.get(f"/api/v1/notifications/queues/{tier}/stats"))
            click.echo(f"{tier:12s}" + "".join(f"{counts.get(name, 0):>11d}" for name in columns))


# ---------------------------------------------------------------------------
# herald sign
# ---------------------------------------------------------------------------


@main.command()
@click.argument("payload", type=click.File("rb"))
@click.option("--secret", envvar="HERALD_WEBHOOK_SECRET", required=True,
              help="Subscriber secret (or set HERALD_WEBHOOK_SECRET)")
@click.option("--verify", "signature", help="Check this X-Webhook-Signature instead of printing one")
def sign(payload, secret: str, signature: Optional[str]):
    """Sign a webhook body (file or - for stdin) with HMAC-SHA256.

    Signs the exact bytes given, the way delivered webhooks are signed.
    """
    from herald.services.webhook_service import sign_payload, verify_signature

    body = payload.read()
    if signature is None:
        click.echo(sign_payload(body, secret))
        return
    if verify_signature(body, signature, secret):
        click.secho("Signature valid", fg="green")
    else:
        click.secho("Signature INVALID", fg="red", err=True)
        sys.exit(1)
