#!/usr/bin/env python3
"""
Herald Quickstart — every send path in one script.

Direct send → queued send → bulk send → schedule → poll → cancel.
Run with: python examples/quickstart.py

Requires: pip install httpx
Server must be running with a known API key (see examples/_common.py).
"""

import sys
import time
from datetime import datetime, timedelta, timezone

from _common import create_client


def poll_job(client, tier: str, job_id: str, timeout: float = 10) -> dict:
    """Poll a job until it completes or fails."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        job = client.get(f"/notifications/jobs/{tier}/{job_id}").json()
        if job["status"] in ("completed", "failed"):
            return job
        time.sleep(0.5)
    return job


def main():
    client = create_client()

    # ── Direct send ───────────────────────────────────────────────
    print("\n1. Sending a notification directly...")
    resp = client.post("/notifications/send", json={
        "tenant_id": "tenant-demo",
        "title": "Welcome aboard",
        "message": "Your workspace is ready.",
        "priority": "high",
    })
    if resp.status_code != 200:
        print(f"   Failed: {resp.status_code} {resp.text}")
        sys.exit(1)
    sent = resp.json()["notification"]
    print(f"   Notification: {sent['notification_id'][:8]}... (webhook: {sent['webhook']})")

    # ── Queued send ───────────────────────────────────────────────
    print("\n2. Queueing a notification...")
    resp = client.post("/notifications/send", json={
        "tenant_id": "tenant-demo",
        "title": "Report ready",
        "message": "Your monthly report has been generated.",
        "use_queue": True,
    })
    assert resp.status_code == 200, f"Failed: {resp.text}"
    job = resp.json()
    print(f"   Job: {job['job_id']} ({job['queue']})")
    job = poll_job(client, job["queue"], job["job_id"])
    print(f"   Status: {job['status']} after {job['attempts_made']} attempt(s)")

    # ── Bulk send ─────────────────────────────────────────────────
    print("\n3. Bulk sending to three tenants...")
    resp = client.post("/notifications/bulk-send", json={
        "tenant_ids": ["tenant-a", "tenant-b", "tenant-c"],
        "title": "Scheduled maintenance",
        "message": "We'll be down for 10 minutes tonight.",
        "type": "maintenance",
    })
    assert resp.status_code == 200, f"Failed: {resp.text}"
    bulk = resp.json()
    print(f"   Job: {bulk['job_id']} ({bulk['total_notifications']} notifications)")
    bulk = poll_job(client, "bulk", bulk["job_id"])
    if "result" in bulk:
        result = bulk["result"]
        print(f"   Delivered {result['succeeded']}/{result['total']} (failed: {result['failed']})")

    # ── Schedule, then cancel ─────────────────────────────────────
    print("\n4. Scheduling a reminder for an hour from now...")
    at = datetime.now(timezone.utc) + timedelta(hours=1)
    resp = client.post("/notifications/schedule", json={
        "tenant_id": "tenant-demo",
        "title": "Reminder",
        "message": "Your trial ends tomorrow.",
        "scheduled_at": at.isoformat(),
    })
    assert resp.status_code == 200, f"Failed: {resp.text}"
    scheduled = resp.json()
    print(f"   Job: {scheduled['job_id']} (status: {scheduled['status']})")

    print("\n5. Cancelling it...")
    resp = client.delete(f"/notifications/jobs/scheduled/{scheduled['job_id']}")
    print(f"   {resp.status_code}: {resp.json()}")

    # ── Queue stats ───────────────────────────────────────────────
    print("\n6. Queue stats:")
    for tier in ("immediate", "bulk", "scheduled"):
        stats = client.get(f"/notifications/queues/{tier}/stats").json()
        counts = ", ".join(f"{k}={v}" for k, v in stats.items() if k != "queue")
        print(f"   {tier:<10} {counts}")

    print("\nDone.")


if __name__ == "__main__":
    main()
