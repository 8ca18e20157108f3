"""RedisJobBroker tests — run against a real Redis when one is reachable.

Learn: The Lua scripts are the part worth testing, and no in-process
fake executes Lua, so these tests connect to HERALD_TEST_REDIS_URL (default
redis://localhost:6379/15) and skip when nothing is listening. Each test
uses its own key prefix and deletes its keys afterwards.
"""

import os
import uuid

import pytest
import pytest_asyncio
import redis.asyncio as aioredis

from herald.dispatcher.jobs import Job, JobStatus, Tier
from herald.dispatcher.queue import NotificationQueue
from herald.dispatcher.redis_broker import RedisJobBroker

REDIS_URL = os.environ.get("HERALD_TEST_REDIS_URL", "redis://localhost:6379/15")
NOW = 1_700_000_000.0


@pytest_asyncio.fixture()
async def broker():
    client = aioredis.from_url(REDIS_URL, decode_responses=True)
    try:
        await client.ping()
    except Exception:
        await client.aclose()
        pytest.skip("Redis not available")

    prefix = f"herald-test-{uuid.uuid4().hex[:8]}"
    yield RedisJobBroker(client, prefix=prefix)

    keys = [k async for k in client.scan_iter(f"{prefix}:*")]
    if keys:
        await client.delete(*keys)
    await client.aclose()


def _job(tier=Tier.IMMEDIATE, priority=0, name="job"):
    return Job(
        id=f"{tier.value}_{name}_{uuid.uuid4().hex[:6]}",
        tier=tier,
        payload={"notification_data": {"title": name}, "tenant_id": "t"},
        created_at=NOW,
        priority=priority,
    )


@pytest.mark.asyncio
async def test_round_trip_preserves_fields(broker):
    job = _job(priority=3)
    await broker.enqueue(job)

    stored = await broker.get(Tier.IMMEDIATE, job.id)
    assert stored.payload == job.payload
    assert stored.priority == 3
    assert stored.status is JobStatus.WAITING
    assert stored.scheduled_at is None
    assert await broker.get(Tier.BULK, job.id) is None


@pytest.mark.asyncio
async def test_claim_order_priority_then_fifo(broker):
    low1, high, low2 = _job(name="low1"), _job(priority=5, name="high"), _job(name="low2")
    for job in (low1, high, low2):
        await broker.enqueue(job)

    claimed = [await broker.claim(Tier.IMMEDIATE, NOW, 30) for _ in range(3)]
    assert [j.id for j in claimed] == [high.id, low1.id, low2.id]
    assert all(j.status is JobStatus.ACTIVE for j in claimed)
    assert await broker.claim(Tier.IMMEDIATE, NOW, 30) is None


@pytest.mark.asyncio
async def test_delayed_promotion_and_retry(broker):
    job = _job(tier=Tier.SCHEDULED)
    await broker.enqueue_delayed(job, NOW + 60)

    assert await broker.promote_due(Tier.SCHEDULED, NOW + 59) == 0
    assert await broker.promote_due(Tier.SCHEDULED, NOW + 60) == 1

    claimed = await broker.claim(Tier.SCHEDULED, NOW + 60, 30)
    claimed.attempts_made = 1
    await broker.retry(claimed, "boom", NOW + 62)

    stats = await broker.stats(Tier.SCHEDULED)
    assert (stats["delayed"], stats["active"], stats["total"]) == (1, 0, 1)
    stored = await broker.get(Tier.SCHEDULED, job.id)
    assert stored.status is JobStatus.DELAYED
    assert stored.attempts_made == 1
    assert stored.error == "boom"


@pytest.mark.asyncio
async def test_cancel_only_pending(broker):
    waiting, active = _job(name="w"), _job(name="a")
    await broker.enqueue(active)
    await broker.claim(Tier.IMMEDIATE, NOW, 30)
    await broker.enqueue(waiting)

    assert await broker.remove_if_pending(Tier.IMMEDIATE, waiting.id) is True
    assert await broker.remove_if_pending(Tier.IMMEDIATE, active.id) is False
    assert await broker.remove_if_pending(Tier.BULK, active.id) is False
    assert await broker.get(Tier.IMMEDIATE, waiting.id) is None


@pytest.mark.asyncio
async def test_requeue_and_prune(broker):
    job = _job()
    await broker.enqueue(job)
    await broker.claim(Tier.IMMEDIATE, NOW, 30)

    assert await broker.requeue_expired(Tier.IMMEDIATE, NOW + 29) == 0
    assert await broker.requeue_expired(Tier.IMMEDIATE, NOW + 31) == 1

    claimed = await broker.claim(Tier.IMMEDIATE, NOW + 31, 30)
    claimed.attempts_made = 1
    await broker.complete(claimed, {"ok": True}, NOW + 32)
    stored = await broker.get(Tier.IMMEDIATE, job.id)
    assert stored.result == {"ok": True}
    assert stored.progress == 100

    assert await broker.prune(Tier.IMMEDIATE, NOW + 32, NOW) == 0
    assert await broker.prune(Tier.IMMEDIATE, NOW + 33, NOW) == 1
    assert await broker.get(Tier.IMMEDIATE, job.id) is None


@pytest.mark.asyncio
async def test_queue_runs_on_redis_broker(broker):
    async def processor(job, progress):
        await progress(50)
        return {"tenant": job.payload["tenant_id"]}

    queue = NotificationQueue(broker, {Tier.IMMEDIATE: processor}, clock=lambda: NOW)
    handle = await queue.add_immediate({"title": "x", "message": "y"}, "tenant-a")
    await queue.process_next(Tier.IMMEDIATE)

    status = await queue.get_job_status(Tier.IMMEDIATE, handle.job_id)
    assert status["status"] == "completed"
    assert status["result"] == {"tenant": "tenant-a"}


@pytest.mark.asyncio
async def test_slow_worker_finish_after_requeue_is_not_rerun(broker):
    job = _job()
    await broker.enqueue(job)
    slow = await broker.claim(Tier.IMMEDIATE, NOW, 30)
    assert await broker.requeue_expired(Tier.IMMEDIATE, NOW + 31) == 1

    slow.attempts_made = 1
    assert await broker.complete(slow, {"ok": True}, NOW + 32) is True

    assert await broker.claim(Tier.IMMEDIATE, NOW + 33, 30) is None
    stats = await broker.stats(Tier.IMMEDIATE)
    assert (stats["completed"], stats["waiting"], stats["active"], stats["total"]) == (1, 0, 0, 1)


@pytest.mark.asyncio
async def test_late_finish_is_refused_once_job_finished_elsewhere(broker):
    job = _job()
    await broker.enqueue(job)
    slow = await broker.claim(Tier.IMMEDIATE, NOW, 30)
    await broker.requeue_expired(Tier.IMMEDIATE, NOW + 31)

    second = await broker.claim(Tier.IMMEDIATE, NOW + 31, 30)
    second.attempts_made = 1
    assert await broker.complete(second, {"by": "second"}, NOW + 32) is True

    slow.attempts_made = 1
    assert await broker.fail(slow, "too late", NOW + 33) is False
    stored = await broker.get(Tier.IMMEDIATE, job.id)
    assert stored.status is JobStatus.COMPLETED
    assert stored.result == {"by": "second"}
    assert (await broker.stats(Tier.IMMEDIATE))["failed"] == 0


@pytest.mark.asyncio
async def test_finish_after_prune_does_not_resurrect_job(broker):
    job = _job()
    await broker.enqueue(job)
    claimed = await broker.claim(Tier.IMMEDIATE, NOW, 30)
    claimed.attempts_made = 1
    await broker.complete(claimed, None, NOW + 1)
    await broker.prune(Tier.IMMEDIATE, NOW + 2, NOW + 2)

    assert await broker.complete(claimed, None, NOW + 3) is False
    assert await broker.get(Tier.IMMEDIATE, job.id) is None
    assert (await broker.stats(Tier.IMMEDIATE))["total"] == 0
