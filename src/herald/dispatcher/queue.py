"""Notification queue — tiered job dispatch with bounded worker pools.

Learn: three lanes with different urgency/cost profiles:

  immediate  single notification, 10 workers, 3 attempts, backoff 2s→30s
  bulk       batch of notifications, 5 workers, 2 attempts, backoff 5s→60s
  scheduled  single notification at a future time, 3 workers, 3 attempts

Each tier gets its own pool of worker tasks, sized independently, so a
flood of bulk sends can never starve immediate ones. A worker loops on
process_next(): promote due delayed jobs, claim one, run the tier's
processor, then complete / retry-with-backoff / fail it.

Delivery is at-least-once: a job whose worker vanished goes back to
waiting after the visibility timeout, and a retried job re-runs its
processor from the start. Nothing here deduplicates. Processors receive
the job id (processors put it in the record metadata as jobId) so a
collaborator that needs idempotency can key on it.

Cancellation only removes jobs that are still waiting or delayed. Once a
worker has claimed a job it runs to completion or exhausts its retries.

Jobs enqueued with an app_id belong to that application: status lookups
and cancellation that pass a different app_id see "not found".
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from herald.dispatcher.broker import JobBroker
from herald.dispatcher.jobs import (
    DEFAULT_TIER_POLICIES,
    Job,
    JobHandle,
    JobStatus,
    Tier,
    TierPolicy,
    new_job_id,
    parse_tier,
)

logger = logging.getLogger("herald.dispatcher")

ProgressCallback = Callable[[int], Awaitable[None]]
Processor = Callable[[Job, ProgressCallback], Awaitable[Any]]
FailureHandler = Callable[[Job, str], Awaitable[None]]


class JobScheduleError(Exception):
    pass


class BulkPayloadError(Exception):
    pass


@dataclass
class DispatcherStats:
    """Runtime statistics for monitoring."""
    completed: int = 0
    retried: int = 0
    failed: int = 0
    errors: int = 0
    in_flight: set = field(default_factory=set)
    started_at: Optional[datetime] = None


def _timestamp(value: Union[datetime, float, int]) -> float:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    return float(value)


class NotificationQueue:
    def __init__(
        self,
        broker: JobBroker,
        processors: Optional[dict[Tier, Processor]] = None,
        *,
        policies: Optional[dict[Tier, TierPolicy]] = None,
        clock: Callable[[], float] = time.time,
        visibility_timeout: float = 300.0,
        poll_interval: float = 0.5,
        maintenance_interval: float = 30.0,
        completed_retention: float = 86400.0,
        failed_retention: float = 604800.0,
        bulk_chunk_size: int = 100,
        bulk_max_items: int = 1000,
        on_failure: Optional[FailureHandler] = None,
    ):
        self.broker = broker
        self.processors: dict[Tier, Processor] = dict(processors or {})
        self.policies = dict(policies or DEFAULT_TIER_POLICIES)
        self.clock = clock
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self.maintenance_interval = maintenance_interval
        self.completed_retention = completed_retention
        self.failed_retention = failed_retention
        self.bulk_chunk_size = bulk_chunk_size
        self.bulk_max_items = bulk_max_items
        self.on_failure = on_failure
        self.stats = DispatcherStats()
        self._workers: dict[Tier, list[asyncio.Task]] = {}
        self._maintenance: Optional[asyncio.Task] = None
        self._running = False

    def set_processor(self, tier: Tier, processor: Processor) -> None:
        self.processors[tier] = processor

    def _new_job(
        self,
        tier: Tier,
        payload: dict,
        priority: int,
        max_attempts: Optional[int],
        job_id: Optional[str],
        app_id: Optional[str],
    ) -> Job:
        if app_id is not None:
            payload["app_id"] = app_id
        return Job(
            id=job_id or new_job_id(tier),
            tier=tier,
            payload=payload,
            created_at=self.clock(),
            priority=priority,
            max_attempts=max_attempts or self.policies[tier].max_attempts,
        )

    # ─── Enqueue ──────────────────────────────────────────

    async def add_immediate(
        self,
        notification_data: dict,
        tenant_id: str,
        *,
        priority: int = 0,
        max_attempts: Optional[int] = None,
        job_id: Optional[str] = None,
        app_id: Optional[str] = None,
    ) -> JobHandle:
        job = self._new_job(
            Tier.IMMEDIATE,
            {"notification_data": notification_data, "tenant_id": tenant_id},
            priority, max_attempts, job_id, app_id,
        )
        await self.broker.enqueue(job)
        logger.info("Queued immediate job %s (tenant=%s)", job.id, tenant_id)
        return JobHandle(job.id, Tier.IMMEDIATE, JobStatus.WAITING)

    async def add_bulk(
        self,
        notifications: list[dict],
        *,
        priority: int = 0,
        max_attempts: Optional[int] = None,
        chunk_size: Optional[int] = None,
        job_id: Optional[str] = None,
        app_id: Optional[str] = None,
    ) -> JobHandle:
        """Queue a batch. Each item is {"notification_data": {...}, "tenant_id": "..."}."""
        if not notifications:
            raise BulkPayloadError("At least one notification is required")
        if len(notifications) > self.bulk_max_items:
            raise BulkPayloadError(
                f"Bulk jobs are limited to {self.bulk_max_items} notifications, "
                f"got {len(notifications)}"
            )
        job = self._new_job(
            Tier.BULK,
            {"notifications": notifications, "chunk_size": chunk_size or self.bulk_chunk_size},
            priority, max_attempts, job_id, app_id,
        )
        await self.broker.enqueue(job)
        logger.info("Queued bulk job %s (%d notifications)", job.id, len(notifications))
        return JobHandle(
            job.id, Tier.BULK, JobStatus.WAITING, total_notifications=len(notifications)
        )

    async def schedule(
        self,
        notification_data: dict,
        tenant_id: str,
        scheduled_at: Union[datetime, float, int],
        *,
        priority: int = 0,
        max_attempts: Optional[int] = None,
        job_id: Optional[str] = None,
        app_id: Optional[str] = None,
    ) -> JobHandle:
        run_at = _timestamp(scheduled_at)
        if run_at - self.clock() < 0:
            raise JobScheduleError("Scheduled time must be in the future")

        job = self._new_job(
            Tier.SCHEDULED,
            {"notification_data": notification_data, "tenant_id": tenant_id},
            priority, max_attempts, job_id, app_id,
        )
        job.scheduled_at = run_at
        await self.broker.enqueue_delayed(job, run_at)
        logger.info("Scheduled job %s for %s (tenant=%s)", job.id, run_at, tenant_id)
        return JobHandle(job.id, Tier.SCHEDULED, JobStatus.DELAYED, scheduled_at=run_at)

    # ─── Inspection / cancellation ────────────────────────

    async def _owned_job(self, tier: Tier, job_id: str, app_id: Optional[str]) -> Optional[Job]:
        job = await self.broker.get(tier, job_id)
        if job is None or (app_id is not None and job.payload.get("app_id") != app_id):
            return None
        return job

    async def get_job_status(
        self, tier: Union[Tier, str], job_id: str, app_id: Optional[str] = None
    ) -> dict:
        tier = parse_tier(tier) if isinstance(tier, str) else tier
        job = await self._owned_job(tier, job_id, app_id)
        if job is None:
            return {"job_id": job_id, "status": "not_found"}

        status = {
            "job_id": job.id,
            "queue": job.tier.value,
            "status": job.status.value,
            "progress": job.progress,
            "attempts_made": job.attempts_made,
            "max_attempts": job.max_attempts,
            "created_at": job.created_at,
            "scheduled_at": job.scheduled_at,
        }
        if job.status == JobStatus.COMPLETED:
            status["result"] = job.result
        elif job.error:
            status["error"] = job.error
        return status

    async def cancel_job(
        self, tier: Union[Tier, str], job_id: str, app_id: Optional[str] = None
    ) -> dict:
        tier = parse_tier(tier) if isinstance(tier, str) else tier
        if app_id is not None and await self._owned_job(tier, job_id, app_id) is None:
            return {"success": False, "job_id": job_id, "message": "Job not found"}

        if await self.broker.remove_if_pending(tier, job_id):
            logger.info("Cancelled job %s", job_id)
            return {"success": True, "job_id": job_id}

        job = await self.broker.get(tier, job_id)
        if job is None:
            return {"success": False, "job_id": job_id, "message": "Job not found"}
        return {
            "success": False,
            "job_id": job_id,
            "message": f"Job is {job.status.value} and can no longer be cancelled",
        }

    async def get_queue_stats(self, tier: Union[Tier, str]) -> dict:
        tier = parse_tier(tier) if isinstance(tier, str) else tier
        stats = await self.broker.stats(tier)
        return {"queue": tier.value, **stats}

    # ─── Processing ───────────────────────────────────────

    async def process_next(self, tier: Tier) -> Optional[Job]:
        """Claim and run one job from the tier. Returns None when idle.

        Learn: the whole job lifecycle for one attempt lives here, so the
        worker loop and tests drive exactly the same code path.

        If this worker's claim expired and another worker already finished
        the job, the broker refuses the late transition and nothing is
        counted.
        """
        processor = self.processors.get(tier)
        if processor is None:
            raise RuntimeError(f"No processor registered for {tier.value} queue")

        now = self.clock()
        await self.broker.promote_due(tier, now)
        job = await self.broker.claim(tier, now, self.visibility_timeout)
        if job is None:
            return None

        async def report_progress(progress: int) -> None:
            job.progress = progress
            await self.broker.update_progress(tier, job.id, progress)

        self.stats.in_flight.add(job.id)
        try:
            result = await processor(job, report_progress)
        except Exception as e:
            job.attempts_made += 1
            error = str(e) or type(e).__name__
            job.error = error
            if job.attempts_made < job.max_attempts:
                delay = self.policies[tier].backoff_delay(job.attempts_made)
                job.run_at = self.clock() + delay
                job.status = JobStatus.DELAYED
                if await self.broker.retry(job, error, job.run_at):
                    self.stats.retried += 1
                    logger.warning(
                        "Job %s failed (attempt %d/%d), retrying in %.1fs: %s",
                        job.id, job.attempts_made, job.max_attempts, delay, error,
                    )
                else:
                    self._finished_elsewhere(job)
            else:
                job.status = JobStatus.FAILED
                if await self.broker.fail(job, error, self.clock()):
                    self.stats.failed += 1
                    logger.error(
                        "Job %s failed after %d attempts: %s",
                        job.id, job.attempts_made, error,
                    )
                    await self._report_failure(job, error)
                else:
                    self._finished_elsewhere(job)
        else:
            job.attempts_made += 1
            job.status = JobStatus.COMPLETED
            job.result = result
            if await self.broker.complete(job, result, self.clock()):
                self.stats.completed += 1
                logger.info("Job %s completed (queue=%s)", job.id, tier.value)
            else:
                self._finished_elsewhere(job)
        finally:
            self.stats.in_flight.discard(job.id)
        return job

    def _finished_elsewhere(self, job: Job) -> None:
        logger.warning(
            "Job %s is no longer active (claim expired, cancelled or finished elsewhere); "
            "dropping this attempt's outcome",
            job.id,
        )

    async def _report_failure(self, job: Job, error: str) -> None:
        if self.on_failure is None:
            return
        try:
            await self.on_failure(job, error)
        except Exception:
            logger.exception("Failure handler raised for job %s", job.id)
            self.stats.errors += 1

    async def _worker(self, tier: Tier, index: int) -> None:
        logger.debug("Worker %s-%d started", tier.value, index)
        while self._running:
            try:
                job = await self.process_next(tier)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in %s worker %d", tier.value, index)
                self.stats.errors += 1
                await asyncio.sleep(1)
                continue
            if job is None:
                await asyncio.sleep(self.poll_interval)

    async def run_maintenance(self) -> None:
        """Return abandoned jobs to the queue and drop expired history."""
        now = self.clock()
        for tier in Tier:
            requeued = await self.broker.requeue_expired(tier, now)
            if requeued:
                logger.warning("Requeued %d abandoned %s job(s)", requeued, tier.value)
            await self.broker.prune(
                tier,
                completed_before=now - self.completed_retention,
                failed_before=now - self.failed_retention,
            )

    async def _maintenance_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.maintenance_interval)
                await self.run_maintenance()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in queue maintenance loop")
                self.stats.errors += 1

    # ─── Lifecycle ────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.stats.started_at = datetime.now()
        for tier in Tier:
            if tier not in self.processors:
                continue
            size = self.policies[tier].concurrency
            self._workers[tier] = [
                asyncio.create_task(self._worker(tier, i)) for i in range(size)
            ]
            logger.info("Started %d %s worker(s)", size, tier.value)
        self._maintenance = asyncio.create_task(self._maintenance_loop())

    async def stop(self) -> None:
        self._running = False
        tasks = [t for pool in self._workers.values() for t in pool]
        if self._maintenance:
            tasks.append(self._maintenance)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._maintenance = None
        logger.info(
            "Stopped queue workers (completed=%d, retried=%d, failed=%d)",
            self.stats.completed, self.stats.retried, self.stats.failed,
        )

    def get_stats(self) -> dict:
        """Return dispatcher statistics for monitoring."""
        return {
            "completed": self.stats.completed,
            "retried": self.stats.retried,
            "failed": self.stats.failed,
            "errors": self.stats.errors,
            "in_flight": len(self.stats.in_flight),
            "workers": {tier.value: len(pool) for tier, pool in self._workers.items()},
            "started_at": (
                self.stats.started_at.isoformat() if self.stats.started_at else None
            ),
        }
