"""Durable job broker capability + the process-local implementation.

Learn: the dispatcher's policy layer (tiers, backoff, worker pools) never
touches storage directly. It drives a JobBroker, whose every method is a
single atomic state transition against the store:

  enqueue / enqueue_delayed   new job → waiting / delayed
  promote_due                 delayed jobs whose run_at passed → waiting
  claim                       highest-priority waiting job → active,
                              with a visibility deadline
  complete / retry / fail     active → completed / delayed / failed; False if
                              the job is no longer active or waiting
  requeue_expired             active jobs past their deadline → waiting
                              (their worker died; at-least-once delivery)
  remove_if_pending           cancel: waiting/delayed only
  prune                       drop finished jobs past retention

MemoryJobBroker is for tests and single-process development. Each
method runs without awaiting, so on one event loop it is atomic. Jobs are
copied in and out so callers can never mutate broker state by accident.
RedisJobBroker (redis_broker.py) is the shared, durable implementation.
"""

import copy
import heapq
import itertools
from abc import ABC, abstractmethod
from typing import Any, Optional

from herald.dispatcher.jobs import Job, JobStatus, PENDING_STATUSES, Tier


class JobBroker(ABC):
    @abstractmethod
    async def enqueue(self, job: Job) -> None: ...

    @abstractmethod
    async def enqueue_delayed(self, job: Job, run_at: float) -> None: ...

    @abstractmethod
    async def promote_due(self, tier: Tier, now: float) -> int: ...

    @abstractmethod
    async def claim(self, tier: Tier, now: float, visibility_timeout: float) -> Optional[Job]: ...

    @abstractmethod
    async def complete(self, job: Job, result: Any, now: float) -> bool: ...

    @abstractmethod
    async def retry(self, job: Job, error: str, run_at: float) -> bool: ...

    @abstractmethod
    async def fail(self, job: Job, error: str, now: float) -> bool: ...

    @abstractmethod
    async def update_progress(self, tier: Tier, job_id: str, progress: int) -> None: ...

    @abstractmethod
    async def get(self, tier: Tier, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    async def remove_if_pending(self, tier: Tier, job_id: str) -> bool: ...

    @abstractmethod
    async def requeue_expired(self, tier: Tier, now: float) -> int: ...

    @abstractmethod
    async def prune(self, tier: Tier, completed_before: float, failed_before: float) -> int: ...

    @abstractmethod
    async def stats(self, tier: Tier) -> dict: ...

    async def close(self) -> None:
        return None


class MemoryJobBroker(JobBroker):
    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._waiting: dict[Tier, list[tuple[int, int, str]]] = {t: [] for t in Tier}
        self._deadlines: dict[str, float] = {}
        self._seq = itertools.count(1)

    def _push_waiting(self, job: Job) -> None:
        job.status = JobStatus.WAITING
        job.run_at = None
        job.seq = next(self._seq)
        heapq.heappush(self._waiting[job.tier], (-job.priority, job.seq, job.id))

    def _tier_jobs(self, tier: Tier, status: JobStatus) -> list[Job]:
        return [j for j in self._jobs.values() if j.tier == tier and j.status == status]

    async def enqueue(self, job: Job) -> None:
        job = copy.deepcopy(job)
        self._jobs[job.id] = job
        self._push_waiting(job)

    async def enqueue_delayed(self, job: Job, run_at: float) -> None:
        job = copy.deepcopy(job)
        job.status = JobStatus.DELAYED
        job.run_at = run_at
        self._jobs[job.id] = job

    async def promote_due(self, tier: Tier, now: float) -> int:
        due = [j for j in self._tier_jobs(tier, JobStatus.DELAYED) if j.run_at <= now]
        for job in sorted(due, key=lambda j: j.run_at):
            self._push_waiting(job)
        return len(due)

    async def claim(self, tier: Tier, now: float, visibility_timeout: float) -> Optional[Job]:
        heap = self._waiting[tier]
        while heap:
            _, seq, job_id = heapq.heappop(heap)
            job = self._jobs.get(job_id)
            # Lazily skip heap entries for cancelled or re-queued jobs
            if job is None or job.status != JobStatus.WAITING or job.seq != seq:
                continue
            job.status = JobStatus.ACTIVE
            job.started_at = now
            self._deadlines[job.id] = now + visibility_timeout
            return copy.deepcopy(job)
        return None

    def _finish(self, job: Job, status: JobStatus, now: Optional[float]) -> Optional[Job]:
        stored = self._jobs.get(job.id)
        # Cancelled, pruned or already finished by another worker
        if stored is None or stored.status not in (JobStatus.ACTIVE, JobStatus.WAITING):
            return None
        stored.attempts_made = job.attempts_made
        stored.status = status
        stored.finished_at = now
        self._deadlines.pop(job.id, None)
        return stored

    async def complete(self, job: Job, result: Any, now: float) -> bool:
        stored = self._finish(job, JobStatus.COMPLETED, now)
        if stored is None:
            return False
        stored.result = copy.deepcopy(result)
        stored.progress = 100
        stored.error = None
        return True

    async def retry(self, job: Job, error: str, run_at: float) -> bool:
        stored = self._finish(job, JobStatus.DELAYED, None)
        if stored is None:
            return False
        stored.error = error
        stored.run_at = run_at
        return True

    async def fail(self, job: Job, error: str, now: float) -> bool:
        stored = self._finish(job, JobStatus.FAILED, now)
        if stored is None:
            return False
        stored.error = error
        return True

    async def update_progress(self, tier: Tier, job_id: str, progress: int) -> None:
        job = self._jobs.get(job_id)
        if job is not None and job.tier == tier:
            job.progress = progress

    async def get(self, tier: Tier, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None or job.tier != tier:
            return None
        return copy.deepcopy(job)

    async def remove_if_pending(self, tier: Tier, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.tier != tier or job.status not in PENDING_STATUSES:
            return False
        del self._jobs[job_id]
        return True

    async def requeue_expired(self, tier: Tier, now: float) -> int:
        expired = [
            j for j in self._tier_jobs(tier, JobStatus.ACTIVE)
            if self._deadlines.get(j.id, now) < now
        ]
        for job in expired:
            self._deadlines.pop(job.id, None)
            self._push_waiting(job)
        return len(expired)

    async def prune(self, tier: Tier, completed_before: float, failed_before: float) -> int:
        stale = [
            j.id for j in self._jobs.values()
            if j.tier == tier
            and (
                (j.status == JobStatus.COMPLETED and j.finished_at < completed_before)
                or (j.status == JobStatus.FAILED and j.finished_at < failed_before)
            )
        ]
        for job_id in stale:
            del self._jobs[job_id]
        return len(stale)

    async def stats(self, tier: Tier) -> dict:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            if job.tier == tier:
                counts[job.status.value] += 1
        counts["total"] = sum(counts.values())
        return counts
