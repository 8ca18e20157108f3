"""Job model, tiers and retry policy.

Learn: a job moves through

  waiting → active → completed
                   → delayed (retry backoff) → waiting → active → ...
                   → failed  (attempts exhausted, kept for inspection)

Scheduled jobs start out delayed and only become waiting once their
scheduled time has passed. Times are epoch seconds (floats) throughout,
so brokers can use them directly as sorted-set scores.
"""

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class Tier(str, Enum):
    IMMEDIATE = "immediate"
    BULK = "bulk"
    SCHEDULED = "scheduled"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


PENDING_STATUSES = (JobStatus.WAITING, JobStatus.DELAYED)


class UnknownTierError(Exception):
    pass


def parse_tier(value: str) -> Tier:
    try:
        return Tier(value)
    except ValueError:
        raise UnknownTierError(f"Queue {value!r} not found") from None


@dataclass
class TierPolicy:
    """Per-tier worker pool size and retry behaviour."""

    concurrency: int
    max_attempts: int
    backoff_base: float  # seconds
    backoff_cap: float  # seconds

    def backoff_delay(self, attempts_made: int) -> float:
        """Delay before the next try: base · 2^(attempts_made − 1), capped."""
        return min(self.backoff_base * 2 ** (attempts_made - 1), self.backoff_cap)


DEFAULT_TIER_POLICIES = {
    Tier.IMMEDIATE: TierPolicy(concurrency=10, max_attempts=3, backoff_base=2.0, backoff_cap=30.0),
    Tier.BULK: TierPolicy(concurrency=5, max_attempts=2, backoff_base=5.0, backoff_cap=60.0),
    Tier.SCHEDULED: TierPolicy(concurrency=3, max_attempts=3, backoff_base=2.0, backoff_cap=30.0),
}


def new_job_id(tier: Tier) -> str:
    return f"{tier.value}_{uuid.uuid4().hex}"


@dataclass
class Job:
    id: str
    tier: Tier
    payload: dict
    created_at: float
    priority: int = 0
    attempts_made: int = 0
    max_attempts: int = 3
    status: JobStatus = JobStatus.WAITING
    scheduled_at: Optional[float] = None
    run_at: Optional[float] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    progress: int = 0
    result: Any = None
    error: Optional[str] = None
    seq: int = field(default=0, compare=False)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        data = dict(data)
        data["tier"] = Tier(data["tier"])
        data["status"] = JobStatus(data["status"])
        return cls(**data)


@dataclass
class JobHandle:
    """What enqueue operations hand back to the caller."""

    job_id: str
    tier: Tier
    status: JobStatus
    scheduled_at: Optional[float] = None
    total_notifications: Optional[int] = None

    def to_dict(self) -> dict:
        data = {"job_id": self.job_id, "queue": self.tier.value, "status": self.status.value}
        if self.scheduled_at is not None:
            data["scheduled_at"] = self.scheduled_at
        if self.total_notifications is not None:
            data["total_notifications"] = self.total_notifications
        return data
