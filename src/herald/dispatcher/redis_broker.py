"""Redis job broker — shared, durable queue store.

Learn: layout per tier (prefix "herald"):

  herald:job:{id}                   hash  — all job fields
  herald:q:{tier}:waiting           zset  — score = −priority·1e12 + seq
  herald:q:{tier}:delayed           zset  — score = run_at
  herald:q:{tier}:active            zset  — score = visibility deadline
  herald:q:{tier}:completed|failed  zset  — score = finished_at
  herald:seq                        counter for FIFO order among equal priorities

Every conditional transition (claim, promote, finish, cancel, requeue,
prune) is a Lua script so it runs atomically inside Redis even with many
worker processes. Finishing (complete/retry/fail) only applies while the
job is still active or waiting: a job whose claim expired and was
requeued can still be finished by its slow worker, and must leave the
waiting set when it is. No in-process locking is assumed anywhere.
"""

import json
from typing import Any, Optional

import redis.asyncio as aioredis

from herald.dispatcher.broker import JobBroker
from herald.dispatcher.jobs import Job, JobStatus, Tier

PRIORITY_WEIGHT = 1_000_000_000_000

_PROMOTE_DUE = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[3]))
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  local jk = ARGV[2] .. id
  local priority = tonumber(redis.call('HGET', jk, 'priority') or '0')
  local seq = redis.call('INCR', KEYS[3])
  redis.call('HSET', jk, 'status', 'waiting', 'run_at', '', 'seq', seq)
  redis.call('ZADD', KEYS[2], string.format('%.17g', -priority * tonumber(ARGV[4]) + seq), id)
end
return #ids
"""

_CLAIM = """
local ids = redis.call('ZRANGE', KEYS[1], 0, 0)
if #ids == 0 then return false end
local id = ids[1]
redis.call('ZREM', KEYS[1], id)
redis.call('ZADD', KEYS[2], ARGV[2], id)
redis.call('HSET', ARGV[3] .. id, 'status', 'active', 'started_at', ARGV[1])
return id
"""

_FINISH = """
local removed = redis.call('ZREM', KEYS[1], ARGV[1]) + redis.call('ZREM', KEYS[2], ARGV[1])
if removed == 0 or redis.call('EXISTS', KEYS[4]) == 0 then return 0 end
redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
redis.call('HSET', KEYS[4], unpack(ARGV, 3))
return 1
"""

_REMOVE_IF_PENDING = """
if redis.call('HGET', KEYS[1], 'tier') ~= ARGV[2] then return 0 end
local status = redis.call('HGET', KEYS[1], 'status')
if status == 'waiting' then
  redis.call('ZREM', KEYS[2], ARGV[1])
elseif status == 'delayed' then
  redis.call('ZREM', KEYS[3], ARGV[1])
else
  return 0
end
redis.call('DEL', KEYS[1])
return 1
"""

_REQUEUE_EXPIRED = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', '(' .. ARGV[1])
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  local jk = ARGV[2] .. id
  local priority = tonumber(redis.call('HGET', jk, 'priority') or '0')
  local seq = redis.call('INCR', KEYS[3])
  redis.call('HSET', jk, 'status', 'waiting', 'seq', seq)
  redis.call('ZADD', KEYS[2], string.format('%.17g', -priority * tonumber(ARGV[3]) + seq), id)
end
return #ids
"""

_PRUNE = """
local removed = 0
for i, key in ipairs(KEYS) do
  local bound = '(' .. ARGV[i]
  local ids = redis.call('ZRANGEBYSCORE', key, '-inf', bound)
  for _, id in ipairs(ids) do
    redis.call('DEL', ARGV[3] .. id)
  end
  if #ids > 0 then
    redis.call('ZREMRANGEBYSCORE', key, '-inf', bound)
  end
  removed = removed + #ids
end
return removed
"""

_FLOAT_FIELDS = ("created_at", "scheduled_at", "run_at", "started_at", "finished_at")
_INT_FIELDS = ("priority", "attempts_made", "max_attempts", "progress", "seq")


def _encode(job: Job) -> dict[str, str]:
    data = job.to_dict()
    encoded = {}
    for name, value in data.items():
        if name in ("payload", "result"):
            encoded[name] = json.dumps(value)
        elif value is None:
            encoded[name] = ""
        else:
            encoded[name] = str(value)
    return encoded


def _decode(raw: dict[str, str]) -> Job:
    data: dict[str, Any] = {}
    for name, value in raw.items():
        if name in ("payload", "result"):
            data[name] = json.loads(value) if value else None
        elif name in _FLOAT_FIELDS:
            data[name] = float(value) if value else None
        elif name in _INT_FIELDS:
            data[name] = int(value) if value else 0
        elif name == "error":
            data[name] = value or None
        else:
            data[name] = value
    data.setdefault("payload", {})
    return Job.from_dict(data)


class RedisJobBroker(JobBroker):
    def __init__(self, redis: aioredis.Redis, prefix: str = "herald", promote_batch: int = 100):
        self.redis = redis
        self.prefix = prefix
        self.promote_batch = promote_batch
        self._promote = redis.register_script(_PROMOTE_DUE)
        self._claim = redis.register_script(_CLAIM)
        self._finish_script = redis.register_script(_FINISH)
        self._remove = redis.register_script(_REMOVE_IF_PENDING)
        self._requeue = redis.register_script(_REQUEUE_EXPIRED)
        self._prune = redis.register_script(_PRUNE)

    # ─── Key helpers ──────────────────────────────────────

    @property
    def _job_prefix(self) -> str:
        return f"{self.prefix}:job:"

    def _job_key(self, job_id: str) -> str:
        return f"{self._job_prefix}{job_id}"

    def _queue_key(self, tier: Tier, state: str) -> str:
        return f"{self.prefix}:q:{tier.value}:{state}"

    @property
    def _seq_key(self) -> str:
        return f"{self.prefix}:seq"

    # ─── Transitions ──────────────────────────────────────

    async def enqueue(self, job: Job) -> None:
        job.seq = await self.redis.incr(self._seq_key)
        job.status = JobStatus.WAITING
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.id), mapping=_encode(job))
            pipe.zadd(
                self._queue_key(job.tier, "waiting"),
                {job.id: -job.priority * PRIORITY_WEIGHT + job.seq},
            )
            await pipe.execute()

    async def enqueue_delayed(self, job: Job, run_at: float) -> None:
        job.status = JobStatus.DELAYED
        job.run_at = run_at
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.id), mapping=_encode(job))
            pipe.zadd(self._queue_key(job.tier, "delayed"), {job.id: run_at})
            await pipe.execute()

    async def promote_due(self, tier: Tier, now: float) -> int:
        return await self._promote(
            keys=[
                self._queue_key(tier, "delayed"),
                self._queue_key(tier, "waiting"),
                self._seq_key,
            ],
            args=[now, self._job_prefix, self.promote_batch, PRIORITY_WEIGHT],
        )

    async def claim(self, tier: Tier, now: float, visibility_timeout: float) -> Optional[Job]:
        job_id = await self._claim(
            keys=[self._queue_key(tier, "waiting"), self._queue_key(tier, "active")],
            args=[now, now + visibility_timeout, self._job_prefix],
        )
        if not job_id:
            return None
        return await self.get(tier, job_id)

    async def _finish(
        self, job: Job, state: str, score: float, fields: dict[str, str]
    ) -> bool:
        args: list = [job.id, repr(float(score))]
        for name, value in fields.items():
            args.extend((name, value))
        finished = await self._finish_script(
            keys=[
                self._queue_key(job.tier, "active"),
                self._queue_key(job.tier, "waiting"),
                self._queue_key(job.tier, state),
                self._job_key(job.id),
            ],
            args=args,
        )
        return bool(finished)

    async def complete(self, job: Job, result: Any, now: float) -> bool:
        return await self._finish(job, "completed", now, {
            "status": JobStatus.COMPLETED.value,
            "attempts_made": str(job.attempts_made),
            "result": json.dumps(result),
            "error": "",
            "progress": "100",
            "finished_at": str(now),
        })

    async def retry(self, job: Job, error: str, run_at: float) -> bool:
        return await self._finish(job, "delayed", run_at, {
            "status": JobStatus.DELAYED.value,
            "attempts_made": str(job.attempts_made),
            "error": error,
            "run_at": str(run_at),
        })

    async def fail(self, job: Job, error: str, now: float) -> bool:
        return await self._finish(job, "failed", now, {
            "status": JobStatus.FAILED.value,
            "attempts_made": str(job.attempts_made),
            "error": error,
            "finished_at": str(now),
        })

    async def update_progress(self, tier: Tier, job_id: str, progress: int) -> None:
        key = self._job_key(job_id)
        if await self.redis.exists(key):
            await self.redis.hset(key, "progress", str(progress))

    async def get(self, tier: Tier, job_id: str) -> Optional[Job]:
        raw = await self.redis.hgetall(self._job_key(job_id))
        if not raw or raw.get("tier") != tier.value:
            return None
        return _decode(raw)

    async def remove_if_pending(self, tier: Tier, job_id: str) -> bool:
        removed = await self._remove(
            keys=[
                self._job_key(job_id),
                self._queue_key(tier, "waiting"),
                self._queue_key(tier, "delayed"),
            ],
            args=[job_id, tier.value],
        )
        return bool(removed)

    async def requeue_expired(self, tier: Tier, now: float) -> int:
        return await self._requeue(
            keys=[
                self._queue_key(tier, "active"),
                self._queue_key(tier, "waiting"),
                self._seq_key,
            ],
            args=[now, self._job_prefix, PRIORITY_WEIGHT],
        )

    async def prune(self, tier: Tier, completed_before: float, failed_before: float) -> int:
        return await self._prune(
            keys=[self._queue_key(tier, "completed"), self._queue_key(tier, "failed")],
            args=[completed_before, failed_before, self._job_prefix],
        )

    async def stats(self, tier: Tier) -> dict:
        async with self.redis.pipeline(transaction=False) as pipe:
            for status in JobStatus:
                pipe.zcard(self._queue_key(tier, status.value))
            counts = await pipe.execute()
        stats = {status.value: count for status, count in zip(JobStatus, counts)}
        stats["total"] = sum(counts)
        return stats
