"""
Tenant Queues — one durable work queue per organization.

Queue Topology (per tenant, name = "<prefix>-<tenant_id>"):
  <name>:wait        — jobs ready to run, FIFO
  <name>:active      — jobs reserved by a worker
  <name>:delayed     — retries waiting out their backoff (sorted by ready time)
  <name>:completed   — finished jobs, trimmed by age and count
  <name>:failed      — jobs that exhausted their attempts, trimmed by age and count
  <name>:paused      — flag; a paused queue hands out no jobs

Job identity:
  job_id = "action-<scheduled_action_id>". Adding a job whose id is already
  waiting, delayed or active is a no-op, so a retried enqueue can never
  produce two jobs for the same action. A job id whose previous run is
  completed or failed may be added again (the action was reclaimed).

Message Schema:
  {
      "job_id":               "action-<id>",
      "name":                 "process-outreach-action",
      "scheduled_action_id":  payload — the only business data a job carries,
      "tenant_id":            owning organization,
      "attempt":              attempts already made,
      "max_attempts":         ceiling before the job lands in failed,
      "state":                waiting | active | delayed | completed | failed,
      "created_at":           ISO timestamp,
      "processed_on":         epoch seconds of the last reservation,
      "finished_on":          epoch seconds of completion/failure,
      "failed_reason":        last error message,
  }

Backends:
  RedisTenantQueue     — Redis lists/sorted sets/hashes (production)
  InMemoryTenantQueue  — asyncio primitives over an InMemoryQueueStore (dev/tests)
"""
from __future__ import annotations

import asyncio
import json
import time
import structlog
from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Optional

from config.settings import QueueConfig
from models.schemas import QueueMetrics

logger = structlog.get_logger()

JOB_NAME = "process-outreach-action"


class QueueError(Exception):
    """Raised on misuse of a queue handle (e.g. after close())."""
    pass


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

class JobState:
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"

    LIVE = frozenset({WAITING, ACTIVE, DELAYED})


def job_id_for(scheduled_action_id: str) -> str:
    return f"action-{scheduled_action_id}"


@dataclass
class QueueJob:
    """A unit of work on a tenant queue."""
    scheduled_action_id: str
    tenant_id: str = ""
    name: str = JOB_NAME
    attempt: int = 0
    max_attempts: int = 3
    state: str = JobState.WAITING
    created_at: str = ""
    processed_on: float = 0.0
    finished_on: float = 0.0
    failed_reason: str = ""
    return_value: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = job_id_for(self.scheduled_action_id)
        if not self.created_at:
            self.created_at = datetime.now(timezone.utc).isoformat()

    @property
    def data(self) -> dict[str, Any]:
        return {"scheduled_action_id": self.scheduled_action_id}

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempt, 0)

    def to_dict(self) -> dict[str, str]:
        d = asdict(self)
        d["return_value"] = json.dumps(d["return_value"])
        return {k: str(v) for k, v in d.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)  # copy
        if isinstance(data.get("return_value"), str):
            data["return_value"] = json.loads(data["return_value"] or "{}")
        data["attempt"] = int(data.get("attempt", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        data["processed_on"] = float(data.get("processed_on", 0) or 0)
        data["finished_on"] = float(data.get("finished_on", 0) or 0)
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class JobOptions:
    """Default job options applied to every job on a tenant queue."""
    attempts: int = 3
    backoff_delay_ms: int = 2000
    remove_on_complete_age_s: int = 3600
    remove_on_complete_count: int = 100
    remove_on_fail_age_s: int = 24 * 3600
    remove_on_fail_count: int = 500

    @classmethod
    def from_config(cls, config: QueueConfig) -> JobOptions:
        return cls(
            attempts=config.attempts,
            backoff_delay_ms=config.backoff_delay_ms,
            remove_on_complete_age_s=config.remove_on_complete_age_s,
            remove_on_complete_count=config.remove_on_complete_count,
            remove_on_fail_age_s=config.remove_on_fail_age_s,
            remove_on_fail_count=config.remove_on_fail_count,
        )

    def backoff_seconds(self, attempts_made: int) -> float:
        """Exponential backoff: delay * 2^(attempts_made - 1)."""
        return self.backoff_delay_ms * (2 ** max(attempts_made - 1, 0)) / 1000.0


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class TenantQueue(ABC):
    """Abstract per-tenant queue interface."""

    def __init__(self, name: str, tenant_id: str, options: JobOptions):
        self.name = name
        self.tenant_id = tenant_id
        self.options = options
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self):
        if self._closed:
            raise QueueError(f"Queue {self.name} is closed")

    def new_job(self, scheduled_action_id: str) -> QueueJob:
        return QueueJob(
            scheduled_action_id=scheduled_action_id,
            tenant_id=self.tenant_id,
            max_attempts=self.options.attempts,
        )

    async def add(self, scheduled_action_id: str) -> QueueJob:
        jobs = await self.add_bulk([scheduled_action_id])
        return jobs[0]

    @abstractmethod
    async def add_bulk(self, scheduled_action_ids: list[str]) -> list[QueueJob]:
        """Enqueue one job per action id; existing live jobs are returned unchanged."""
        ...

    @abstractmethod
    async def reserve(self, timeout: float = 2.0) -> Optional[QueueJob]:
        """Move the next ready job to active and return it, or None on timeout."""
        ...

    @abstractmethod
    async def complete(self, job: QueueJob, result: dict[str, Any] = None) -> None:
        ...

    @abstractmethod
    async def fail(self, job: QueueJob, error: str) -> bool:
        """Record a failed attempt. Returns True if the job will be retried."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        ...

    @abstractmethod
    async def get_metrics(self) -> QueueMetrics:
        ...

    @abstractmethod
    async def pause(self) -> None:
        ...

    @abstractmethod
    async def resume(self) -> None:
        ...

    @abstractmethod
    async def requeue_stalled(self, stalled_after_s: float) -> int:
        """Return active jobs reserved longer than `stalled_after_s` ago to wait."""
        ...

    async def close(self) -> None:
        """Release this handle. Jobs stay in the backend."""
        self._closed = True


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

_ADD_JOB_LUA = """
local state = redis.call('HGET', KEYS[1], 'state')
if state == 'waiting' or state == 'active' or state == 'delayed' then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('HSET', KEYS[1], unpack(ARGV, 2))
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('ZREM', KEYS[4], ARGV[1])
redis.call('RPUSH', KEYS[2], ARGV[1])
return 1
"""


class RedisTenantQueue(TenantQueue):
    """
    Production queue backed by Redis.

    - wait/active are lists; BLMOVE hands each job to exactly one worker
    - delayed/completed/failed are sorted sets scored by epoch seconds
    - job fields live in one hash per job
    - add is a Lua script so the "already live?" check and the push are atomic
    """

    def __init__(self, name: str, tenant_id: str, options: JobOptions,
                 redis_url: str = "redis://localhost:6379", client=None):
        super().__init__(name, tenant_id, options)
        if client is None:
            import redis.asyncio as aioredis
            client = aioredis.from_url(redis_url, decode_responses=True, max_connections=20)
        # client must decode responses to str
        self._redis = client
        self._add_script = self._redis.register_script(_ADD_JOB_LUA)

    def _key(self, suffix: str) -> str:
        return f"{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    async def add_bulk(self, scheduled_action_ids: list[str]) -> list[QueueJob]:
        self._ensure_open()
        jobs = []
        for action_id in scheduled_action_ids:
            job = self.new_job(action_id)
            args = [job.job_id]
            for k, v in job.to_dict().items():
                args.extend([k, v])
            added = await self._add_script(
                keys=[self._job_key(job.job_id), self._key("wait"),
                      self._key("completed"), self._key("failed")],
                args=args,
            )
            if not added:
                existing = await self.get_job(job.job_id)
                logger.info("job_already_queued", queue=self.name, job_id=job.job_id)
                jobs.append(existing or job)
                continue
            jobs.append(job)
        logger.info("jobs_published", queue=self.name, count=len(jobs))
        return jobs

    async def _promote_delayed(self) -> None:
        now = time.time()
        ready = await self._redis.zrangebyscore(self._key("delayed"), "-inf", now)
        for job_id in ready:
            # zrem is the claim: only one promoter moves a given job
            if await self._redis.zrem(self._key("delayed"), job_id):
                pipe = self._redis.pipeline()
                pipe.hset(self._job_key(job_id), "state", JobState.WAITING)
                pipe.rpush(self._key("wait"), job_id)
                await pipe.execute()
        if ready:
            logger.debug("delayed_jobs_promoted", queue=self.name, count=len(ready))

    async def reserve(self, timeout: float = 2.0) -> Optional[QueueJob]:
        self._ensure_open()
        if await self._redis.exists(self._key("paused")):
            await asyncio.sleep(timeout)
            return None

        await self._promote_delayed()
        job_id = await self._redis.blmove(
            self._key("wait"), self._key("active"), timeout, "LEFT", "RIGHT",
        )
        if not job_id:
            return None

        await self._redis.hset(self._job_key(job_id), mapping={
            "state": JobState.ACTIVE,
            "processed_on": str(time.time()),
        })
        return await self.get_job(job_id)

    async def _trim(self, set_name: str, age_s: int, keep: int) -> None:
        key = self._key(set_name)
        cutoff = time.time() - age_s
        expired = await self._redis.zrangebyscore(key, "-inf", cutoff)
        overflow = await self._redis.zrange(key, 0, -(keep + 1)) if keep >= 0 else []
        doomed = set(expired) | set(overflow)
        if not doomed:
            return
        pipe = self._redis.pipeline()
        pipe.zrem(key, *doomed)
        pipe.delete(*[self._job_key(j) for j in doomed])
        await pipe.execute()

    async def complete(self, job: QueueJob, result: dict[str, Any] = None) -> None:
        self._ensure_open()
        now = time.time()
        pipe = self._redis.pipeline()
        pipe.lrem(self._key("active"), 0, job.job_id)
        pipe.hset(self._job_key(job.job_id), mapping={
            "state": JobState.COMPLETED,
            "finished_on": str(now),
            "attempt": str(job.attempt + 1),
            "return_value": json.dumps(result or {}),
        })
        pipe.zadd(self._key("completed"), {job.job_id: now})
        await pipe.execute()
        await self._trim("completed", self.options.remove_on_complete_age_s,
                         self.options.remove_on_complete_count)

    async def fail(self, job: QueueJob, error: str) -> bool:
        self._ensure_open()
        now = time.time()
        attempts_made = job.attempt + 1
        pipe = self._redis.pipeline()
        pipe.lrem(self._key("active"), 0, job.job_id)

        if attempts_made < job.max_attempts:
            ready_at = now + self.options.backoff_seconds(attempts_made)
            pipe.hset(self._job_key(job.job_id), mapping={
                "state": JobState.DELAYED,
                "attempt": str(attempts_made),
                "failed_reason": error,
            })
            pipe.zadd(self._key("delayed"), {job.job_id: ready_at})
            await pipe.execute()
            logger.info("job_scheduled_for_retry",
                        queue=self.name, job_id=job.job_id,
                        attempt=attempts_made, retry_in_s=ready_at - now)
            return True

        pipe.hset(self._job_key(job.job_id), mapping={
            "state": JobState.FAILED,
            "attempt": str(attempts_made),
            "failed_reason": error,
            "finished_on": str(now),
        })
        pipe.zadd(self._key("failed"), {job.job_id: now})
        await pipe.execute()
        await self._trim("failed", self.options.remove_on_fail_age_s,
                         self.options.remove_on_fail_count)
        logger.warning("job_attempts_exhausted",
                       queue=self.name, job_id=job.job_id, attempts=attempts_made)
        return False

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        fields = await self._redis.hgetall(self._job_key(job_id))
        return QueueJob.from_dict(fields) if fields else None

    async def get_metrics(self) -> QueueMetrics:
        self._ensure_open()
        pipe = self._redis.pipeline()
        pipe.llen(self._key("wait"))
        pipe.llen(self._key("active"))
        pipe.zcard(self._key("completed"))
        pipe.zcard(self._key("failed"))
        pipe.zcard(self._key("delayed"))
        pipe.exists(self._key("paused"))
        waiting, active, completed, failed, delayed, paused = await pipe.execute()
        return QueueMetrics(
            waiting=waiting, active=active, completed=completed,
            failed=failed, delayed=delayed, paused=bool(paused),
        )

    async def pause(self) -> None:
        self._ensure_open()
        await self._redis.set(self._key("paused"), "1")

    async def resume(self) -> None:
        self._ensure_open()
        await self._redis.delete(self._key("paused"))

    async def requeue_stalled(self, stalled_after_s: float) -> int:
        self._ensure_open()
        cutoff = time.time() - stalled_after_s
        moved = 0
        for job_id in await self._redis.lrange(self._key("active"), 0, -1):
            processed_on = await self._redis.hget(self._job_key(job_id), "processed_on")
            if processed_on and float(processed_on) > cutoff:
                continue
            if await self._redis.lrem(self._key("active"), 0, job_id):
                pipe = self._redis.pipeline()
                pipe.hset(self._job_key(job_id), "state", JobState.WAITING)
                pipe.rpush(self._key("wait"), job_id)
                await pipe.execute()
                moved += 1
        if moved:
            logger.warning("stalled_jobs_requeued", queue=self.name, count=moved)
        return moved

    async def close(self) -> None:
        if self._closed:
            return
        await super().close()
        await self._redis.aclose()


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

@dataclass
class _MemoryQueueState:
    jobs: dict[str, QueueJob] = field(default_factory=dict)
    wait: deque = field(default_factory=deque)
    active: set = field(default_factory=set)
    delayed: dict[str, float] = field(default_factory=dict)        # job_id → ready epoch
    completed: OrderedDict = field(default_factory=OrderedDict)    # job_id → finished epoch
    failed: OrderedDict = field(default_factory=OrderedDict)
    paused: bool = False
    signal: asyncio.Event = field(default_factory=asyncio.Event)


class InMemoryQueueStore:
    """
    Process-local stand-in for the Redis server: queue state outlives the
    handles that read it, so closing an idle queue handle loses nothing.
    """

    def __init__(self):
        self._queues: dict[str, _MemoryQueueState] = {}

    def state(self, name: str) -> _MemoryQueueState:
        if name not in self._queues:
            self._queues[name] = _MemoryQueueState()
        return self._queues[name]


class InMemoryTenantQueue(TenantQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no persistence across restarts.
    """

    def __init__(self, name: str, tenant_id: str, options: JobOptions,
                 store: InMemoryQueueStore = None):
        super().__init__(name, tenant_id, options)
        self._state = (store or InMemoryQueueStore()).state(name)

    async def add_bulk(self, scheduled_action_ids: list[str]) -> list[QueueJob]:
        self._ensure_open()
        st = self._state
        jobs = []
        for action_id in scheduled_action_ids:
            job = self.new_job(action_id)
            existing = st.jobs.get(job.job_id)
            if existing and existing.state in JobState.LIVE:
                logger.info("job_already_queued", queue=self.name, job_id=job.job_id)
                jobs.append(existing)
                continue
            st.completed.pop(job.job_id, None)
            st.failed.pop(job.job_id, None)
            st.jobs[job.job_id] = job
            st.wait.append(job.job_id)
            jobs.append(job)
        st.signal.set()
        logger.info("jobs_published", queue=self.name, count=len(jobs))
        return jobs

    def _promote_delayed(self) -> Optional[float]:
        """Move ready delayed jobs to wait; return seconds until the next one."""
        st = self._state
        now = time.time()
        next_ready = None
        for job_id, ready_at in list(st.delayed.items()):
            if ready_at <= now:
                del st.delayed[job_id]
                st.jobs[job_id].state = JobState.WAITING
                st.wait.append(job_id)
            else:
                wait_s = ready_at - now
                next_ready = wait_s if next_ready is None else min(next_ready, wait_s)
        return next_ready

    async def reserve(self, timeout: float = 2.0) -> Optional[QueueJob]:
        self._ensure_open()
        st = self._state
        deadline = time.monotonic() + timeout
        while True:
            self._ensure_open()
            next_ready = self._promote_delayed()
            if not st.paused and st.wait:
                job_id = st.wait.popleft()
                job = st.jobs[job_id]
                job.state = JobState.ACTIVE
                job.processed_on = time.time()
                st.active.add(job_id)
                return job

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            sleep_for = remaining if next_ready is None else min(remaining, next_ready)
            st.signal.clear()
            try:
                await asyncio.wait_for(st.signal.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass

    @staticmethod
    def _trim(history: OrderedDict, jobs: dict, age_s: int, keep: int) -> None:
        cutoff = time.time() - age_s
        for job_id, finished in list(history.items()):
            if finished < cutoff:
                del history[job_id]
                jobs.pop(job_id, None)
        while len(history) > keep:
            job_id, _ = history.popitem(last=False)
            jobs.pop(job_id, None)

    async def complete(self, job: QueueJob, result: dict[str, Any] = None) -> None:
        self._ensure_open()
        st = self._state
        st.active.discard(job.job_id)
        job.state = JobState.COMPLETED
        job.attempt += 1
        job.finished_on = time.time()
        job.return_value = result or {}
        st.completed[job.job_id] = job.finished_on
        self._trim(st.completed, st.jobs,
                   self.options.remove_on_complete_age_s,
                   self.options.remove_on_complete_count)

    async def fail(self, job: QueueJob, error: str) -> bool:
        self._ensure_open()
        st = self._state
        st.active.discard(job.job_id)
        job.attempt += 1
        job.failed_reason = error

        if job.attempt < job.max_attempts:
            job.state = JobState.DELAYED
            st.delayed[job.job_id] = time.time() + self.options.backoff_seconds(job.attempt)
            st.signal.set()
            logger.info("job_scheduled_for_retry",
                        queue=self.name, job_id=job.job_id, attempt=job.attempt)
            return True

        job.state = JobState.FAILED
        job.finished_on = time.time()
        st.failed[job.job_id] = job.finished_on
        self._trim(st.failed, st.jobs,
                   self.options.remove_on_fail_age_s,
                   self.options.remove_on_fail_count)
        logger.warning("job_attempts_exhausted",
                       queue=self.name, job_id=job.job_id, attempts=job.attempt)
        return False

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        return self._state.jobs.get(job_id)

    async def get_metrics(self) -> QueueMetrics:
        self._ensure_open()
        st = self._state
        return QueueMetrics(
            waiting=len(st.wait), active=len(st.active),
            completed=len(st.completed), failed=len(st.failed),
            delayed=len(st.delayed), paused=st.paused,
        )

    async def pause(self) -> None:
        self._ensure_open()
        self._state.paused = True

    async def resume(self) -> None:
        self._ensure_open()
        self._state.paused = False
        self._state.signal.set()

    async def requeue_stalled(self, stalled_after_s: float) -> int:
        self._ensure_open()
        st = self._state
        cutoff = time.time() - stalled_after_s
        moved = 0
        for job_id in list(st.active):
            job = st.jobs[job_id]
            if job.processed_on > cutoff:
                continue
            st.active.discard(job_id)
            job.state = JobState.WAITING
            st.wait.append(job_id)
            moved += 1
        if moved:
            st.signal.set()
            logger.warning("stalled_jobs_requeued", queue=self.name, count=moved)
        return moved

    async def close(self) -> None:
        await super().close()
        # Wake any reserve() blocked on this handle so it sees the close
        self._state.signal.set()


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_tenant_queue(
    tenant_id: str,
    config: QueueConfig,
    memory_store: InMemoryQueueStore = None,
) -> TenantQueue:
    """Factory: create the configured queue backend for one tenant."""
    name = f"{config.prefix}-{tenant_id}"
    options = JobOptions.from_config(config)

    if config.backend == "redis":
        return RedisTenantQueue(name, tenant_id, options, redis_url=config.redis_url)
    return InMemoryTenantQueue(name, tenant_id, options, store=memory_store)
