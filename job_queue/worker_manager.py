"""
Worker Manager — one lazily-started worker per organization.

Each TenantWorker runs `concurrency` consumer slots against its tenant's
queue. A slot reserves a job, waits for a rate-limiter token, hands the job
to the action processor and then completes or fails it on the queue. Retry
and backoff belong to the queue; the worker only reports the outcome.

Wiring is two-phase: the WorkerManager is constructed first, and the action
processor is attached afterwards with attach_processor(), because the
processor itself is built from stores that the runtime creates alongside the
managers.

  ┌────────────┐  reserve   ┌──────────────┐  process(job)  ┌─────────────────┐
  │ tenant     │───────────▶│ TenantWorker │───────────────▶│ ActionProcessor │
  │ queue      │◀───────────│ (N slots)    │◀───────────────│                 │
  └────────────┘ complete / └──────────────┘  result / raise└─────────────────┘
                 fail
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from config.settings import WorkerConfig
from job_queue.message_queue import QueueError, QueueJob, TenantQueue
from job_queue.queue_manager import QueueManager
from job_queue.rate_limiter import TokenBucketRateLimiter

logger = structlog.get_logger()

JobHandler = Callable[[QueueJob], Awaitable[Any]]
QueueProvider = Callable[[], Awaitable[TenantQueue]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _result_payload(result: Any) -> dict[str, Any]:
    if result is None:
        return {}
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json")
    return dict(result)


class TenantWorker:
    """Bounded-concurrency, rate-limited consumer for one tenant's queue."""

    def __init__(
        self,
        tenant_id: str,
        queue_provider: QueueProvider,
        handler: JobHandler,
        concurrency: int = 2,
        limiter: TokenBucketRateLimiter = None,
        poll_timeout_s: float = 2.0,
        stalled_after_s: float = 900.0,
    ):
        self.tenant_id = tenant_id
        self._queue_provider = queue_provider
        self._handler = handler
        self.concurrency = concurrency
        self.limiter = limiter or TokenBucketRateLimiter.per_window(100, 60.0)
        self.poll_timeout_s = poll_timeout_s
        self.stalled_after_s = stalled_after_s

        self.jobs_processed = 0
        self.jobs_failed = 0
        self.last_active_at = _utcnow()

        self._queue: Optional[TenantQueue] = None
        self._tasks: list[asyncio.Task] = []
        self._busy: set[int] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def _get_queue(self) -> TenantQueue:
        if self._queue is None or self._queue.closed:
            self._queue = await self._queue_provider()
        return self._queue

    async def start(self) -> None:
        self._running = True
        queue = await self._get_queue()
        # Jobs left active by a crashed process go back to wait
        await queue.requeue_stalled(self.stalled_after_s)
        self._tasks = [
            asyncio.create_task(self._run_slot(i), name=f"worker-{self.tenant_id}-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("tenant_worker_started",
                    tenant_id=self.tenant_id,
                    concurrency=self.concurrency)

    async def _run_slot(self, slot: int) -> None:
        while self._running:
            try:
                queue = await self._get_queue()
                job = await queue.reserve(timeout=self.poll_timeout_s)
                if job is None:
                    continue

                # A slot cancelled while rate limited leaves its job active;
                # requeue_stalled() on the next start returns it to wait
                while not await self.limiter.acquire(timeout=self.poll_timeout_s):
                    logger.debug("tenant_rate_limited", tenant_id=self.tenant_id)

                self._busy.add(slot)
                try:
                    await self._process(queue, job)
                finally:
                    self._busy.discard(slot)

            except QueueError:
                # Handle closed by idle cleanup; fetch a fresh one next loop
                self._queue = None
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("worker_loop_error",
                             tenant_id=self.tenant_id, slot=slot, error=str(e))
                await asyncio.sleep(1)

    async def _process(self, queue: TenantQueue, job: QueueJob) -> None:
        self.last_active_at = _utcnow()
        self.jobs_processed += 1
        log = logger.bind(tenant_id=self.tenant_id, job_id=job.job_id,
                          scheduled_action_id=job.scheduled_action_id,
                          attempt=job.attempt + 1)
        try:
            result = await self._handler(job)
        except Exception as e:
            self.jobs_failed += 1
            log.error("job_failed", error=str(e), exc_info=True)
            await queue.fail(job, str(e))
            return

        await queue.complete(job, _result_payload(result))
        log.debug("job_completed")

    async def close(self) -> None:
        """Stop taking jobs; in-flight jobs run to completion."""
        self._running = False
        for slot, task in enumerate(self._tasks):
            if slot not in self._busy:
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("tenant_worker_closed",
                    tenant_id=self.tenant_id,
                    jobs_processed=self.jobs_processed)

    def metrics(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "jobs_processed": self.jobs_processed,
            "jobs_failed": self.jobs_failed,
            "last_active_at": self.last_active_at.isoformat(),
            "running": self._running,
        }


class WorkerManager:
    """
    Tenant-scoped worker registry.

    Usage:
        workers = WorkerManager(settings.worker, queue_manager)
        workers.attach_processor(processor)      # second phase of wiring
        await workers.get_or_create_worker(org_id)
        await workers.close()
    """

    def __init__(self, config: WorkerConfig, queue_manager: QueueManager):
        self.config = config
        self.queue_manager = queue_manager
        self._processor = None
        self._workers: dict[str, TenantWorker] = {}
        self._lock = asyncio.Lock()

    def attach_processor(self, processor) -> None:
        """Wire the job handler. Must happen before any worker is created."""
        self._processor = processor

    async def get_or_create_worker(self, tenant_id: str) -> TenantWorker:
        existing = self._workers.get(tenant_id)
        if existing is not None:
            existing.last_active_at = _utcnow()
            return existing

        if self._processor is None:
            raise RuntimeError("WorkerManager has no processor attached")

        async with self._lock:
            existing = self._workers.get(tenant_id)
            if existing is not None:
                return existing

            logger.info("tenant_worker_creating", tenant_id=tenant_id)
            worker = TenantWorker(
                tenant_id=tenant_id,
                queue_provider=lambda: self.queue_manager.get_or_create_queue(tenant_id),
                handler=self._processor.process,
                concurrency=self.config.concurrency,
                limiter=TokenBucketRateLimiter.per_window(
                    self.config.limiter_max, self.config.limiter_duration_s,
                ),
                poll_timeout_s=self.config.poll_timeout_s,
                stalled_after_s=self.config.stalled_after_s,
            )
            await worker.start()
            self._workers[tenant_id] = worker
            return worker

    async def remove_idle_workers(self, idle_minutes: float = None) -> list[str]:
        """Close workers that have not processed anything within the threshold."""
        idle_minutes = self.config.idle_minutes if idle_minutes is None else idle_minutes
        cutoff = _utcnow() - timedelta(minutes=idle_minutes)
        removed = []
        for tenant_id, worker in list(self._workers.items()):
            if worker.last_active_at < cutoff:
                await worker.close()
                self._workers.pop(tenant_id, None)
                removed.append(tenant_id)
                logger.info("idle_worker_removed", tenant_id=tenant_id)
        return removed

    def get_worker_metrics(self) -> dict[str, dict[str, Any]]:
        return {tenant_id: w.metrics() for tenant_id, w in self._workers.items()}

    def active_tenants(self) -> list[str]:
        return list(self._workers.keys())

    async def close(self) -> None:
        logger.info("closing_all_workers", count=len(self._workers))

        async def _close(tenant_id: str, worker: TenantWorker):
            try:
                await worker.close()
            except Exception as e:
                logger.error("worker_close_error", tenant_id=tenant_id, error=str(e))

        await asyncio.gather(*(_close(t, w) for t, w in self._workers.items()))
        self._workers.clear()
