"""
Queue Manager — owns one lazily-created queue per organization.

Queues are created on first use (when the scheduler has due work for a
tenant) and evicted again by cleanup_idle_queues(). The connection settings
are injected once through QueueConfig; every tenant queue is built from them.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Iterable, Optional

from config.settings import QueueConfig
from job_queue.message_queue import (
    InMemoryQueueStore, TenantQueue, create_tenant_queue,
)
from models.schemas import QueueMetrics

logger = structlog.get_logger()


class QueueManager:
    """
    Tenant-scoped queue registry.

    Usage:
        manager = QueueManager(settings.queue)
        queue = await manager.get_or_create_queue(org_id)
        await queue.add_bulk([...])
        await manager.close()
    """

    def __init__(self, config: QueueConfig, memory_store: InMemoryQueueStore = None):
        self.config = config
        self._memory_store = memory_store or InMemoryQueueStore()
        self._queues: dict[str, TenantQueue] = {}
        self._lock = asyncio.Lock()

    def queue_name(self, tenant_id: str) -> str:
        return f"{self.config.prefix}-{tenant_id}"

    async def get_or_create_queue(self, tenant_id: str) -> TenantQueue:
        """Return the tenant's queue, creating it on first use."""
        queue = self._queues.get(tenant_id)
        if queue is not None and not queue.closed:
            return queue

        async with self._lock:
            queue = self._queues.get(tenant_id)
            if queue is None or queue.closed:
                logger.info("tenant_queue_created",
                            tenant_id=tenant_id,
                            queue=self.queue_name(tenant_id),
                            backend=self.config.backend)
                queue = create_tenant_queue(tenant_id, self.config, self._memory_store)
                self._queues[tenant_id] = queue
            return queue

    async def get_queue_metrics(self, tenant_id: str) -> Optional[QueueMetrics]:
        """Job counts for the tenant's queue, or None if it has no open queue."""
        queue = self._queues.get(tenant_id)
        if queue is None:
            return None
        return await queue.get_metrics()

    async def pause_queue(self, tenant_id: str) -> bool:
        queue = self._queues.get(tenant_id)
        if queue is None:
            return False
        await queue.pause()
        logger.info("tenant_queue_paused", tenant_id=tenant_id)
        return True

    async def resume_queue(self, tenant_id: str) -> bool:
        queue = self._queues.get(tenant_id)
        if queue is None:
            return False
        await queue.resume()
        logger.info("tenant_queue_resumed", tenant_id=tenant_id)
        return True

    def active_tenants(self) -> list[str]:
        """Tenants that currently have an open queue."""
        return list(self._queues.keys())

    async def cleanup_idle_queues(self, keep: Iterable[str] = ()) -> list[str]:
        """
        Close and evict every queue with no waiting and no active jobs.
        Tenants in `keep` (those with a live worker) are left open.
        """
        keep = set(keep)
        removed = []
        for tenant_id, queue in list(self._queues.items()):
            if tenant_id in keep:
                continue
            metrics = await queue.get_metrics()
            if metrics.waiting == 0 and metrics.active == 0:
                await queue.close()
                self._queues.pop(tenant_id, None)
                removed.append(tenant_id)
                logger.info("idle_queue_removed", tenant_id=tenant_id)
        return removed

    async def close(self) -> None:
        """Close all queues; one failing close does not stop the others."""
        logger.info("closing_all_queues", count=len(self._queues))

        async def _close(tenant_id: str, queue: TenantQueue):
            try:
                await queue.close()
            except Exception as e:
                logger.error("queue_close_error", tenant_id=tenant_id, error=str(e))

        await asyncio.gather(*(_close(t, q) for t, q in self._queues.items()))
        self._queues.clear()
