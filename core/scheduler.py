"""
SchedulingService — discovers due actions and fans them out per tenant.

Two entry points, each driven by its own PeriodicTicker:

  enqueue_due_actions()    every minute
      find_due → partition by organization → per partition:
      claim (PENDING → PROCESSING) + enqueue + store job ids in one
      transaction. A failing partition is reverted to PENDING and retried on
      the next cycle; the other partitions are unaffected.

  cleanup_stuck_actions()  every ten minutes
      PROCESSING rows untouched for `stale_after_minutes` go back to PENDING
      so the next poll can claim them again.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from config.settings import SchedulerConfig
from database.action_store import ActionStore
from database.models import ScheduledActionRow
from job_queue.queue_manager import QueueManager
from job_queue.worker_manager import WorkerManager

logger = structlog.get_logger()


def _tenant_of(action: ScheduledActionRow) -> Optional[str]:
    conversation = action.conversation
    if conversation is None or conversation.person is None:
        return None
    return conversation.person.organization_id


class SchedulingService:

    def __init__(
        self,
        actions: ActionStore,
        queue_manager: QueueManager,
        worker_manager: WorkerManager,
        config: SchedulerConfig = None,
    ):
        self.actions = actions
        self.queue_manager = queue_manager
        self.worker_manager = worker_manager
        self.config = config or SchedulerConfig()

    async def enqueue_due_actions(self, now: datetime = None) -> dict[str, int]:
        """
        One poll cycle.

        Returns counts: {"due": N, "enqueued": N, "skipped": N, "reverted": N, "tenants": N}
        """
        now = now or datetime.now(timezone.utc)
        stats = {"due": 0, "enqueued": 0, "skipped": 0, "reverted": 0, "tenants": 0}

        due = await self.actions.find_due(now)
        stats["due"] = len(due)
        if not due:
            return stats

        partitions: dict[str, list[str]] = {}
        for action in due:
            tenant_id = _tenant_of(action)
            if not tenant_id:
                logger.warning("due_action_without_tenant",
                               action_id=action.id,
                               conversation_id=action.conversation_id)
                stats["skipped"] += 1
                continue
            partitions.setdefault(tenant_id, []).append(action.id)

        for tenant_id, action_ids in partitions.items():
            stats["tenants"] += 1
            try:
                claimed = await self._dispatch_partition(tenant_id, action_ids)
                stats["enqueued"] += len(claimed)
                stats["skipped"] += len(action_ids) - len(claimed)
            except Exception as e:
                logger.error("tenant_enqueue_failed",
                             tenant_id=tenant_id,
                             count=len(action_ids),
                             error=str(e))
                stats["reverted"] += await self._revert_partition(tenant_id, action_ids)

        logger.info("due_actions_dispatched", **stats)
        return stats

    async def _dispatch_partition(self, tenant_id: str, action_ids: list[str]) -> list[str]:
        queue = await self.queue_manager.get_or_create_queue(tenant_id)
        await self.worker_manager.get_or_create_worker(tenant_id)

        async def enqueue(claimed: list[str]) -> dict[str, str]:
            jobs = await queue.add_bulk(claimed)
            for job in jobs:
                logger.debug("job_enqueued", tenant_id=tenant_id, job_id=job.job_id)
            return {job.scheduled_action_id: job.job_id for job in jobs}

        return await self.actions.claim_and_enqueue(tenant_id, action_ids, enqueue)

    async def _revert_partition(self, tenant_id: str, action_ids: list[str]) -> int:
        """Put a failed partition back to PENDING; jobs already queued hit the guard."""
        try:
            reverted = await self.actions.reset_to_pending(action_ids)
        except Exception as e:
            # Rows stuck in PROCESSING are picked up by the reclaimer
            logger.error("tenant_revert_failed", tenant_id=tenant_id, error=str(e))
            return 0
        logger.warning("tenant_partition_reverted", tenant_id=tenant_id, count=reverted)
        return reverted

    async def cleanup_stuck_actions(self, now: datetime = None) -> int:
        """Reset stale PROCESSING actions to PENDING. Returns how many were reclaimed."""
        now = now or datetime.now(timezone.utc)
        threshold = now - timedelta(minutes=self.config.stale_after_minutes)
        reclaimed = await self.actions.reclaim_stale(threshold)
        if reclaimed:
            logger.warning("stuck_actions_reclaimed",
                           count=len(reclaimed),
                           action_ids=reclaimed,
                           stale_after_minutes=self.config.stale_after_minutes)
        return len(reclaimed)
