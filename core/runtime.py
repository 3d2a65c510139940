"""
OutreachRuntime — builds and owns every engine component for one process.

Wiring happens in two phases. The constructor builds stores, managers,
channels and services from an injected Settings object; start() then
attaches the action processor to the worker manager and starts the tickers.

  ┌───────────────┐ poll (60s)    ┌──────────────────┐ add_bulk ┌──────────────┐
  │ poll ticker   │──────────────▶│ SchedulingService │────────▶│ QueueManager │
  ├───────────────┤ reclaim (10m) │                   │         └──────┬───────┘
  │ reclaim ticker│──────────────▶│                   │                │ reserve
  ├───────────────┤               └──────────────────┘         ┌──────▼───────┐
  │ housekeeping  │── idle queues / idle workers ──────────────▶│ WorkerManager│
  └───────────────┘                                             └──────┬───────┘
                                                                       │ process
                                                               ┌──────▼────────┐
                                                               │ActionProcessor│
                                                               └───────────────┘

Shutdown order: tickers, workers (in-flight jobs finish), queues, delivery
channels, database.
"""
from __future__ import annotations

import structlog
from typing import Any

from channels.base import ChannelRegistry
from channels.factory import create_channel_registry
from channels.renderer import ContentRenderer
from config.settings import Settings
from core.processor import ActionProcessor
from core.scheduler import SchedulingService
from core.senders import SenderResolver, SqlSenderAllocator
from core.sequencing import SequenceService
from core.ticker import PeriodicTicker
from database.action_store import ActionStore
from database.session import Database
from database.store import ConversationStore
from job_queue.message_queue import InMemoryQueueStore
from job_queue.queue_manager import QueueManager
from job_queue.worker_manager import WorkerManager

logger = structlog.get_logger()


class OutreachRuntime:
    """
    Usage:
        runtime = OutreachRuntime(load_settings())
        await runtime.start()
        ...
        await runtime.stop()
    """

    def __init__(
        self,
        settings: Settings,
        channels: ChannelRegistry = None,
        renderer: ContentRenderer = None,
        senders: SenderResolver = None,
        memory_store: InMemoryQueueStore = None,
    ):
        self.settings = settings
        self.db = Database(settings.database)
        self.actions = ActionStore(self.db)
        self.conversations = ConversationStore(self.db)

        self.queue_manager = QueueManager(settings.queue, memory_store)
        self.worker_manager = WorkerManager(settings.worker, self.queue_manager)

        self.channels = channels or create_channel_registry(settings.delivery)
        self.senders = senders or SqlSenderAllocator(self.actions, self.conversations)
        self.sequences = SequenceService(self.conversations, self.actions, self.senders)
        self.processor = ActionProcessor(
            self.actions,
            self.conversations,
            self.sequences,
            self.channels,
            renderer=renderer,
            delivery_timeout_s=settings.delivery.timeout_seconds,
            claim_wait_s=settings.worker.claim_wait_s,
        )
        self.scheduler = SchedulingService(
            self.actions, self.queue_manager, self.worker_manager, settings.scheduler,
        )

        sched = settings.scheduler
        self.tickers = [
            PeriodicTicker("poll_due_actions", sched.poll_interval_s,
                           self.scheduler.enqueue_due_actions),
            PeriodicTicker("reclaim_stuck_actions", sched.reclaim_interval_s,
                           self.scheduler.cleanup_stuck_actions),
            PeriodicTicker("housekeeping", sched.housekeeping_interval_s,
                           self.run_housekeeping),
        ]
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, init_db: bool = True) -> None:
        if init_db:
            await self.db.init_db()

        self.worker_manager.attach_processor(self.processor)

        if self.settings.scheduler.enabled:
            for ticker in self.tickers:
                await ticker.start()
        else:
            logger.info("scheduler_disabled")

        self._started = True
        logger.info("outreach_runtime_started",
                    queue_backend=self.settings.queue.backend,
                    delivery_provider=self.settings.delivery.provider)

    async def run_housekeeping(self) -> dict[str, list[str]]:
        """Evict idle workers, then idle queues of tenants with no worker left."""
        removed_workers = await self.worker_manager.remove_idle_workers()
        removed_queues = await self.queue_manager.cleanup_idle_queues(
            keep=self.worker_manager.active_tenants(),
        )
        if removed_workers or removed_queues:
            logger.info("housekeeping_done",
                        workers_removed=len(removed_workers),
                        queues_removed=len(removed_queues))
        return {"workers_removed": removed_workers, "queues_removed": removed_queues}

    async def resume_queue(self, tenant_id: str) -> bool:
        """Resume a paused queue and make sure something consumes it."""
        resumed = await self.queue_manager.resume_queue(tenant_id)
        if resumed:
            await self.worker_manager.get_or_create_worker(tenant_id)
        return resumed

    async def status(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "tickers": {t.name: {"running": t.running, "ticks": t.ticks} for t in self.tickers},
            "queues": self.queue_manager.active_tenants(),
            "workers": self.worker_manager.active_tenants(),
        }

    async def stop(self) -> None:
        for ticker in self.tickers:
            await ticker.stop()
        await self.worker_manager.close()
        await self.queue_manager.close()
        await self.channels.shutdown_all()
        await self.db.close()
        self._started = False
        logger.info("outreach_runtime_stopped")
