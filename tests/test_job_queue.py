"""
Tests for tenant queues and the QueueManager.

Covers:
  - QueueJob / JobOptions
  - Tenant queues on both backends, Redis via fakeredis
    (idempotent add, FIFO, retry backoff, trimming, pause, stalls)
  - QueueManager (naming, caching, metrics, idle cleanup, close)
  - Queue factory (memory vs redis selection)
"""
import asyncio
import fakeredis
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

from config.settings import QueueConfig
from job_queue.message_queue import (
    InMemoryQueueStore, InMemoryTenantQueue, JobOptions, JobState,
    QueueError, QueueJob, RedisTenantQueue, TenantQueue, create_tenant_queue,
    job_id_for,
)
from job_queue.queue_manager import QueueManager


def _queue(store: InMemoryQueueStore = None, **opts) -> InMemoryTenantQueue:
    options = JobOptions(**{"backoff_delay_ms": 10, **opts})
    return InMemoryTenantQueue("outreach-action-org1", "org1", options, store=store)


# ──────────────────────────────────────────────────────────────
#  Job model
# ──────────────────────────────────────────────────────────────

class TestQueueJob:
    def test_job_id_derived_from_action(self):
        job = QueueJob(scheduled_action_id="a1", tenant_id="org1")
        assert job.job_id == "action-a1"
        assert job_id_for("a1") == "action-a1"
        assert job.data == {"scheduled_action_id": "a1"}

    def test_dict_round_trip_restores_types(self):
        job = QueueJob(scheduled_action_id="a1", tenant_id="org1", attempt=2,
                       return_value={"status": "completed"})
        restored = QueueJob.from_dict(job.to_dict())
        assert restored.attempt == 2
        assert restored.return_value == {"status": "completed"}
        assert restored.job_id == job.job_id

    def test_attempts_left(self):
        job = QueueJob(scheduled_action_id="a1", attempt=1, max_attempts=3)
        assert job.attempts_left == 2


class TestJobOptions:
    def test_defaults_match_queue_config(self):
        opts = JobOptions.from_config(QueueConfig())
        assert opts.attempts == 3
        assert opts.backoff_delay_ms == 2000
        assert (opts.remove_on_complete_age_s, opts.remove_on_complete_count) == (3600, 100)
        assert (opts.remove_on_fail_age_s, opts.remove_on_fail_count) == (86400, 500)

    def test_exponential_backoff(self):
        opts = JobOptions(backoff_delay_ms=2000)
        assert opts.backoff_seconds(1) == 2.0
        assert opts.backoff_seconds(2) == 4.0
        assert opts.backoff_seconds(3) == 8.0


# ──────────────────────────────────────────────────────────────
#  Tenant queue backends (in-memory and Redis)
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(params=["memory", "redis"])
async def make_queue(request):
    """Builds queue handles on one backend; handles from one test share state."""
    memory_store = InMemoryQueueStore()
    server = fakeredis.FakeServer()
    handles = []

    def _make(**opts) -> TenantQueue:
        options = JobOptions(**{"backoff_delay_ms": 10, **opts})
        if request.param == "redis":
            client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
            queue = RedisTenantQueue("outreach-action-org1", "org1", options, client=client)
        else:
            queue = InMemoryTenantQueue("outreach-action-org1", "org1", options, store=memory_store)
        handles.append(queue)
        return queue

    yield _make
    for queue in handles:
        await queue.close()


class TestTenantQueueBackends:
    @pytest.mark.asyncio
    async def test_add_is_idempotent_while_live(self, make_queue):
        q = make_queue()
        first = await q.add("a1")
        second = await q.add("a1")
        assert first.job_id == second.job_id == "action-a1"
        assert (await q.get_metrics()).waiting == 1

    @pytest.mark.asyncio
    async def test_add_bulk_dedupes_active_jobs(self, make_queue):
        q = make_queue()
        await q.add("a1")
        job = await q.reserve(timeout=0.1)
        jobs = await q.add_bulk(["a1", "a2"])
        assert jobs[0].job_id == job.job_id
        assert jobs[0].state == JobState.ACTIVE
        metrics = await q.get_metrics()
        assert metrics.active == 1
        assert metrics.waiting == 1

    @pytest.mark.asyncio
    async def test_reserve_is_fifo(self, make_queue):
        q = make_queue()
        await q.add_bulk(["a1", "a2", "a3"])
        order = [(await q.reserve(timeout=0.1)).scheduled_action_id for _ in range(3)]
        assert order == ["a1", "a2", "a3"]

    @pytest.mark.asyncio
    async def test_reserved_job_is_active(self, make_queue):
        q = make_queue()
        await q.add("a1")
        job = await q.reserve(timeout=0.1)
        assert job.state == JobState.ACTIVE
        assert job.tenant_id == "org1"
        assert job.processed_on > 0
        assert (await q.get_metrics()).active == 1

    @pytest.mark.asyncio
    async def test_complete_records_history(self, make_queue):
        q = make_queue()
        await q.add("a1")
        job = await q.reserve(timeout=0.1)
        await q.complete(job, {"status": "completed"})
        metrics = await q.get_metrics()
        assert metrics.completed == 1
        assert metrics.active == 0
        done = await q.get_job("action-a1")
        assert done.state == JobState.COMPLETED
        assert done.return_value == {"status": "completed"}

    @pytest.mark.asyncio
    async def test_finished_job_can_be_added_again(self, make_queue):
        q = make_queue()
        await q.add("a1")
        await q.complete(await q.reserve(timeout=0.1))
        again = await q.add("a1")
        assert again.state == JobState.WAITING
        metrics = await q.get_metrics()
        assert metrics.waiting == 1
        assert metrics.completed == 0

    @pytest.mark.asyncio
    async def test_fail_retries_with_backoff_then_exhausts(self, make_queue):
        q = make_queue(attempts=3)
        await q.add("a1")

        job = await q.reserve(timeout=0.1)
        assert await q.fail(job, "boom") is True
        metrics = await q.get_metrics()
        assert (metrics.delayed, metrics.active) == (1, 0)

        await asyncio.sleep(0.05)
        job = await q.reserve(timeout=1.0)
        assert job.attempt == 1
        assert await q.fail(job, "boom") is True

        await asyncio.sleep(0.05)
        job = await q.reserve(timeout=1.0)
        assert await q.fail(job, "boom again") is False

        metrics = await q.get_metrics()
        assert metrics.failed == 1
        assert metrics.delayed == 0
        failed = await q.get_job("action-a1")
        assert failed.state == JobState.FAILED
        assert failed.failed_reason == "boom again"
        assert failed.attempt == 3

    @pytest.mark.asyncio
    async def test_delayed_job_waits_out_its_backoff(self, make_queue):
        q = make_queue(backoff_delay_ms=60_000)
        await q.add("a1")
        await q.fail(await q.reserve(timeout=0.1), "boom")
        assert await q.reserve(timeout=0.05) is None
        assert (await q.get_metrics()).delayed == 1

    @pytest.mark.asyncio
    async def test_completed_history_trimmed_by_count(self, make_queue):
        q = make_queue(remove_on_complete_count=2)
        await q.add_bulk(["a1", "a2", "a3"])
        for _ in range(3):
            await q.complete(await q.reserve(timeout=0.1))
        assert (await q.get_metrics()).completed == 2
        assert await q.get_job("action-a1") is None
        assert await q.get_job("action-a3") is not None

    @pytest.mark.asyncio
    async def test_failed_history_trimmed_by_count(self, make_queue):
        q = make_queue(attempts=1, remove_on_fail_count=1)
        await q.add_bulk(["a1", "a2"])
        for _ in range(2):
            assert await q.fail(await q.reserve(timeout=0.1), "boom") is False
        assert (await q.get_metrics()).failed == 1
        assert await q.get_job("action-a1") is None

    @pytest.mark.asyncio
    async def test_paused_queue_hands_out_nothing(self, make_queue):
        q = make_queue()
        await q.add("a1")
        await q.pause()
        assert await q.reserve(timeout=0.05) is None
        assert (await q.get_metrics()).paused is True
        await q.resume()
        assert (await q.get_metrics()).paused is False
        assert (await q.reserve(timeout=0.1)).scheduled_action_id == "a1"

    @pytest.mark.asyncio
    async def test_requeue_stalled(self, make_queue):
        q = make_queue()
        await q.add("a1")
        await q.reserve(timeout=0.1)
        assert await q.requeue_stalled(stalled_after_s=60) == 0

        await asyncio.sleep(0.01)
        assert await q.requeue_stalled(stalled_after_s=0) == 1
        metrics = await q.get_metrics()
        assert (metrics.waiting, metrics.active) == (1, 0)
        assert (await q.reserve(timeout=0.1)).scheduled_action_id == "a1"

    @pytest.mark.asyncio
    async def test_closed_handle_raises(self, make_queue):
        q = make_queue()
        await q.close()
        assert q.closed
        with pytest.raises(QueueError):
            await q.add("a1")
        with pytest.raises(QueueError):
            await q.reserve(timeout=0.01)

    @pytest.mark.asyncio
    async def test_state_outlives_handle(self, make_queue):
        q1 = make_queue()
        await q1.add("a1")
        await q1.close()
        q2 = make_queue()
        assert (await q2.reserve(timeout=0.1)).scheduled_action_id == "a1"


class TestInMemoryTenantQueue:
    @pytest.mark.asyncio
    async def test_reserve_times_out_on_empty_queue(self):
        q = _queue()
        assert await q.reserve(timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_reserve_wakes_on_add(self):
        q = _queue()
        waiter = asyncio.create_task(q.reserve(timeout=2.0))
        await asyncio.sleep(0.01)
        await q.add("a1")
        job = await asyncio.wait_for(waiter, timeout=1.0)
        assert job.scheduled_action_id == "a1"
        assert job.state == JobState.ACTIVE


# ──────────────────────────────────────────────────────────────
#  QueueManager
# ──────────────────────────────────────────────────────────────

class TestQueueManager:
    @pytest.mark.asyncio
    async def test_queue_named_per_tenant(self, queue_manager):
        q = await queue_manager.get_or_create_queue("org1")
        assert q.name == "outreach-action-org1"
        assert q.tenant_id == "org1"

    @pytest.mark.asyncio
    async def test_queue_is_cached(self, queue_manager):
        q1 = await queue_manager.get_or_create_queue("org1")
        q2 = await queue_manager.get_or_create_queue("org1")
        assert q1 is q2
        assert queue_manager.active_tenants() == ["org1"]

    @pytest.mark.asyncio
    async def test_concurrent_creation_yields_one_queue(self, queue_manager):
        queues = await asyncio.gather(*[queue_manager.get_or_create_queue("org1") for _ in range(5)])
        assert all(q is queues[0] for q in queues)

    @pytest.mark.asyncio
    async def test_metrics_none_for_unknown_tenant(self, queue_manager):
        assert await queue_manager.get_queue_metrics("nobody") is None

    @pytest.mark.asyncio
    async def test_metrics_for_tenant(self, queue_manager):
        q = await queue_manager.get_or_create_queue("org1")
        await q.add_bulk(["a1", "a2"])
        metrics = await queue_manager.get_queue_metrics("org1")
        assert metrics.waiting == 2
        assert metrics.paused is False

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, queue_manager):
        assert await queue_manager.pause_queue("org1") is False
        await queue_manager.get_or_create_queue("org1")
        assert await queue_manager.pause_queue("org1") is True
        assert (await queue_manager.get_queue_metrics("org1")).paused is True
        assert await queue_manager.resume_queue("org1") is True
        assert (await queue_manager.get_queue_metrics("org1")).paused is False

    @pytest.mark.asyncio
    async def test_cleanup_only_removes_idle_queues(self, queue_manager):
        busy = await queue_manager.get_or_create_queue("busy")
        await busy.add("a1")
        await queue_manager.get_or_create_queue("idle")

        removed = await queue_manager.cleanup_idle_queues()
        assert removed == ["idle"]
        assert queue_manager.active_tenants() == ["busy"]

    @pytest.mark.asyncio
    async def test_cleanup_keeps_listed_tenants(self, queue_manager):
        kept = await queue_manager.get_or_create_queue("worked")
        await queue_manager.get_or_create_queue("idle")

        assert await queue_manager.cleanup_idle_queues(keep=["worked"]) == ["idle"]
        assert queue_manager.active_tenants() == ["worked"]
        assert not kept.closed

    @pytest.mark.asyncio
    async def test_recreated_queue_keeps_jobs(self, queue_manager):
        q = await queue_manager.get_or_create_queue("org1")
        await q.add("a1")
        await q.fail(await q.reserve(timeout=0.1), "boom")
        # waiting == 0 and active == 0 while the retry is delayed
        assert await queue_manager.cleanup_idle_queues() == ["org1"]

        q2 = await queue_manager.get_or_create_queue("org1")
        assert q2 is not q
        assert (await q2.get_metrics()).delayed == 1

    @pytest.mark.asyncio
    async def test_close_survives_individual_failures(self, queue_config):
        manager = QueueManager(queue_config, InMemoryQueueStore())
        bad = await manager.get_or_create_queue("bad")
        good = await manager.get_or_create_queue("good")
        bad.close = AsyncMock(side_effect=RuntimeError("connection reset"))

        await manager.close()
        assert good.closed
        assert manager.active_tenants() == []


class TestQueueFactory:
    def test_memory_backend(self):
        q = create_tenant_queue("org1", QueueConfig(backend="memory"))
        assert isinstance(q, InMemoryTenantQueue)
        assert q.name == "outreach-action-org1"

    def test_redis_backend(self):
        # redis.asyncio connects lazily, so construction needs no server
        q = create_tenant_queue("org1", QueueConfig(backend="redis", redis_url="redis://localhost:6379"))
        assert isinstance(q, RedisTenantQueue)
        assert q._key("wait") == "outreach-action-org1:wait"
        assert q._job_key("action-a1") == "outreach-action-org1:job:action-a1"
