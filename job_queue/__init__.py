"""
Job Queue — per-tenant durable queues and the workers that drain them.

- QueueManager creates one queue per organization on first use
- WorkerManager starts one rate-limited worker pool per organization
- Redis lists/sorted sets (production) or in-memory asyncio state (dev/tests)
"""
