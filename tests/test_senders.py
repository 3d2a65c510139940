"""
Tests for SqlSenderAllocator — least-used sender selection with daily limits.
"""
import pytest
from datetime import datetime, timedelta, timezone

from conftest import add_action, seed_tenant
from core.senders import SqlSenderAllocator, SenderResolver, start_of_utc_day
from database.models import EmailSenderRow, ScheduledActionRow
from models.schemas import ScheduledActionChannel, ScheduledActionStatus


@pytest.fixture
def allocator(actions, conversations) -> SqlSenderAllocator:
    return SqlSenderAllocator(actions, conversations)


async def _add_sender(db, tenant, from_email, daily_limit=400):
    async with db.session() as s:
        sender = EmailSenderRow(organization_id=tenant.id, from_email=from_email, daily_limit=daily_limit)
        s.add(sender)
        await s.flush()
    return sender


async def _sent_by(db, tenant, sender, count=1, when=None):
    when = when or datetime.now(timezone.utc)
    async with db.session() as s:
        for _ in range(count):
            s.add(ScheduledActionRow(
                conversation_id=tenant.conversation.id,
                step_id=tenant.steps[0].id,
                channel="email",
                scheduled_at=when,
                status=ScheduledActionStatus.SENT.value,
                email_sender_id=sender.id,
                updated_at=when,
            ))


class TestSqlSenderAllocator:
    def test_satisfies_protocol(self, allocator):
        assert isinstance(allocator, SenderResolver)

    def test_start_of_utc_day(self):
        now = datetime(2026, 5, 4, 17, 45, 12, tzinfo=timezone.utc)
        assert start_of_utc_day(now) == datetime(2026, 5, 4, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_least_used_sender_wins(self, db, allocator):
        tenant = await seed_tenant(db)
        second = await _add_sender(db, tenant, "hello@acme.test")
        await _sent_by(db, tenant, tenant.sender, count=2)
        await _sent_by(db, tenant, second, count=1)

        chosen = await allocator.resolve_sender(tenant.id, ScheduledActionChannel.EMAIL)
        assert chosen.id == second.id

    @pytest.mark.asyncio
    async def test_tie_goes_to_oldest_sender(self, db, allocator):
        tenant = await seed_tenant(db)
        await _add_sender(db, tenant, "hello@acme.test")

        chosen = await allocator.resolve_sender(tenant.id, "email")
        assert chosen.id == tenant.sender.id

    @pytest.mark.asyncio
    async def test_sender_at_limit_is_skipped(self, db, allocator):
        tenant = await seed_tenant(db, daily_limit=2)
        spare = await _add_sender(db, tenant, "spare@acme.test", daily_limit=50)
        await _sent_by(db, tenant, tenant.sender, count=2)
        await _sent_by(db, tenant, spare, count=10)

        chosen = await allocator.resolve_sender(tenant.id, "email")
        assert chosen.id == spare.id

    @pytest.mark.asyncio
    async def test_all_senders_at_limit(self, db, allocator):
        tenant = await seed_tenant(db, daily_limit=1)
        await _sent_by(db, tenant, tenant.sender, count=1)
        assert await allocator.resolve_sender(tenant.id, "email") is None

    @pytest.mark.asyncio
    async def test_outstanding_actions_count_toward_limit(self, db, allocator):
        tenant = await seed_tenant(db, daily_limit=2)
        spare = await _add_sender(db, tenant, "spare@acme.test", daily_limit=2)
        await add_action(db, tenant)
        await add_action(db, tenant, status=ScheduledActionStatus.PROCESSING)

        chosen = await allocator.resolve_sender(tenant.id, "email")
        assert chosen.id == spare.id

    @pytest.mark.asyncio
    async def test_actions_due_on_later_days_do_not_count(self, db, allocator):
        tenant = await seed_tenant(db, daily_limit=1)
        await add_action(db, tenant, scheduled_at=datetime.now(timezone.utc) + timedelta(days=3))

        chosen = await allocator.resolve_sender(tenant.id, "email")
        assert chosen.id == tenant.sender.id

    @pytest.mark.asyncio
    async def test_yesterdays_sends_do_not_count(self, db, allocator):
        tenant = await seed_tenant(db, daily_limit=1)
        yesterday = start_of_utc_day() - timedelta(hours=1)
        await _sent_by(db, tenant, tenant.sender, count=3, when=yesterday)

        chosen = await allocator.resolve_sender(tenant.id, "email")
        assert chosen.id == tenant.sender.id

    @pytest.mark.asyncio
    async def test_no_senders(self, db, allocator):
        tenant = await seed_tenant(db, with_sender=False)
        assert await allocator.resolve_sender(tenant.id, "email") is None

    @pytest.mark.asyncio
    async def test_other_tenants_senders_never_used(self, db, allocator):
        tenant = await seed_tenant(db, "Acme", with_sender=False)
        await seed_tenant(db, "Globex")
        assert await allocator.resolve_sender(tenant.id, "email") is None

    @pytest.mark.asyncio
    async def test_social_has_no_sender(self, db, allocator):
        tenant = await seed_tenant(db)
        assert await allocator.resolve_sender(tenant.id, ScheduledActionChannel.SOCIAL) is None
