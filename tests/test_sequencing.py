"""
Tests for SequenceService and step ordering.
"""
import pytest
from collections import Counter
from datetime import datetime, timedelta, timezone

from conftest import add_action, ensure_utc, seed_tenant
from core.sequencing import SequenceError, next_delay_days
from database.models import EmailSenderRow, PersonRow, SequenceRow, StepTemplateRow
from models.schemas import (
    AutomationStatus, ConversationStage, MessageSender, ScheduledActionStatus,
)


async def _add_person(db, organization_id, first_name="Grace"):
    async with db.session() as s:
        person = PersonRow(organization_id=organization_id, first_name=first_name,
                           last_name="Hopper", email=f"{first_name.lower()}@prospect.test")
        s.add(person)
        await s.flush()
    return person


# ──────────────────────────────────────────────────────────────
#  Step ordering
# ──────────────────────────────────────────────────────────────

class TestStepOrdering:
    def test_delay_is_offset_difference(self):
        assert next_delay_days(StepTemplateRow(day_offset=0), StepTemplateRow(day_offset=3)) == 3
        assert next_delay_days(StepTemplateRow(day_offset=2), StepTemplateRow(day_offset=2)) == 0

    def test_delay_never_negative(self):
        assert next_delay_days(StepTemplateRow(day_offset=5), StepTemplateRow(day_offset=1)) == 0

    @pytest.mark.asyncio
    async def test_same_offset_ordered_by_step_number(self, db, conversations):
        tenant = await seed_tenant(db, step_offsets=(0, 0, 1))
        s1, s2, s3 = tenant.steps

        assert (await conversations.find_next_step(tenant.sequence.id, s1)).id == s2.id
        assert (await conversations.find_next_step(tenant.sequence.id, s2)).id == s3.id
        assert await conversations.find_next_step(tenant.sequence.id, s3) is None

    @pytest.mark.asyncio
    async def test_offset_wins_over_step_number(self, db, conversations):
        tenant = await seed_tenant(db, step_offsets=(3, 0))
        late, early = tenant.steps

        assert (await conversations.first_step(tenant.sequence.id)).id == early.id
        assert (await conversations.find_next_step(tenant.sequence.id, early)).id == late.id
        assert await conversations.find_next_step(tenant.sequence.id, late) is None

    @pytest.mark.asyncio
    async def test_sequence_steps_relationship_is_ordered(self, db, conversations):
        tenant = await seed_tenant(db, step_offsets=(4, 1, 1))
        sequence = await conversations.get_sequence(tenant.sequence.id)
        assert [s.id for s in sequence.steps] == [tenant.steps[1].id, tenant.steps[2].id, tenant.steps[0].id]


# ──────────────────────────────────────────────────────────────
#  Initiation
# ──────────────────────────────────────────────────────────────

class TestInitiateSequence:
    @pytest.mark.asyncio
    async def test_creates_conversation_and_first_action(self, db, actions, conversations, sequences):
        tenant = await seed_tenant(db, step_offsets=(2, 5))
        grace = await _add_person(db, tenant.id)
        now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

        [conversation_id] = await sequences.initiate_sequence(tenant.sequence.id, [grace.id], now=now)

        conversation = await conversations.get_conversation(conversation_id)
        assert conversation.person_id == grace.id
        assert conversation.automation_status == AutomationStatus.ACTIVE.value
        assert conversation.current_step_id == tenant.steps[0].id
        assert ensure_utc(conversation.next_action_at) == now + timedelta(days=2)

        [action] = await actions.list_for_conversation(conversation_id)
        assert action.status == ScheduledActionStatus.PENDING.value
        assert action.step_id == tenant.steps[0].id
        assert action.email_sender_id == tenant.sender.id
        assert ensure_utc(action.scheduled_at) == now + timedelta(days=2)

    @pytest.mark.asyncio
    async def test_send_immediately_ignores_first_offset(self, db, actions, sequences):
        tenant = await seed_tenant(db, step_offsets=(2,))
        grace = await _add_person(db, tenant.id)
        now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

        [conversation_id] = await sequences.initiate_sequence(
            tenant.sequence.id, [grace.id], send_immediately=True, now=now,
        )
        [action] = await actions.list_for_conversation(conversation_id)
        assert ensure_utc(action.scheduled_at) == now

    @pytest.mark.asyncio
    async def test_skips_people_with_open_conversation(self, db, sequences):
        tenant = await seed_tenant(db)
        grace = await _add_person(db, tenant.id)

        created = await sequences.initiate_sequence(tenant.sequence.id, [tenant.person.id, grace.id])
        assert len(created) == 1
        assert await sequences.initiate_sequence(tenant.sequence.id, [grace.id]) == []

    @pytest.mark.asyncio
    async def test_completed_conversation_can_restart(self, db, conversations, sequences):
        tenant = await seed_tenant(db)
        await conversations.set_automation_status(tenant.conversation.id, AutomationStatus.COMPLETED)

        created = await sequences.initiate_sequence(tenant.sequence.id, [tenant.person.id])
        assert len(created) == 1
        assert created[0] != tenant.conversation.id

    @pytest.mark.asyncio
    async def test_skips_people_of_other_tenants(self, db, sequences):
        acme = await seed_tenant(db, "Acme")
        globex = await seed_tenant(db, "Globex")
        outsider = await _add_person(db, globex.id)

        assert await sequences.initiate_sequence(acme.sequence.id, [outsider.id]) == []

    @pytest.mark.asyncio
    async def test_unknown_sequence(self, db, sequences):
        with pytest.raises(SequenceError):
            await sequences.initiate_sequence("missing", ["p1"])

    @pytest.mark.asyncio
    async def test_sequence_without_steps(self, db, sequences):
        tenant = await seed_tenant(db)
        async with db.session() as s:
            empty = SequenceRow(organization_id=tenant.id, name="empty")
            s.add(empty)
            await s.flush()

        with pytest.raises(SequenceError, match="no steps"):
            await sequences.initiate_sequence(empty.id, [tenant.person.id])

    @pytest.mark.asyncio
    async def test_no_sender_parks_new_conversation(self, db, actions, conversations, sequences):
        tenant = await seed_tenant(db, with_sender=False)
        grace = await _add_person(db, tenant.id)

        [conversation_id] = await sequences.initiate_sequence(tenant.sequence.id, [grace.id])
        conversation = await conversations.get_conversation(conversation_id)
        assert conversation.automation_status == AutomationStatus.NEEDS_REVIEW.value
        assert conversation.current_step_id == tenant.steps[0].id
        assert await actions.list_for_conversation(conversation_id) == []

    @pytest.mark.asyncio
    async def test_batch_spreads_senders_within_daily_limit(self, db, actions, conversations, sequences):
        tenant = await seed_tenant(db, daily_limit=2)
        async with db.session() as s:
            second = EmailSenderRow(organization_id=tenant.id, from_email="hello@acme.test", daily_limit=2)
            s.add(second)
            await s.flush()
        people = [await _add_person(db, tenant.id, first_name=f"P{i}") for i in range(6)]

        created = await sequences.initiate_sequence(
            tenant.sequence.id, [p.id for p in people], send_immediately=True,
        )
        assert len(created) == 6

        per_sender = Counter()
        parked = 0
        for conversation_id in created:
            scheduled = await actions.list_for_conversation(conversation_id)
            per_sender.update(a.email_sender_id for a in scheduled)
            conversation = await conversations.get_conversation(conversation_id)
            if conversation.automation_status == AutomationStatus.NEEDS_REVIEW.value:
                assert scheduled == []
                parked += 1
        assert per_sender == {tenant.sender.id: 2, second.id: 2}
        assert parked == 2


# ──────────────────────────────────────────────────────────────
#  Replies and cancellation
# ──────────────────────────────────────────────────────────────

class TestReplies:
    @pytest.mark.asyncio
    async def test_reply_stops_automation(self, db, actions, conversations, sequences):
        tenant = await seed_tenant(db)
        pending = await add_action(db, tenant, scheduled_at=datetime.now(timezone.utc) + timedelta(days=1))
        await conversations.update_conversation(tenant.conversation.id,
                                                next_action_at=pending.scheduled_at)

        assert await sequences.handle_reply(tenant.conversation.id, "Sounds good, call me Tuesday")

        conversation = await conversations.get_conversation(tenant.conversation.id)
        assert conversation.automation_status == AutomationStatus.NEEDS_REVIEW.value
        assert conversation.stage == ConversationStage.RESPONDED.value
        assert conversation.next_action_at is None
        assert (await actions.get_action(pending.id)).status == ScheduledActionStatus.CANCELLED.value

        [message] = await conversations.get_messages(tenant.conversation.id)
        assert message.sender == MessageSender.PERSON.value
        assert message.content == "Sounds good, call me Tuesday"

    @pytest.mark.asyncio
    async def test_reply_to_unknown_conversation(self, db, sequences):
        assert not await sequences.handle_reply("missing", "hello")

    @pytest.mark.asyncio
    async def test_cancel_action(self, db, actions, sequences):
        tenant = await seed_tenant(db)
        pending = await add_action(db, tenant)

        assert await sequences.cancel_action(pending.id)
        assert not await sequences.cancel_action(pending.id)
        assert (await actions.get_action(pending.id)).status == ScheduledActionStatus.CANCELLED.value
