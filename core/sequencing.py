"""
SequenceService — moves conversations through their sequence of steps.

Operations:
  initiate_sequence()  start a sequence for a batch of people: one ACTIVE
                       conversation and one PENDING first-step action each
  advance()            after a step is sent: schedule the next step, or
                       complete the conversation when none is left
  handle_reply()       the person answered: hand the conversation to a human
  cancel_action()      operator cancellation of a single action

Step order within a sequence is (day_offset, step_number, id). The delay
between two steps is the difference of their day offsets, never negative.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from database.action_store import ActionStore
from database.models import ConversationRow, ScheduledActionRow, StepTemplateRow
from database.store import ConversationStore
from core.senders import SenderResolver
from models.schemas import AutomationStatus, ConversationStage, MessageSender

logger = structlog.get_logger()


class SequenceError(Exception):
    """Invalid input for starting or advancing a sequence."""


def next_delay_days(current: StepTemplateRow, following: StepTemplateRow) -> int:
    return max(0, (following.day_offset or 0) - (current.day_offset or 0))


class SequenceService:

    def __init__(
        self,
        conversations: ConversationStore,
        actions: ActionStore,
        senders: SenderResolver,
    ):
        self.conversations = conversations
        self.actions = actions
        self.senders = senders

    # ── Scheduling ─────────────────────────────────────────

    async def schedule_step(
        self,
        conversation_id: str,
        tenant_id: str,
        step: StepTemplateRow,
        scheduled_at: datetime,
    ) -> Optional[ScheduledActionRow]:
        """
        Create the PENDING action for `step`, or park the conversation in
        NEEDS_REVIEW when no sender identity is available.
        """
        sender = await self.senders.resolve_sender(tenant_id, step.channel)
        if sender is None:
            logger.warning("no_sender_available",
                           tenant_id=tenant_id,
                           conversation_id=conversation_id,
                           step_id=step.id,
                           channel=step.channel)
            await self.conversations.set_automation_status(
                conversation_id, AutomationStatus.NEEDS_REVIEW,
                current_step_id=step.id, next_action_at=None,
            )
            return None

        action = await self.actions.create_action(
            conversation_id=conversation_id,
            step_id=step.id,
            channel=step.channel,
            scheduled_at=scheduled_at,
            email_sender_id=sender.id,
        )
        await self.conversations.update_conversation(
            conversation_id, current_step_id=step.id, next_action_at=scheduled_at,
        )
        return action

    async def advance(
        self,
        conversation: ConversationRow,
        sent_step: StepTemplateRow,
        tenant_id: str,
        now: datetime = None,
    ) -> Optional[ScheduledActionRow]:
        """Schedule the step after `sent_step`, or complete the conversation."""
        now = now or datetime.now(timezone.utc)
        following = await self.conversations.find_next_step(conversation.sequence_id, sent_step)

        if following is None:
            await self.conversations.set_automation_status(
                conversation.id, AutomationStatus.COMPLETED, next_action_at=None,
            )
            logger.info("sequence_completed",
                        conversation_id=conversation.id,
                        sequence_id=conversation.sequence_id)
            return None

        delay = next_delay_days(sent_step, following)
        return await self.schedule_step(
            conversation.id, tenant_id, following, now + timedelta(days=delay),
        )

    # ── Initiation ─────────────────────────────────────────

    async def initiate_sequence(
        self,
        sequence_id: str,
        person_ids: list[str],
        send_immediately: bool = False,
        now: datetime = None,
    ) -> list[str]:
        """
        Start `sequence_id` for each person. People who already have an open
        conversation on the sequence, or belong to another organization, are
        skipped.

        Returns the ids of the conversations created.

        Raises:
            SequenceError: unknown sequence, or a sequence without steps.
        """
        now = now or datetime.now(timezone.utc)
        sequence = await self.conversations.get_sequence(sequence_id)
        if sequence is None:
            raise SequenceError(f"Sequence {sequence_id} not found")
        first = await self.conversations.first_step(sequence_id)
        if first is None:
            raise SequenceError(f"Sequence {sequence_id} has no steps")

        scheduled_at = now if send_immediately else now + timedelta(days=first.day_offset or 0)

        created = []
        for person in await self.conversations.get_people(person_ids):
            if person.organization_id != sequence.organization_id:
                logger.warning("sequence_person_tenant_mismatch",
                               person_id=person.id, sequence_id=sequence_id)
                continue
            if await self.conversations.find_open_conversation(person.id, sequence_id):
                logger.info("sequence_already_running",
                            person_id=person.id, sequence_id=sequence_id)
                continue

            conversation = await self.conversations.create_conversation(person.id, sequence_id)
            await self.schedule_step(conversation.id, sequence.organization_id, first, scheduled_at)
            created.append(conversation.id)

        logger.info("sequence_initiated",
                    sequence_id=sequence_id,
                    requested=len(person_ids),
                    created=len(created),
                    send_immediately=send_immediately)
        return created

    # ── Replies and cancellation ───────────────────────────

    async def handle_reply(self, conversation_id: str, content: str) -> bool:
        """
        Record an inbound reply and stop automation for the conversation.
        Returns False when the conversation does not exist.
        """
        conversation = await self.conversations.get_conversation(conversation_id)
        if conversation is None:
            return False

        await self.conversations.add_message(
            conversation_id, content, sender=MessageSender.PERSON,
        )
        cancelled = await self.actions.cancel_pending_for_conversation(conversation_id)
        await self.conversations.set_automation_status(
            conversation_id, AutomationStatus.NEEDS_REVIEW,
            stage=ConversationStage.RESPONDED.value, next_action_at=None,
        )
        logger.info("reply_received",
                    conversation_id=conversation_id, cancelled_actions=cancelled)
        return True

    async def cancel_action(self, action_id: str) -> bool:
        cancelled = await self.actions.cancel_action(action_id)
        if cancelled:
            logger.info("action_cancelled", action_id=action_id)
        return cancelled
