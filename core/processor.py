"""
ActionProcessor — executes one scheduled action handed over by a worker.

Flow per job:
  1. Load the action with its conversation, person, organization, step,
     sequence and sender. Missing → skipped.
  2. Guard: the conversation must be ACTIVE and the action PROCESSING,
     otherwise the job is a no-op skip (reply arrived, cancelled, reclaimed,
     already finished on an earlier attempt).
     A job can be reserved before the scheduler's claim transaction commits,
     so a PENDING action is re-read for up to `claim_wait_s` and then handed
     back to the queue with ClaimNotCommittedError for a backed-off retry.
  3. Mark the action started (updated_at) so the stuck-action reclaimer
     measures staleness from here, not from the claim.
  4. Deliver the step on its channel and record an audit message.
  5. Mark the action SENT and move the conversation cursors.
  6. Schedule the next step, or complete the conversation.

Any exception in 4-6 marks the action FAILED and is re-raised so the queue
records the failure and retries; the retry then stops at the guard.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from channels.base import ChannelRegistry, DeliveryError
from channels.renderer import ContentRenderer, PlaceholderRenderer, build_render_context
from core.sequencing import SequenceService
from database.action_store import ActionStore
from database.models import EmailSenderRow, ScheduledActionRow
from database.store import ConversationStore
from job_queue.message_queue import QueueJob
from models.schemas import (
    AutomationStatus, ConversationStage, DeliveryResult, MessageSender, ProcessResult,
    ProcessStatus, Recipient, RenderedContent, ScheduledActionChannel, ScheduledActionStatus,
    SenderIdentity,
)

logger = structlog.get_logger()


def _sender_identity(sender: Optional[EmailSenderRow]) -> Optional[SenderIdentity]:
    if sender is None:
        return None
    return SenderIdentity(
        id=sender.id,
        from_email=sender.from_email,
        from_name=sender.from_name or "",
        api_key=sender.api_key or "",
    )


class ClaimNotCommittedError(Exception):
    """The job arrived before the claim that enqueued it was committed."""

    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Action {action_id} is still pending; claim not committed")


class ActionProcessor:

    def __init__(
        self,
        actions: ActionStore,
        conversations: ConversationStore,
        sequences: SequenceService,
        channels: ChannelRegistry,
        renderer: ContentRenderer = None,
        delivery_timeout_s: float = 30.0,
        claim_wait_s: float = 5.0,
        claim_poll_s: float = 0.05,
    ):
        self.actions = actions
        self.conversations = conversations
        self.sequences = sequences
        self.channels = channels
        self.renderer = renderer or PlaceholderRenderer()
        self.delivery_timeout_s = delivery_timeout_s
        self.claim_wait_s = claim_wait_s
        self.claim_poll_s = claim_poll_s

    async def _load_claimed(self, action_id: str) -> Optional[ScheduledActionRow]:
        """Load the action, re-reading while it is PENDING for up to claim_wait_s."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.claim_wait_s
        while True:
            action = await self.actions.load_for_processing(action_id)
            if (action is None
                    or action.status != ScheduledActionStatus.PENDING.value
                    or loop.time() >= deadline):
                return action
            await asyncio.sleep(self.claim_poll_s)

    async def process(self, job: QueueJob) -> ProcessResult:
        action_id = job.scheduled_action_id
        log = logger.bind(scheduled_action_id=action_id, tenant_id=job.tenant_id, job_id=job.job_id)

        action = await self._load_claimed(action_id)
        if action is None or action.conversation is None:
            log.warning("action_not_found")
            return ProcessResult(status=ProcessStatus.SKIPPED, scheduled_action_id=action_id,
                                 reason="not_found")

        conversation = action.conversation
        if conversation.automation_status != AutomationStatus.ACTIVE.value:
            log.info("action_skipped_conversation_inactive",
                     conversation_id=conversation.id,
                     automation_status=conversation.automation_status)
            return ProcessResult(status=ProcessStatus.SKIPPED, scheduled_action_id=action_id,
                                 reason="conversation_inactive")
        if action.status == ScheduledActionStatus.PENDING.value:
            # Not FAILED: the row never left PENDING, the queue retries with backoff
            log.warning("action_claim_not_committed", waited_s=self.claim_wait_s)
            raise ClaimNotCommittedError(action_id)
        if action.status != ScheduledActionStatus.PROCESSING.value:
            log.info("action_skipped_not_processing", status=action.status)
            return ProcessResult(status=ProcessStatus.SKIPPED, scheduled_action_id=action_id,
                                 reason=f"status_{action.status}")

        if not await self.actions.mark_started(action_id):
            log.info("action_skipped_not_processing", status="changed_before_start")
            return ProcessResult(status=ProcessStatus.SKIPPED, scheduled_action_id=action_id,
                                 reason="status_changed")

        try:
            if action.channel != ScheduledActionChannel.EMAIL.value:
                await self.actions.update_status(action_id, ScheduledActionStatus.FAILED)
                log.error("action_channel_unsupported", channel=action.channel)
                return ProcessResult(status=ProcessStatus.FAILED, scheduled_action_id=action_id,
                                     reason=f"unsupported_channel_{action.channel}")

            content = await self.renderer.render(
                action.step, build_render_context(conversation, action.email_sender),
            )
            result = await self._deliver(action, content)
            if not result.success:
                raise DeliveryError(result.error or "delivery failed", action.channel)

            next_action = None
            if await self._record_sent(action, content, result):
                tenant_id = job.tenant_id or conversation.person.organization_id
                next_action = await self.sequences.advance(conversation, action.step, tenant_id)

        except Exception as e:
            await self.actions.update_status(action_id, ScheduledActionStatus.FAILED)
            log.error("action_processing_failed", error=str(e), attempt=job.attempt + 1)
            raise

        log.info("action_processed",
                 conversation_id=conversation.id,
                 step_id=action.step_id,
                 next_action_id=next_action.id if next_action else None)
        return ProcessResult(status=ProcessStatus.COMPLETED, scheduled_action_id=action_id)

    async def _deliver(self, action: ScheduledActionRow, content: RenderedContent) -> DeliveryResult:
        person = action.conversation.person
        recipient = Recipient(
            person_id=person.id,
            email=person.email or "",
            name=person.full_name,
        )
        return await self.channels.deliver(
            action.channel,
            recipient,
            content,
            sender=_sender_identity(action.email_sender),
            timeout_s=self.delivery_timeout_s,
        )

    async def _record_sent(
        self, action: ScheduledActionRow, content: RenderedContent, result: DeliveryResult,
    ) -> bool:
        """Audit message, SENT and cursor moves. False if the action was cancelled mid-send."""
        conversation = action.conversation
        audit = f"{content.subject}\n\n{content.body}" if content.subject else content.body
        await self.conversations.add_message(
            conversation.id,
            content=audit,
            sender=MessageSender.AGENT,
            channel=action.channel,
            source_step_id=action.step_id,
            provider_message_id=result.provider_message_id,
        )

        updates = {
            "last_step_sent_id": action.step_id,
            "current_step_id": action.step_id,
        }
        if conversation.stage == ConversationStage.NEW.value:
            updates["stage"] = ConversationStage.CONTACTED.value

        sent = await self.actions.update_status(action.id, ScheduledActionStatus.SENT)
        await self.conversations.update_conversation(conversation.id, **updates)
        if not sent:
            # The message is out; the cursor moves but nothing further is scheduled
            logger.warning("action_cancelled_during_send", scheduled_action_id=action.id)
        return sent
