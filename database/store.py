"""
ConversationStore — conversations, their sequences and audit messages.

The entity CRUD around organizations, people and sequences lives outside the
engine; this store only exposes what the scheduler, processor and sequence
service read and write.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, and_, or_
from sqlalchemy.orm import selectinload

from database.models import (
    ConversationRow, MessageRow, PersonRow, SequenceRow,
    StepTemplateRow, EmailSenderRow,
)
from database.session import Database
from models.schemas import AutomationStatus, MessageSender

logger = structlog.get_logger()


class ConversationStore:
    """Reads and cursor updates for conversations and their sequences."""

    def __init__(self, db: Database):
        self.db = db

    # ── Conversation operations ────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRow]:
        async with self.db.session() as s:
            stmt = (
                select(ConversationRow)
                .where(ConversationRow.id == conversation_id)
                .options(
                    selectinload(ConversationRow.person).selectinload(PersonRow.organization),
                    selectinload(ConversationRow.sequence),
                    selectinload(ConversationRow.last_step_sent),
                )
            )
            result = await s.execute(stmt)
            return result.scalar_one_or_none()

    async def find_open_conversation(self, person_id: str, sequence_id: str) -> Optional[ConversationRow]:
        """A conversation for this person on this sequence that is not COMPLETED."""
        async with self.db.session() as s:
            stmt = (
                select(ConversationRow)
                .where(and_(
                    ConversationRow.person_id == person_id,
                    ConversationRow.sequence_id == sequence_id,
                    ConversationRow.automation_status != AutomationStatus.COMPLETED.value,
                ))
                .order_by(ConversationRow.updated_at.desc())
                .limit(1)
            )
            result = await s.execute(stmt)
            return result.scalar_one_or_none()

    async def create_conversation(self, person_id: str, sequence_id: str) -> ConversationRow:
        async with self.db.session() as s:
            row = ConversationRow(
                person_id=person_id,
                sequence_id=sequence_id,
                automation_status=AutomationStatus.ACTIVE.value,
            )
            s.add(row)
            await s.flush()
            return row

    async def update_conversation(self, conversation_id: str, **kwargs: Any) -> None:
        async with self.db.session() as s:
            stmt = (
                update(ConversationRow)
                .where(ConversationRow.id == conversation_id)
                .values(**kwargs, updated_at=datetime.now(timezone.utc))
            )
            await s.execute(stmt)

    async def set_automation_status(self, conversation_id: str, status: AutomationStatus, **kwargs: Any) -> None:
        await self.update_conversation(conversation_id, automation_status=status.value, **kwargs)
        logger.info("conversation_automation_status_changed",
                    conversation_id=conversation_id, status=status.value)

    # ── Message operations ─────────────────────────────────

    async def add_message(
        self, conversation_id: str, content: str,
        sender: MessageSender = MessageSender.AGENT, channel: str = "",
        source_step_id: str = None, provider_message_id: str = "",
    ) -> MessageRow:
        async with self.db.session() as s:
            row = MessageRow(
                conversation_id=conversation_id,
                sender=sender.value,
                channel=channel,
                content=content,
                source_step_id=source_step_id,
                provider_message_id=provider_message_id,
            )
            s.add(row)
            await s.flush()
            return row

    async def get_messages(self, conversation_id: str, limit: int = 50) -> list[MessageRow]:
        async with self.db.session() as s:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at)
                .limit(limit)
            )
            result = await s.execute(stmt)
            return list(result.scalars().all())

    # ── Sequences and steps ────────────────────────────────

    async def get_sequence(self, sequence_id: str) -> Optional[SequenceRow]:
        async with self.db.session() as s:
            stmt = (
                select(SequenceRow)
                .where(SequenceRow.id == sequence_id)
                .options(selectinload(SequenceRow.steps))
            )
            result = await s.execute(stmt)
            return result.scalar_one_or_none()

    async def first_step(self, sequence_id: str) -> Optional[StepTemplateRow]:
        async with self.db.session() as s:
            stmt = (
                select(StepTemplateRow)
                .where(StepTemplateRow.sequence_id == sequence_id)
                .order_by(StepTemplateRow.day_offset, StepTemplateRow.step_number, StepTemplateRow.id)
                .limit(1)
            )
            result = await s.execute(stmt)
            return result.scalar_one_or_none()

    async def find_next_step(self, sequence_id: str, after: StepTemplateRow) -> Optional[StepTemplateRow]:
        """
        The step ordered immediately after `after` by (day_offset, step_number, id).

        Templates sharing the sent step's offset come before larger offsets,
        and the sent step itself is never returned.
        """
        offset, number, step_id = after.day_offset, after.step_number, after.id
        async with self.db.session() as s:
            stmt = (
                select(StepTemplateRow)
                .where(
                    StepTemplateRow.sequence_id == sequence_id,
                    or_(
                        StepTemplateRow.day_offset > offset,
                        and_(StepTemplateRow.day_offset == offset,
                             StepTemplateRow.step_number > number),
                        and_(StepTemplateRow.day_offset == offset,
                             StepTemplateRow.step_number == number,
                             StepTemplateRow.id > step_id),
                    ),
                )
                .order_by(StepTemplateRow.day_offset, StepTemplateRow.step_number, StepTemplateRow.id)
                .limit(1)
            )
            result = await s.execute(stmt)
            return result.scalar_one_or_none()

    # ── People and senders ─────────────────────────────────

    async def get_people(self, person_ids: list[str]) -> list[PersonRow]:
        if not person_ids:
            return []
        async with self.db.session() as s:
            stmt = select(PersonRow).where(PersonRow.id.in_(person_ids))
            result = await s.execute(stmt)
            return list(result.scalars().all())

    async def list_email_senders(self, organization_id: str) -> list[EmailSenderRow]:
        async with self.db.session() as s:
            stmt = (
                select(EmailSenderRow)
                .where(EmailSenderRow.organization_id == organization_id)
                .order_by(EmailSenderRow.created_at, EmailSenderRow.id)
            )
            result = await s.execute(stmt)
            return list(result.scalars().all())
