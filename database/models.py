"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - Enum-valued columns are plain strings holding the enum value, so no
    database-specific ENUM types are created.
  - JSON type instead of PostgreSQL-specific JSONB.
  - String primary keys (uuid hex) — no database-specific sequences.
  - scheduled_actions rows are an audit trail: normal processing never
    deletes them, only the retention purge does.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, DateTime, Text, ForeignKey,
    Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from models.schemas import (
    AutomationStatus, ConversationStage, ScheduledActionStatus,
    ScheduledActionType, MessageSender,
)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Tenants and people
# ──────────────────────────────────────────────────────────────

class OrganizationRow(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    email_senders: Mapped[list["EmailSenderRow"]] = relationship(back_populates="organization")


class PersonRow(Base):
    __tablename__ = "people"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("organizations.id"), nullable=True)
    first_name: Mapped[str] = mapped_column(String(128), default="")
    last_name: Mapped[str] = mapped_column(String(128), default="")
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    title: Mapped[str] = mapped_column(String(256), default="")
    company: Mapped[str] = mapped_column(String(256), default="")
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    organization: Mapped[Optional["OrganizationRow"]] = relationship()

    __table_args__ = (
        Index("ix_people_org", "organization_id"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class EmailSenderRow(Base):
    """An outbound email identity belonging to one organization."""
    __tablename__ = "email_senders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), nullable=False)
    from_name: Mapped[str] = mapped_column(String(256), default="")
    from_email: Mapped[str] = mapped_column(String(320), nullable=False)
    api_key: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    daily_limit: Mapped[int] = mapped_column(Integer, default=400)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    organization: Mapped["OrganizationRow"] = relationship(back_populates="email_senders")

    __table_args__ = (
        Index("ix_email_senders_org", "organization_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Sequences and step templates
# ──────────────────────────────────────────────────────────────

class SequenceRow(Base):
    __tablename__ = "outreach_sequences"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("organizations.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    objective: Mapped[str] = mapped_column(String(128), default="")
    status: Mapped[str] = mapped_column(String(32), default="active")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    steps: Mapped[list["StepTemplateRow"]] = relationship(
        back_populates="sequence",
        order_by=lambda: [StepTemplateRow.day_offset, StepTemplateRow.step_number, StepTemplateRow.id],
    )


class StepTemplateRow(Base):
    """Immutable definition of one touch in a sequence."""
    __tablename__ = "outreach_step_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    sequence_id: Mapped[str] = mapped_column(String(64), ForeignKey("outreach_sequences.id"), nullable=False)
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    day_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    subject_template: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    body_template: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    max_retries: Mapped[int] = mapped_column(Integer, default=1)

    sequence: Mapped["SequenceRow"] = relationship(back_populates="steps")

    __table_args__ = (
        Index("ix_step_templates_sequence_offset", "sequence_id", "day_offset"),
    )


# ──────────────────────────────────────────────────────────────
#  Conversations and messages
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    """The per-prospect instance of a sequence in progress."""
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    person_id: Mapped[str] = mapped_column(String(64), ForeignKey("people.id"), nullable=False)
    sequence_id: Mapped[str] = mapped_column(String(64), ForeignKey("outreach_sequences.id"), nullable=False)

    status: Mapped[str] = mapped_column(String(32), default="active")
    stage: Mapped[str] = mapped_column(String(32), default=ConversationStage.NEW.value)
    automation_status: Mapped[str] = mapped_column(String(32), default=AutomationStatus.ACTIVE.value)

    current_step_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("outreach_step_templates.id"), nullable=True)
    last_step_sent_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("outreach_step_templates.id"), nullable=True)
    next_action_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    person: Mapped["PersonRow"] = relationship()
    sequence: Mapped["SequenceRow"] = relationship()
    current_step: Mapped[Optional["StepTemplateRow"]] = relationship(foreign_keys=[current_step_id])
    last_step_sent: Mapped[Optional["StepTemplateRow"]] = relationship(foreign_keys=[last_step_sent_id])
    scheduled_actions: Mapped[list["ScheduledActionRow"]] = relationship(back_populates="conversation")

    __table_args__ = (
        Index("ix_conversations_person", "person_id"),
        Index("ix_conversations_sequence", "sequence_id"),
        Index("ix_conversations_automation", "automation_status"),
    )


class MessageRow(Base):
    """Audit record of every message sent or received in a conversation."""
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False)
    sender: Mapped[str] = mapped_column(String(16), default=MessageSender.AGENT.value)
    channel: Mapped[str] = mapped_column(String(32), default="")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    source_step_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("outreach_step_templates.id"), nullable=True)
    provider_message_id: Mapped[str] = mapped_column(String(256), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_messages_conversation_ts", "conversation_id", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Scheduled actions
# ──────────────────────────────────────────────────────────────

class ScheduledActionRow(Base):
    __tablename__ = "scheduled_actions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False)
    step_id: Mapped[str] = mapped_column(String(64), ForeignKey("outreach_step_templates.id"), nullable=False)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), default=ScheduledActionType.SEND_MESSAGE.value)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default=ScheduledActionStatus.PENDING.value)

    email_sender_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("email_senders.id"), nullable=True)
    dispatch_correlation_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    conversation: Mapped["ConversationRow"] = relationship(back_populates="scheduled_actions")
    step: Mapped["StepTemplateRow"] = relationship()
    email_sender: Mapped[Optional["EmailSenderRow"]] = relationship()

    __table_args__ = (
        Index("ix_scheduled_actions_status_due", "status", "scheduled_at"),
        Index("ix_scheduled_actions_status_updated", "status", "updated_at"),
        Index("ix_scheduled_actions_conversation", "conversation_id"),
    )
