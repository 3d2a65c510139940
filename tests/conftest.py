"""Shared test fixtures for the outreach engine."""
from __future__ import annotations

import pytest
import pytest_asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select

from channels.base import ChannelRegistry
from channels.dry_run import DryRunChannel
from config.settings import (
    DatabaseConfig, DeliveryConfig, QueueConfig, SchedulerConfig, Settings, WorkerConfig,
)
from core.processor import ActionProcessor
from core.senders import SqlSenderAllocator
from core.sequencing import SequenceService
from database.action_store import ActionStore
from database.models import (
    ConversationRow, EmailSenderRow, OrganizationRow, PersonRow,
    ScheduledActionRow, SequenceRow, StepTemplateRow,
)
from database.session import Database
from database.store import ConversationStore
from job_queue.message_queue import InMemoryQueueStore
from job_queue.queue_manager import QueueManager
from models.schemas import OUTSTANDING_ACTION_STATUSES, ScheduledActionStatus


# ──────────────────────────────────────────────────────────────
#  Seed data
# ──────────────────────────────────────────────────────────────

@dataclass
class Tenant:
    organization: OrganizationRow
    sender: Optional[EmailSenderRow]
    person: PersonRow
    sequence: SequenceRow
    steps: list[StepTemplateRow]
    conversation: ConversationRow

    @property
    def id(self) -> str:
        return self.organization.id


async def seed_tenant(
    db: Database,
    name: str = "Acme",
    step_offsets: tuple[int, ...] = (0, 3),
    channel: str = "email",
    with_sender: bool = True,
    daily_limit: int = 400,
) -> Tenant:
    """One organization with a sender, a person, a sequence and an ACTIVE conversation."""
    async with db.session() as s:
        org = OrganizationRow(name=name)
        s.add(org)
        await s.flush()

        sender = None
        if with_sender:
            sender = EmailSenderRow(
                organization_id=org.id,
                from_email=f"sales@{name.lower()}.test",
                from_name=f"{name} Sales",
                daily_limit=daily_limit,
            )
            s.add(sender)

        person = PersonRow(
            organization_id=org.id,
            first_name="Ada",
            last_name="Lovelace",
            email=f"ada@{name.lower()}-prospect.test",
            company=f"{name} Prospect",
        )
        sequence = SequenceRow(organization_id=org.id, name=f"{name} intro", objective="book_meeting")
        s.add_all([person, sequence])
        await s.flush()

        steps = [
            StepTemplateRow(
                sequence_id=sequence.id,
                step_number=i + 1,
                channel=channel,
                day_offset=offset,
                subject_template="Quick question, {{ person.first_name }}",
                body_template=f"Hi {{{{ person.first_name }}}}, note {i + 1} from {{{{ organization.name }}}}.",
            )
            for i, offset in enumerate(step_offsets)
        ]
        s.add_all(steps)
        await s.flush()

        conversation = ConversationRow(person_id=person.id, sequence_id=sequence.id)
        s.add(conversation)
        await s.flush()

    return Tenant(org, sender, person, sequence, steps, conversation)


async def add_action(
    db: Database,
    tenant: Tenant,
    step: StepTemplateRow = None,
    status: ScheduledActionStatus = ScheduledActionStatus.PENDING,
    scheduled_at: datetime = None,
    updated_at: datetime = None,
    correlation_id: str = None,
) -> ScheduledActionRow:
    step = step or tenant.steps[0]
    now = datetime.now(timezone.utc)
    async with db.session() as s:
        row = ScheduledActionRow(
            conversation_id=tenant.conversation.id,
            step_id=step.id,
            channel=step.channel,
            scheduled_at=scheduled_at or now,
            status=status.value,
            email_sender_id=tenant.sender.id if tenant.sender else None,
            dispatch_correlation_id=correlation_id,
            updated_at=updated_at or now,
        )
        s.add(row)
        await s.flush()
    return row


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


async def count_outstanding(db: Database, conversation_id: str) -> int:
    async with db.session() as s:
        stmt = select(func.count()).select_from(ScheduledActionRow).where(
            ScheduledActionRow.conversation_id == conversation_id,
            ScheduledActionRow.status.in_([status.value for status in OUTSTANDING_ACTION_STATUSES]),
        )
        return (await s.execute(stmt)).scalar_one()


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path}/outreach_test.db"


@pytest_asyncio.fixture
async def db(db_url):
    database = Database(DatabaseConfig(url=db_url))
    await database.init_db()
    yield database
    await database.close()


@pytest.fixture
def actions(db) -> ActionStore:
    return ActionStore(db)


@pytest.fixture
def conversations(db) -> ConversationStore:
    return ConversationStore(db)


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(backend="memory", backoff_delay_ms=10)


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(poll_timeout_s=0.05)


@pytest_asyncio.fixture
async def queue_manager(queue_config):
    manager = QueueManager(queue_config, InMemoryQueueStore())
    yield manager
    await manager.close()


@pytest.fixture
def dry_run_channel() -> DryRunChannel:
    return DryRunChannel()


@pytest.fixture
def channels(dry_run_channel) -> ChannelRegistry:
    registry = ChannelRegistry()
    registry.register(dry_run_channel)
    return registry


@pytest.fixture
def sequences(actions, conversations) -> SequenceService:
    return SequenceService(conversations, actions, SqlSenderAllocator(actions, conversations))


@pytest.fixture
def processor(actions, conversations, sequences, channels) -> ActionProcessor:
    return ActionProcessor(actions, conversations, sequences, channels,
                           delivery_timeout_s=2.0, claim_wait_s=0.2, claim_poll_s=0.02)


@pytest.fixture
def settings(db_url, queue_config, worker_config) -> Settings:
    return Settings(
        database=DatabaseConfig(url=db_url),
        queue=queue_config,
        worker=worker_config,
        scheduler=SchedulerConfig(enabled=False),
        delivery=DeliveryConfig(provider="dry_run"),
    )
