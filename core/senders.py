"""
Sender allocation — picks the outbound identity for the next action.

The engine depends only on the SenderResolver protocol:
  - resolve_sender(tenant_id, channel) → EmailSenderRow | None

SqlSenderAllocator spreads volume across an organization's email senders.
A sender's daily load is its actions SENT since UTC midnight plus its
PENDING/PROCESSING actions due before the next midnight, so a batch of
freshly scheduled actions is spread out too. The least-loaded sender wins,
senders at their daily_limit are skipped, and ties go to the oldest sender.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, runtime_checkable

from database.action_store import ActionStore
from database.models import EmailSenderRow
from database.store import ConversationStore
from models.schemas import ScheduledActionChannel

logger = structlog.get_logger()


@runtime_checkable
class SenderResolver(Protocol):
    async def resolve_sender(
        self, tenant_id: str, channel: ScheduledActionChannel | str,
    ) -> Optional[EmailSenderRow]:
        ...


def start_of_utc_day(now: datetime = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class SqlSenderAllocator:

    def __init__(self, actions: ActionStore, conversations: ConversationStore):
        self.actions = actions
        self.conversations = conversations

    async def resolve_sender(
        self, tenant_id: str, channel: ScheduledActionChannel | str, now: datetime = None,
    ) -> Optional[EmailSenderRow]:
        if ScheduledActionChannel(channel) != ScheduledActionChannel.EMAIL:
            return None

        senders = await self.conversations.list_email_senders(tenant_id)
        if not senders:
            logger.warning("no_email_senders", tenant_id=tenant_id)
            return None

        day_start = start_of_utc_day(now)
        load = await self.actions.count_daily_load_by_sender(
            [s.id for s in senders], day_start, day_start + timedelta(days=1),
        )
        available = [s for s in senders if load.get(s.id, 0) < s.daily_limit]
        if not available:
            logger.warning("email_senders_at_daily_limit",
                           tenant_id=tenant_id, senders=len(senders))
            return None

        # min() keeps the first of equals, and senders arrive oldest first
        return min(available, key=lambda s: load.get(s.id, 0))
