"""
ActionStore — the durable table of ScheduledAction rows.

The store is the single source of truth for what must happen and when.
Every status write is guarded by the state machine in models.schemas: an
UPDATE only touches rows whose current status may legally move to the target,
so concurrent writers (scheduler, workers, reclaimer, cancellation) can never
move an action backwards by accident.

Portable across PostgreSQL, MySQL and SQLite; no dialect-specific SQL.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

from sqlalchemy import select, update, delete, func, and_, or_
from sqlalchemy.orm import selectinload

from database.models import (
    ScheduledActionRow, ConversationRow, PersonRow,
)
from database.session import Database
from models.schemas import (
    ScheduledActionStatus, ScheduledActionType,
    TERMINAL_ACTION_STATUSES, OUTSTANDING_ACTION_STATUSES, sources_for,
)

logger = structlog.get_logger()

# async fn(claimed_action_ids) → {action_id: job_id}
EnqueueFn = Callable[[list[str]], Awaitable[dict[str, str]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _values(statuses: Iterable[ScheduledActionStatus]) -> list[str]:
    return [s.value for s in statuses]


class ActionStore:
    """Queries and guarded state transitions for scheduled actions."""

    def __init__(self, db: Database):
        self.db = db

    # ── Discovery ──────────────────────────────────────────

    async def find_due(self, now: datetime = None, limit: int = None) -> list[ScheduledActionRow]:
        """PENDING actions whose scheduled_at has passed, with their tenant loaded."""
        now = now or _utcnow()
        async with self.db.session() as s:
            stmt = (
                select(ScheduledActionRow)
                .where(
                    ScheduledActionRow.status == ScheduledActionStatus.PENDING.value,
                    ScheduledActionRow.scheduled_at <= now,
                )
                .options(
                    selectinload(ScheduledActionRow.conversation)
                    .selectinload(ConversationRow.person)
                    .selectinload(PersonRow.organization)
                )
                .order_by(ScheduledActionRow.scheduled_at)
            )
            if limit:
                stmt = stmt.limit(limit)
            result = await s.execute(stmt)
            return list(result.scalars().all())

    async def find_stale_processing(self, threshold: datetime) -> list[ScheduledActionRow]:
        """PROCESSING actions not touched since `threshold`."""
        async with self.db.session() as s:
            stmt = select(ScheduledActionRow).where(
                ScheduledActionRow.status == ScheduledActionStatus.PROCESSING.value,
                ScheduledActionRow.updated_at <= threshold,
            )
            result = await s.execute(stmt)
            return list(result.scalars().all())

    # ── Claiming ───────────────────────────────────────────

    async def claim_and_enqueue(
        self, tenant_id: str, action_ids: list[str], enqueue: EnqueueFn,
    ) -> list[str]:
        """
        Atomically flip PENDING rows to PROCESSING, enqueue them and persist
        the job ids, all inside one transaction.

        Only rows still PENDING at claim time are enqueued; the others were
        moved by someone else (e.g. cancelled) since discovery. Any exception
        rolls the transaction back and propagates; rows already pushed to the
        external queue are not covered by that rollback, so callers must
        follow up with reset_to_pending().

        Returns the ids that were claimed.
        """
        if not action_ids:
            return []

        async with self.db.session() as s:
            stmt = (
                select(ScheduledActionRow.id)
                .where(
                    ScheduledActionRow.id.in_(action_ids),
                    ScheduledActionRow.status == ScheduledActionStatus.PENDING.value,
                )
                .with_for_update(skip_locked=True)
            )
            claimed = list((await s.execute(stmt)).scalars().all())
            if not claimed:
                return []

            now = _utcnow()
            await s.execute(
                update(ScheduledActionRow)
                .where(
                    ScheduledActionRow.id.in_(claimed),
                    ScheduledActionRow.status == ScheduledActionStatus.PENDING.value,
                )
                .values(status=ScheduledActionStatus.PROCESSING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )

            job_ids = await enqueue(claimed)

            for action_id, job_id in job_ids.items():
                await s.execute(
                    update(ScheduledActionRow)
                    .where(ScheduledActionRow.id == action_id)
                    .values(dispatch_correlation_id=job_id, updated_at=now)
                    .execution_options(synchronize_session=False)
                )

            logger.info("actions_claimed",
                        tenant_id=tenant_id,
                        claimed=len(claimed),
                        enqueued=len(job_ids))
            return claimed

    async def reset_to_pending(self, action_ids: list[str]) -> int:
        """PROCESSING → PENDING with the correlation id cleared."""
        if not action_ids:
            return 0
        async with self.db.session() as s:
            result = await s.execute(
                update(ScheduledActionRow)
                .where(
                    ScheduledActionRow.id.in_(action_ids),
                    ScheduledActionRow.status == ScheduledActionStatus.PROCESSING.value,
                )
                .values(
                    status=ScheduledActionStatus.PENDING.value,
                    dispatch_correlation_id=None,
                    updated_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    async def reclaim_stale(self, threshold: datetime) -> list[str]:
        """
        Reset every PROCESSING action untouched since `threshold`.

        Returns only the ids actually reset; a row that finished or was
        started between discovery and the write is left alone.
        """
        stale = await self.find_stale_processing(threshold)
        if not stale:
            return []
        reset = []
        now = _utcnow()
        async with self.db.session() as s:
            for action in stale:
                result = await s.execute(
                    update(ScheduledActionRow)
                    .where(
                        ScheduledActionRow.id == action.id,
                        ScheduledActionRow.status == ScheduledActionStatus.PROCESSING.value,
                        ScheduledActionRow.updated_at <= threshold,
                    )
                    .values(
                        status=ScheduledActionStatus.PENDING.value,
                        dispatch_correlation_id=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount:
                    reset.append(action.id)
        return reset

    async def mark_started(self, action_id: str) -> bool:
        """Touch updated_at on a PROCESSING action whose job is starting now."""
        async with self.db.session() as s:
            result = await s.execute(
                update(ScheduledActionRow)
                .where(
                    ScheduledActionRow.id == action_id,
                    ScheduledActionRow.status == ScheduledActionStatus.PROCESSING.value,
                )
                .values(updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    # ── Status writes ──────────────────────────────────────

    async def update_status(
        self, action_id: str, status: ScheduledActionStatus, **fields: Any,
    ) -> bool:
        """
        Guarded transition: applied only if the current status may move to
        `status`. Returns False when the row is missing or the move is illegal.
        """
        allowed = _values(sources_for(status))
        async with self.db.session() as s:
            result = await s.execute(
                update(ScheduledActionRow)
                .where(
                    ScheduledActionRow.id == action_id,
                    ScheduledActionRow.status.in_(allowed),
                )
                .values(status=status.value, updated_at=_utcnow(), **fields)
                .execution_options(synchronize_session=False)
            )
            applied = bool(result.rowcount)

        if not applied:
            logger.info("action_transition_rejected",
                        action_id=action_id, target=status.value)
        return applied

    async def cancel_action(self, action_id: str) -> bool:
        """Any non-terminal status → CANCELLED."""
        return await self.update_status(action_id, ScheduledActionStatus.CANCELLED)

    async def cancel_pending_for_conversation(self, conversation_id: str) -> int:
        """Cancel the conversation's PENDING action(s); PROCESSING ones are left to the guard."""
        async with self.db.session() as s:
            result = await s.execute(
                update(ScheduledActionRow)
                .where(
                    ScheduledActionRow.conversation_id == conversation_id,
                    ScheduledActionRow.status == ScheduledActionStatus.PENDING.value,
                )
                .values(status=ScheduledActionStatus.CANCELLED.value, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    # ── Reads ──────────────────────────────────────────────

    async def get_action(self, action_id: str) -> Optional[ScheduledActionRow]:
        async with self.db.session() as s:
            return await s.get(ScheduledActionRow, action_id)

    async def load_for_processing(self, action_id: str) -> Optional[ScheduledActionRow]:
        """Load an action with everything the processor needs to act on it."""
        async with self.db.session() as s:
            stmt = (
                select(ScheduledActionRow)
                .where(ScheduledActionRow.id == action_id)
                .options(
                    selectinload(ScheduledActionRow.conversation)
                    .selectinload(ConversationRow.person)
                    .selectinload(PersonRow.organization),
                    selectinload(ScheduledActionRow.conversation)
                    .selectinload(ConversationRow.sequence),
                    selectinload(ScheduledActionRow.step),
                    selectinload(ScheduledActionRow.email_sender),
                )
            )
            result = await s.execute(stmt)
            return result.scalar_one_or_none()

    async def list_for_conversation(self, conversation_id: str) -> list[ScheduledActionRow]:
        async with self.db.session() as s:
            stmt = (
                select(ScheduledActionRow)
                .where(ScheduledActionRow.conversation_id == conversation_id)
                .order_by(ScheduledActionRow.created_at)
            )
            result = await s.execute(stmt)
            return list(result.scalars().all())

    async def count_daily_load_by_sender(
        self, sender_ids: list[str], day_start: datetime, day_end: datetime,
    ) -> dict[str, int]:
        """
        Actions per sender that use up the day's allowance: SENT since
        `day_start`, plus PENDING/PROCESSING actions due before `day_end`
        (overdue ones included).
        """
        if not sender_ids:
            return {}
        async with self.db.session() as s:
            stmt = (
                select(ScheduledActionRow.email_sender_id, func.count())
                .where(
                    ScheduledActionRow.email_sender_id.in_(sender_ids),
                    or_(
                        and_(ScheduledActionRow.status == ScheduledActionStatus.SENT.value,
                             ScheduledActionRow.updated_at >= day_start),
                        and_(ScheduledActionRow.status.in_(_values(OUTSTANDING_ACTION_STATUSES)),
                             ScheduledActionRow.scheduled_at < day_end),
                    ),
                )
                .group_by(ScheduledActionRow.email_sender_id)
            )
            rows = (await s.execute(stmt)).all()
            return {sender_id: count for sender_id, count in rows}

    # ── Creation / retention ───────────────────────────────

    async def create_action(
        self,
        conversation_id: str,
        step_id: str,
        channel: str,
        scheduled_at: datetime,
        email_sender_id: str = None,
        action_type: ScheduledActionType = ScheduledActionType.SEND_MESSAGE,
    ) -> ScheduledActionRow:
        async with self.db.session() as s:
            row = ScheduledActionRow(
                conversation_id=conversation_id,
                step_id=step_id,
                channel=channel,
                action_type=action_type.value,
                scheduled_at=scheduled_at,
                status=ScheduledActionStatus.PENDING.value,
                email_sender_id=email_sender_id,
            )
            s.add(row)
            await s.flush()
            logger.info("action_created",
                        action_id=row.id,
                        conversation_id=conversation_id,
                        step_id=step_id,
                        scheduled_at=scheduled_at.isoformat())
            return row

    async def purge_terminal(self, older_than: datetime) -> int:
        """Retention: delete terminal rows last touched before `older_than`."""
        async with self.db.session() as s:
            result = await s.execute(
                delete(ScheduledActionRow)
                .where(
                    ScheduledActionRow.status.in_(_values(TERMINAL_ACTION_STATUSES)),
                    ScheduledActionRow.updated_at < older_than,
                )
                .execution_options(synchronize_session=False)
            )
            purged = result.rowcount or 0
        if purged:
            logger.info("terminal_actions_purged", count=purged, older_than=older_than.isoformat())
        return purged
