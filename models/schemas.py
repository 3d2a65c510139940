"""
Core data models for the outreach scheduling engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ScheduledActionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ScheduledActionChannel(str, Enum):
    EMAIL = "email"
    SOCIAL = "social"


class ScheduledActionType(str, Enum):
    SEND_MESSAGE = "send_message"


class AutomationStatus(str, Enum):
    ACTIVE = "active"
    NEEDS_REVIEW = "needs_review"
    COMPLETED = "completed"


class ConversationStage(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    ENGAGED = "engaged"
    RESPONDED = "responded"
    QUALIFIED = "qualified"
    MEETING_BOOKED = "meeting_booked"
    UNINTERESTED = "uninterested"
    UNRESPONSIVE = "unresponsive"


class MessageSender(str, Enum):
    AGENT = "agent"
    PERSON = "person"


class ProcessStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  ScheduledAction state machine
# ──────────────────────────────────────────────────────────────

TERMINAL_ACTION_STATUSES = frozenset({
    ScheduledActionStatus.SENT,
    ScheduledActionStatus.FAILED,
    ScheduledActionStatus.CANCELLED,
})

OUTSTANDING_ACTION_STATUSES = frozenset({
    ScheduledActionStatus.PENDING,
    ScheduledActionStatus.PROCESSING,
})

# PROCESSING → PENDING is the reclaim / failed-enqueue edge.
ACTION_TRANSITIONS: dict[ScheduledActionStatus, frozenset[ScheduledActionStatus]] = {
    ScheduledActionStatus.PENDING: frozenset({
        ScheduledActionStatus.PROCESSING,
        ScheduledActionStatus.CANCELLED,
    }),
    ScheduledActionStatus.PROCESSING: frozenset({
        ScheduledActionStatus.SENT,
        ScheduledActionStatus.FAILED,
        ScheduledActionStatus.PENDING,
        ScheduledActionStatus.CANCELLED,
    }),
    ScheduledActionStatus.SENT: frozenset(),
    ScheduledActionStatus.FAILED: frozenset(),
    ScheduledActionStatus.CANCELLED: frozenset(),
}


def can_transition(current: ScheduledActionStatus | str, target: ScheduledActionStatus | str) -> bool:
    """True if an action may move from `current` to `target`."""
    current = ScheduledActionStatus(current)
    target = ScheduledActionStatus(target)
    return target in ACTION_TRANSITIONS[current]


def sources_for(target: ScheduledActionStatus) -> list[ScheduledActionStatus]:
    """All statuses from which `target` is reachable in one step."""
    return [s for s, allowed in ACTION_TRANSITIONS.items() if target in allowed]


# ──────────────────────────────────────────────────────────────
#  Capability payloads
# ──────────────────────────────────────────────────────────────

class Recipient(BaseModel):
    """The person a step is delivered to."""
    person_id: str
    email: str = ""
    name: str = ""


class SenderIdentity(BaseModel):
    """Outbound identity used for a delivery."""
    id: str
    from_email: str
    from_name: str = ""
    api_key: str = ""


class RenderedContent(BaseModel):
    subject: Optional[str] = None
    body: str


class DeliveryResult(BaseModel):
    success: bool
    provider_message_id: str = ""
    error: str = ""
    metadata: dict[str, Any] = {}


class ProcessResult(BaseModel):
    """What a worker reports back for one job."""
    status: ProcessStatus
    scheduled_action_id: str
    reason: str = ""


class QueueMetrics(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False
