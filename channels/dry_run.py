"""
Dry-run channel — logs what would be sent and reports success.

For development and staging: the full scheduling pipeline runs, sequences
advance, and nothing leaves the process.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Optional

from channels.base import DeliveryChannel
from models.schemas import (
    DeliveryResult, Recipient, RenderedContent, ScheduledActionChannel, SenderIdentity,
)

logger = structlog.get_logger()


class DryRunChannel(DeliveryChannel):

    provider = "dry_run"

    def __init__(self, channel: ScheduledActionChannel = ScheduledActionChannel.EMAIL):
        self.channel = channel
        super().__init__()
        self.sent: list[dict] = []

    async def _do_send(
        self, recipient: Recipient, content: RenderedContent, sender: Optional[SenderIdentity],
    ) -> DeliveryResult:
        message_id = f"dry-run-{uuid.uuid4().hex}"
        self.sent.append({
            "to": recipient.email or recipient.person_id,
            "from": sender.from_email if sender else "",
            "subject": content.subject,
            "body": content.body,
            "message_id": message_id,
        })
        del self.sent[:-100]
        logger.info("dry_run_delivery",
                    channel=self.channel.value,
                    to=recipient.email or recipient.person_id,
                    sender=sender.from_email if sender else "",
                    subject=content.subject,
                    body_chars=len(content.body))
        return DeliveryResult(success=True, provider_message_id=message_id)
