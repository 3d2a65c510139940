"""
Delivery Channels — base infrastructure shared by every outbound channel.

Provides:
- ChannelError: structured error hierarchy
- ChannelMetrics: per-channel send/fail/latency tracking
- DeliveryChannel: abstract base wrapping every send with metrics and logging
- ChannelRegistry: channel lookup, delivery with timeout, health checks
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any, Optional

from models.schemas import (
    DeliveryResult, Recipient, RenderedContent, ScheduledActionChannel, SenderIdentity,
)

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class DeliveryError(ChannelError):
    """The provider refused or could not accept the message."""


class DeliveryTimeoutError(ChannelError):
    def __init__(self, channel: str = "", timeout_s: float = 0.0):
        super().__init__(f"Delivery on {channel} timed out after {timeout_s}s", channel, retryable=True)


class UnsupportedChannelError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"No delivery channel registered for {channel!r}", channel)


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure and latency metrics."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY CHANNEL: Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliveryChannel(abc.ABC):
    """
    Base class for all delivery channels.

    Subclasses implement _do_send. The base class wraps every send with
    metrics and logging; exceptions from the transport propagate unchanged.
    """

    channel: ScheduledActionChannel
    provider: str = ""

    def __init__(self):
        self.metrics = ChannelMetrics(self.channel.value)

    @abc.abstractmethod
    async def _do_send(
        self, recipient: Recipient, content: RenderedContent, sender: Optional[SenderIdentity],
    ) -> DeliveryResult:
        ...

    async def send(
        self, recipient: Recipient, content: RenderedContent, sender: Optional[SenderIdentity] = None,
    ) -> DeliveryResult:
        start = time.monotonic()
        try:
            result = await self._do_send(recipient, content, sender)
        except Exception as e:
            self.metrics.record_failure(str(e))
            raise

        latency = (time.monotonic() - start) * 1000
        if result.success:
            self.metrics.record_send(latency)
            logger.info("message_delivered",
                        channel=self.channel.value,
                        provider=self.provider,
                        person_id=recipient.person_id,
                        provider_message_id=result.provider_message_id,
                        latency_ms=round(latency, 1))
        else:
            self.metrics.record_failure(result.error)
            logger.warning("message_delivery_failed",
                           channel=self.channel.value,
                           provider=self.provider,
                           person_id=recipient.person_id,
                           error=result.error)
        return result

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "provider": self.provider,
            "metrics": self.metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._channels: dict[ScheduledActionChannel, DeliveryChannel] = {}

    def register(self, channel: DeliveryChannel):
        self._channels[channel.channel] = channel

    def get(self, channel: ScheduledActionChannel | str) -> Optional[DeliveryChannel]:
        try:
            return self._channels.get(ScheduledActionChannel(channel))
        except ValueError:
            return None

    def get_available(self) -> list[ScheduledActionChannel]:
        return list(self._channels.keys())

    async def deliver(
        self,
        channel: ScheduledActionChannel | str,
        recipient: Recipient,
        content: RenderedContent,
        sender: Optional[SenderIdentity] = None,
        timeout_s: float = 30.0,
    ) -> DeliveryResult:
        """
        Send through the registered channel, bounded by `timeout_s`.

        Raises UnsupportedChannelError when nothing is registered for the
        channel and DeliveryTimeoutError when the send overruns.
        """
        adapter = self.get(channel)
        if adapter is None:
            raise UnsupportedChannelError(str(getattr(channel, "value", channel)))
        try:
            return await asyncio.wait_for(adapter.send(recipient, content, sender), timeout=timeout_s)
        except asyncio.TimeoutError:
            adapter.metrics.record_failure("timeout")
            raise DeliveryTimeoutError(adapter.channel.value, timeout_s)

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await c.health_check() for ch, c in self._channels.items()}

    async def shutdown_all(self):
        for ch, c in self._channels.items():
            try:
                await c.shutdown()
            except Exception as e:
                logger.error("channel_shutdown_failed", channel=ch.value, error=str(e))
