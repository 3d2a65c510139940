"""Delivery channels and step content rendering."""
from channels.base import (
    ChannelError,
    ChannelMetrics,
    ChannelRegistry,
    DeliveryChannel,
    DeliveryError,
    DeliveryTimeoutError,
    UnsupportedChannelError,
)
from channels.dry_run import DryRunChannel
from channels.email_adapter import SendGridEmailChannel
from channels.factory import create_channel_registry
from channels.renderer import ContentRenderer, PlaceholderRenderer, build_render_context

__all__ = [
    "ChannelError", "ChannelMetrics", "ChannelRegistry", "DeliveryChannel",
    "DeliveryError", "DeliveryTimeoutError", "UnsupportedChannelError",
    "DryRunChannel", "SendGridEmailChannel", "create_channel_registry",
    "ContentRenderer", "PlaceholderRenderer", "build_render_context",
]
