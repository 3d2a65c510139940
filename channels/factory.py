"""
Channel Factory — builds the ChannelRegistry from DeliveryConfig.

  provider: sendgrid → SendGridEmailChannel for EMAIL
  provider: dry_run  → DryRunChannel for EMAIL

SOCIAL is never registered; the processor fails those actions explicitly.
"""
from __future__ import annotations

import structlog

from channels.base import ChannelRegistry
from config.settings import DeliveryConfig

logger = structlog.get_logger()

SUPPORTED_PROVIDERS = ("sendgrid", "dry_run")


def create_channel_registry(config: DeliveryConfig) -> ChannelRegistry:
    """
    Raises:
        ValueError: If the configured provider is unknown.
    """
    registry = ChannelRegistry()

    if config.provider == "sendgrid":
        from channels.email_adapter import SendGridEmailChannel
        registry.register(SendGridEmailChannel(
            api_key=config.api_key,
            default_from_email=config.default_from_email,
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
        ))
    elif config.provider == "dry_run":
        from channels.dry_run import DryRunChannel
        registry.register(DryRunChannel())
    else:
        raise ValueError(
            f"Unsupported delivery provider: {config.provider}. "
            f"Supported: {', '.join(SUPPORTED_PROVIDERS)}"
        )

    logger.info("delivery_channels_registered",
                provider=config.provider,
                channels=[c.value for c in registry.get_available()])
    return registry
