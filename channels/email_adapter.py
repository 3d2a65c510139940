"""
Email Channel — SendGrid v3 Mail Send over httpx.

Provides:
- Plain-text send through POST /v3/mail/send
- Per-sender API keys (an EmailSender's own key beats the configured default)
- Connection-level retries via tenacity; HTTP errors are reported, not retried
- Message id extraction from the X-Message-Id response header

API Docs: https://www.twilio.com/docs/sendgrid/api-reference/mail-send/mail-send
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import DeliveryChannel, DeliveryError
from models.schemas import (
    DeliveryResult, Recipient, RenderedContent, ScheduledActionChannel, SenderIdentity,
)

logger = structlog.get_logger()


class SendGridEmailChannel(DeliveryChannel):
    """SendGrid REST client for outbound outreach email."""

    channel = ScheduledActionChannel.EMAIL
    provider = "sendgrid"

    BASE_URL = "https://api.sendgrid.com"

    def __init__(
        self,
        api_key: str = "",
        default_from_email: str = "",
        base_url: str = BASE_URL,
        timeout_seconds: float = 30.0,
    ):
        super().__init__()
        self.api_key = api_key
        self.default_from_email = default_from_email
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
            )
        return self._client

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, api_key: str, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(
            "/v3/mail/send",
            json=payload,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    def build_payload(
        self, recipient: Recipient, content: RenderedContent, sender: Optional[SenderIdentity],
    ) -> dict[str, Any]:
        from_email = sender.from_email if sender else self.default_from_email
        from_block: dict[str, str] = {"email": from_email}
        if sender and sender.from_name:
            from_block["name"] = sender.from_name

        to_block: dict[str, str] = {"email": recipient.email}
        if recipient.name:
            to_block["name"] = recipient.name

        return {
            "personalizations": [{"to": [to_block]}],
            "from": from_block,
            "subject": content.subject or "",
            "content": [{"type": "text/plain", "value": content.body}],
        }

    async def _do_send(
        self, recipient: Recipient, content: RenderedContent, sender: Optional[SenderIdentity],
    ) -> DeliveryResult:
        if not recipient.email:
            return DeliveryResult(success=False, error="No email address")

        api_key = (sender.api_key if sender and sender.api_key else "") or self.api_key
        if not api_key:
            raise DeliveryError("No SendGrid API key configured", self.channel.value)

        payload = self.build_payload(recipient, content, sender)
        if not payload["from"]["email"]:
            raise DeliveryError("No sender address available", self.channel.value)

        try:
            resp = await self._post(api_key, payload)
        except httpx.TransportError as e:
            raise DeliveryError(f"SendGrid unreachable: {e}", self.channel.value, retryable=True) from e

        if resp.status_code >= 400:
            logger.error("sendgrid_api_error",
                         status=resp.status_code,
                         body=resp.text[:500],
                         to=recipient.email)
            return DeliveryResult(
                success=False,
                error=f"SendGrid returned {resp.status_code}",
                metadata={"status_code": resp.status_code},
            )

        return DeliveryResult(
            success=True,
            provider_message_id=resp.headers.get("X-Message-Id", ""),
            metadata={"status_code": resp.status_code, "to": recipient.email},
        )

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
