"""
Twilio WhatsApp Dispatcher — delivers check-ins via the Twilio Messages API.

Configuration (environment variables):
  TWILIO_ACCOUNT_SID    — Twilio account SID
  TWILIO_AUTH_TOKEN     — Twilio auth token
  TWILIO_WHATSAPP_FROM  — sender, e.g. "whatsapp:+14155238886"
  TWILIO_STATUS_CALLBACK_URL — optional delivery status webhook

Without credentials the dispatcher runs in stub mode: messages are logged
and reported as delivered.
"""

from __future__ import annotations

import asyncio
import logging
import os

from heatcare.monitoring.channels import (
    ChannelDispatcher,
    DeliveryResult,
    OutboundMessage,
)

logger = logging.getLogger("monitoring.dispatchers.twilio")

# WhatsApp body limit enforced by Twilio
MAX_BODY_LENGTH = 1600


def format_whatsapp_number(phone: str) -> str:
    phone = phone.strip()
    return phone if phone.startswith("whatsapp:") else f"whatsapp:{phone}"


class TwilioWhatsAppDispatcher(ChannelDispatcher):
    """Delivers messages via Twilio WhatsApp."""

    channel_name = "whatsapp"

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        status_callback: str | None = None,
    ) -> None:
        self._account_sid = account_sid or os.getenv("TWILIO_ACCOUNT_SID", "")
        self._auth_token = auth_token or os.getenv("TWILIO_AUTH_TOKEN", "")
        self._from_number = from_number or os.getenv("TWILIO_WHATSAPP_FROM", "")
        self._status_callback = status_callback or os.getenv("TWILIO_STATUS_CALLBACK_URL", "")
        self._client = None

    @property
    def stub_mode(self) -> bool:
        return not self._account_sid or not self._auth_token

    def _get_client(self):
        """Lazy-initialize the Twilio client."""
        if self._client is None:
            if self.stub_mode:
                logger.warning(
                    "Twilio credentials not set — WhatsApp dispatcher in stub mode"
                )
                return None
            from twilio.rest import Client

            self._client = Client(self._account_sid, self._auth_token)
            logger.info("Twilio client initialized")
        return self._client

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        to_number = message.metadata.get("phone", "")

        if not to_number:
            logger.warning("Twilio dispatch: no 'phone' in metadata")
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=message.recipient,
                error="No recipient phone number",
            )

        body = message.message
        if len(body) > MAX_BODY_LENGTH:
            body = body[:MAX_BODY_LENGTH - 3] + "..."

        try:
            client = self._get_client()
        except Exception as exc:
            logger.error("Failed to initialize Twilio client: %s", exc)
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=message.recipient,
                error=str(exc),
            )

        if client is None:
            logger.info(
                "Twilio stub: WhatsApp → %s: %s",
                to_number, body[:80],
            )
            return DeliveryResult(
                success=True,
                channel=self.channel_name,
                recipient=message.recipient,
                error="stub_mode",
            )

        options = {
            "body": body,
            "from_": format_whatsapp_number(self._from_number),
            "to": format_whatsapp_number(to_number),
        }
        if self._status_callback:
            options["status_callback"] = self._status_callback

        try:
            # twilio-python is synchronous
            sent = await asyncio.to_thread(client.messages.create, **options)
            logger.info("Twilio WhatsApp sent: SID=%s → %s", sent.sid, to_number)
            return DeliveryResult(
                success=True,
                channel=self.channel_name,
                recipient=message.recipient,
            )
        except Exception as exc:
            logger.error("Twilio WhatsApp send error: %s", exc)
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=message.recipient,
                error=str(exc),
            )
