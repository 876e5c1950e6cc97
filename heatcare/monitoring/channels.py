"""
Channel Abstractions — outbound notification dispatch.

The controller never talks to a messaging provider directly.  It calls
``DispatcherRegistry.send()``, which routes to the ChannelDispatcher
registered for the patient's channel.  Adding a channel is:
  1. Implement a ChannelDispatcher subclass
  2. Register it in setup.py
Delivery retries beyond the single registry retry are the dispatcher's
own concern, never the scheduler's.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("monitoring.channels")


class OutboundMessage(BaseModel):
    """A message the scheduler wants delivered to a patient."""

    recipient: str          # patient id
    channel: str            # Must match a registered ChannelDispatcher.channel_name
    message: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    # e.g. {"phone": "+15551234567", "track": "symptom", "sequence_number": 2}


class DeliveryResult(BaseModel):
    """Outcome of a single message delivery attempt."""

    success: bool
    channel: str
    recipient: str
    error: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ChannelDispatcher(ABC):
    """Abstract outbound channel."""

    channel_name: str = ""  # overridden by subclasses

    @abstractmethod
    async def send(self, message: OutboundMessage) -> DeliveryResult:
        """Deliver a single message. Must not raise; return a failed DeliveryResult instead."""


class DispatcherRegistry:
    """
    Registry of active ChannelDispatchers — the scheduler's notification
    dispatcher.
    """

    def __init__(self, default_channel: str = "whatsapp", retry_delay: float = 0.5) -> None:
        self._dispatchers: dict[str, ChannelDispatcher] = {}
        self._default_channel = default_channel
        self._retry_delay = retry_delay

    def register(self, dispatcher: ChannelDispatcher) -> None:
        name = dispatcher.channel_name
        self._dispatchers[name] = dispatcher
        logger.info("Registered channel dispatcher: %s", name)

    def unregister(self, channel_name: str) -> None:
        self._dispatchers.pop(channel_name, None)

    def get(self, channel_name: str) -> ChannelDispatcher | None:
        return self._dispatchers.get(channel_name)

    @property
    def registered_channels(self) -> list[str]:
        return list(self._dispatchers.keys())

    @property
    def default_channel(self) -> str:
        return self._default_channel

    async def send(
        self,
        patient_id: str,
        message: str,
        *,
        channel: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DeliveryResult:
        """Deliver a rendered message to a patient on their channel."""
        outbound = OutboundMessage(
            recipient=patient_id,
            channel=channel or self._default_channel,
            message=message,
            metadata={"patient_id": patient_id, **(metadata or {})},
        )
        return await self.dispatch(outbound)

    async def dispatch(self, message: OutboundMessage) -> DeliveryResult:
        """Route one message to the correct dispatcher (with single retry)."""
        dispatcher = self.get(message.channel)
        if dispatcher is None:
            logger.warning(
                "No dispatcher for channel '%s' — message to %s dropped",
                message.channel, message.recipient,
            )
            return DeliveryResult(
                success=False,
                channel=message.channel,
                recipient=message.recipient,
                error=f"No dispatcher registered for channel '{message.channel}'",
            )
        for attempt in range(2):
            try:
                result = await dispatcher.send(message)
                if result.success or attempt == 1:
                    return result
                logger.warning(
                    "Dispatch failed for %s on %s (attempt 1) — retrying",
                    message.recipient, message.channel,
                )
                await asyncio.sleep(self._retry_delay)
            except Exception as exc:
                if attempt == 0:
                    logger.warning(
                        "Dispatcher '%s' error (attempt 1): %s — retrying",
                        message.channel, exc,
                    )
                    await asyncio.sleep(self._retry_delay)
                else:
                    logger.error(
                        "Dispatcher '%s' error after retry: %s",
                        message.channel, exc,
                    )
                    return DeliveryResult(
                        success=False,
                        channel=message.channel,
                        recipient=message.recipient,
                        error=str(exc),
                    )
        return DeliveryResult(
            success=False,
            channel=message.channel,
            recipient=message.recipient,
            error="Dispatch failed after retry",
        )
