"""
In-Memory Dispatcher — records messages instead of sending them.

Used by tests and by local runs without a messaging provider.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from heatcare.monitoring.channels import (
    ChannelDispatcher,
    DeliveryResult,
    OutboundMessage,
)

logger = logging.getLogger("monitoring.dispatchers.memory")


class InMemoryDispatcher(ChannelDispatcher):
    """Stores messages per patient."""

    def __init__(self, channel_name: str = "memory") -> None:
        self.channel_name = channel_name
        # patient_id → list of OutboundMessages
        self._log: dict[str, list[OutboundMessage]] = defaultdict(list)

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        self._log[message.recipient].append(message)
        logger.debug("Stored message for %s", message.recipient)
        return DeliveryResult(
            success=True,
            channel=self.channel_name,
            recipient=message.recipient,
        )

    def get_messages(self, patient_id: str) -> list[OutboundMessage]:
        return list(self._log.get(patient_id, []))

    @property
    def total_sent(self) -> int:
        return sum(len(v) for v in self._log.values())

    def clear(self, patient_id: str | None = None) -> None:
        """Clear stored messages. If patient_id is None, clear everything."""
        if patient_id:
            self._log.pop(patient_id, None)
        else:
            self._log.clear()
