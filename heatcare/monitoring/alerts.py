"""
Operational Alerts — surfaces scheduler failures that must not go unnoticed.

A broken chain means monitoring has silently stopped for a patient who may
still need it.  Every alert is logged at CRITICAL/WARNING, kept in a short
in-memory history for the status endpoint, and optionally sent to an ops
recipient through the dispatcher registry.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from heatcare.monitoring.channels import DispatcherRegistry
from heatcare.monitoring.errors import ChainBrokenError, DuplicateIdentityViolation

logger = logging.getLogger("monitoring.alerts")


class OperationalAlert(BaseModel):
    kind: str               # "chain_broken", "restore_failed", "duplicate_identity"
    patient_id: str = ""
    job_id: str = ""
    detail: str = ""
    raised_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OperationalAlerter:
    MAX_HISTORY = 100

    def __init__(
        self,
        dispatcher: DispatcherRegistry | None = None,
        ops_channel: str = "",
        ops_recipient: str = "",
    ) -> None:
        self._dispatcher = dispatcher
        self._ops_channel = ops_channel
        self._ops_recipient = ops_recipient
        self._history: deque[OperationalAlert] = deque(maxlen=self.MAX_HISTORY)

    @property
    def recent(self) -> list[OperationalAlert]:
        return list(self._history)

    async def chain_broken(self, error: ChainBrokenError) -> None:
        alert = OperationalAlert(
            kind="chain_broken",
            patient_id=error.patient_id,
            job_id=error.job_id,
            detail=str(error.cause),
        )
        self._history.append(alert)
        logger.critical(
            "MONITORING STOPPED for patient %s: successor of %s could not be scheduled (%s)",
            error.patient_id, error.job_id, error.cause,
        )
        await self._notify_ops(
            f"[HeatCare] Monitoring chain {error.job_id} broken for patient "
            f"{error.patient_id}: {error.cause}"
        )

    async def restore_failed(self, job_id: str, patient_id: str, cause: BaseException) -> None:
        """A failed replace could not put the previous job back: the identity is empty."""
        self._history.append(OperationalAlert(
            kind="restore_failed",
            patient_id=patient_id,
            job_id=job_id,
            detail=str(cause),
        ))
        logger.critical(
            "MONITORING STOPPED for patient %s: %s was lost and could not be restored (%s)",
            patient_id, job_id, cause,
        )
        await self._notify_ops(
            f"[HeatCare] Pending check-in {job_id} lost for patient {patient_id}: {cause}"
        )

    def integrity_warning(self, error: DuplicateIdentityViolation, patient_id: str = "") -> None:
        self._history.append(OperationalAlert(
            kind="duplicate_identity",
            patient_id=patient_id,
            job_id=error.job_id,
            detail=str(error),
        ))
        logger.warning("Identity integrity violation: %s — keeping newest", error)

    async def _notify_ops(self, text: str) -> None:
        if not (self._dispatcher and self._ops_channel and self._ops_recipient):
            return
        result = await self._dispatcher.send(
            "ops",
            text,
            channel=self._ops_channel,
            metadata={"phone": self._ops_recipient, "ops_alert": True},
        )
        if not result.success:
            logger.error("Ops alert delivery failed: %s", result.error)
