"""
Check-in Job — the payload carried by every scheduled monitoring job.

A CheckinJob is serialised into the job store payload when enqueued and
rebuilt from it when the job fires.  Its identity is (patient_id, track);
the job store id is derived from that identity by the track registry.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from heatcare.monitoring.tracks import (
    JobKind,
    MonitoringTrack,
    emergency_follow_up_job_id,
    get_track_spec,
)


class ChainState(str, Enum):
    """Derived from the job store, never stored on its own."""

    ACTIVE = "active"
    IDLE = "idle"
    TERMINATED = "terminated"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CheckinJob(BaseModel):
    patient_id: str
    track: MonitoringTrack
    escalation_level: str
    kind: JobKind = JobKind.CHECKIN
    sequence_number: int = 1
    total_checks: Optional[int] = None
    interval_minutes: int
    due_at: datetime
    started_at: datetime = Field(default_factory=_now)
    context: dict[str, Any] = Field(default_factory=dict)

    model_config = {"use_enum_values": False}

    @property
    def job_id(self) -> str:
        if self.kind == JobKind.EMERGENCY_FOLLOW_UP:
            return emergency_follow_up_job_id(self.patient_id)
        return get_track_spec(self.track).job_id(self.patient_id)

    @property
    def variant(self) -> str:
        """Key used to pick the fire handler."""
        if self.kind == JobKind.EMERGENCY_FOLLOW_UP:
            return JobKind.EMERGENCY_FOLLOW_UP.value
        return self.track.value

    @property
    def bounded(self) -> bool:
        return self.total_checks is not None

    @property
    def exhausted(self) -> bool:
        return self.bounded and self.sequence_number >= self.total_checks

    def successor(self, due_at: datetime) -> CheckinJob:
        """Next job in the same chain, with the same track, level and context."""
        return self.model_copy(
            update={"sequence_number": self.sequence_number + 1, "due_at": due_at},
            deep=True,
        )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CheckinJob:
        return cls.model_validate(payload)
