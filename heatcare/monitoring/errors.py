"""
Error types raised by the monitoring scheduler.

An unclassified patient reply is not an exception; it is the
PollResponse.UNCLASSIFIED outcome of the response interpreter.
"""

from __future__ import annotations

from typing import Any


class MonitoringError(Exception):
    pass


class TransientStoreError(MonitoringError):
    """The job store is temporarily unreachable.  Nothing was mutated; retry."""
    pass


class DuplicateIdentityViolation(MonitoringError):
    """More than one pending job exists for an identity that must be unique."""

    def __init__(self, job_id: str, handles: list[Any]) -> None:
        self.job_id = job_id
        self.handles = handles
        super().__init__(
            f"{len(handles)} pending jobs found for identity {job_id}"
        )


class ChainBrokenError(MonitoringError):
    """A check-in was dispatched but its successor could not be enqueued."""

    def __init__(self, patient_id: str, job_id: str, cause: BaseException | None = None) -> None:
        self.patient_id = patient_id
        self.job_id = job_id
        self.cause = cause
        super().__init__(
            f"Monitoring chain {job_id} for patient {patient_id} stopped: {cause}"
        )
