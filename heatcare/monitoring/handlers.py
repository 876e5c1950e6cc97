"""
Fire Handlers — one handler per job variant.

When a check-in job fires, the controller looks up the handler for the
job's variant (daily / symptom / weather-alert / emergency_followup),
renders the message through it, dispatches, and then asks the handler
what happens next:

  RESCHEDULE     enqueue the successor (sequence_number + 1)
  NATIVE_REPEAT  nothing to do, the job store repeats the job itself
  TERMINATE      the chain ends here

The message copy below is a plain default; production wording comes from
the surrounding application through the controller's ``renderer`` hook.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

from heatcare.monitoring.collaborators import PatientRecord
from heatcare.monitoring.jobs import CheckinJob
from heatcare.monitoring.policy import starts_chain
from heatcare.monitoring.tracks import JobKind, MonitoringTrack


class ContinuationDecision(str, Enum):
    RESCHEDULE = "reschedule"
    NATIVE_REPEAT = "native_repeat"
    TERMINATE = "terminate"
    SUPERSEDED = "superseded"


POLL_OPTIONS = (
    "Please reply:\n"
    "1 - Much better\n"
    "2 - Slightly better\n"
    "3 - About the same\n"
    "4 - Getting worse\n"
    "5 - Need help now"
)

EMERGENCY_MESSAGE = (
    "EMERGENCY: Call 911 immediately. This requires urgent medical care. "
    "While you wait, move somewhere cool, loosen clothing and sip water."
)

SYMPTOM_HEADERS = {
    "emergency": "EMERGENCY MONITORING",
    "critical": "CRITICAL CHECK",
    "high": "HIGH RISK CHECK",
    "medium": "HEALTH CHECK",
    "low": "ROUTINE CHECK",
}


def _greeting(patient: PatientRecord | None) -> str:
    name = patient.first_name if patient and patient.first_name else "there"
    return f"Hi {name}!"


def _progress(job: CheckinJob) -> str:
    if job.bounded:
        return f"{job.sequence_number}/{job.total_checks}"
    return f"#{job.sequence_number}"


class FireHandler(ABC):
    """Common contract for every job variant."""

    variant: str = ""

    @abstractmethod
    def render(self, job: CheckinJob, patient: PatientRecord | None) -> str:
        """Default message for this occurrence."""

    def decide(self, job: CheckinJob) -> ContinuationDecision:
        """What happens after this occurrence has been dispatched."""
        if job.exhausted:
            return ContinuationDecision.TERMINATE
        return ContinuationDecision.RESCHEDULE


class DailyCheckinHandler(FireHandler):
    variant = MonitoringTrack.DAILY.value

    def render(self, job: CheckinJob, patient: PatientRecord | None) -> str:
        return (
            f"Good morning! {_greeting(patient)} This is your daily health check.\n\n"
            f"How are you feeling today?\n{POLL_OPTIONS}"
        )

    def decide(self, job: CheckinJob) -> ContinuationDecision:
        return ContinuationDecision.NATIVE_REPEAT


class SymptomCheckinHandler(FireHandler):
    variant = MonitoringTrack.SYMPTOM.value

    def render(self, job: CheckinJob, patient: PatientRecord | None) -> str:
        header = SYMPTOM_HEADERS.get(job.escalation_level, "HEALTH CHECK")
        text = f"{header} {_progress(job)}\n\n{_greeting(patient)} How are your symptoms now?\n{POLL_OPTIONS}"
        if job.escalation_level in ("emergency", "critical"):
            text += "\n\nCall 911 if symptoms are severe."
        return text


class WeatherAlertCheckinHandler(FireHandler):
    variant = MonitoringTrack.WEATHER_ALERT.value

    def render(self, job: CheckinJob, patient: PatientRecord | None) -> str:
        return (
            f"HEAT ALERT CHECK-IN {_progress(job)}\n\n"
            f"{_greeting(patient)} Extreme heat is still affecting your area. "
            f"Stay in a cool place and keep drinking water.\n{POLL_OPTIONS}"
        )

    def decide(self, job: CheckinJob) -> ContinuationDecision:
        if not starts_chain(MonitoringTrack.WEATHER_ALERT, job.escalation_level):
            return ContinuationDecision.TERMINATE
        return super().decide(job)


class EmergencyFollowUpHandler(FireHandler):
    variant = JobKind.EMERGENCY_FOLLOW_UP.value

    def render(self, job: CheckinJob, patient: PatientRecord | None) -> str:
        return (
            "Emergency follow-up: did you call 911?\n"
            "Reply 'called', 'need help' or 'resolved'."
        )

    def decide(self, job: CheckinJob) -> ContinuationDecision:
        return ContinuationDecision.TERMINATE


def default_handlers() -> dict[str, FireHandler]:
    handlers = [
        DailyCheckinHandler(),
        SymptomCheckinHandler(),
        WeatherAlertCheckinHandler(),
        EmergencyFollowUpHandler(),
    ]
    return {h.variant: h for h in handlers}
