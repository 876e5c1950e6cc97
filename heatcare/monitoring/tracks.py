"""
Track Registry — the independent monitoring purposes a patient can be on.

Each track owns its own scheduling identity (one pending job per
patient per track) and declares how its chain is driven:

  - DAILY          fixed 24h cadence, uses the job store's native repeat
  - SYMPTOM        cadence follows the latest classification, self-rescheduled
  - WEATHER_ALERT  cadence follows heat urgency, self-rescheduled

The emergency follow-up is not a track: it is a one-shot job with its
own identity so it never collides with the Symptom chain it replaces.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class MonitoringTrack(str, Enum):
    DAILY = "daily"
    SYMPTOM = "symptom"
    WEATHER_ALERT = "weather-alert"


class JobKind(str, Enum):
    """What a scheduled job is for: a chain check-in or the safety follow-up."""

    CHECKIN = "checkin"
    EMERGENCY_FOLLOW_UP = "emergency_followup"


@dataclass(frozen=True)
class TrackSpec:
    """Scheduling identity and chain semantics for one track."""

    track: MonitoringTrack
    job_id_template: str
    native_repeat: bool
    default_total_checks: Optional[int] = None

    @property
    def bounded(self) -> bool:
        return self.default_total_checks is not None

    @property
    def self_rescheduled(self) -> bool:
        return not self.native_repeat

    def job_id(self, patient_id: str) -> str:
        return self.job_id_template.format(patient_id=patient_id)


TRACK_REGISTRY: dict[MonitoringTrack, TrackSpec] = {
    MonitoringTrack.DAILY: TrackSpec(
        track=MonitoringTrack.DAILY,
        job_id_template="daily-checkup-{patient_id}",
        native_repeat=True,
    ),
    MonitoringTrack.SYMPTOM: TrackSpec(
        track=MonitoringTrack.SYMPTOM,
        job_id_template="recurring-monitor-{patient_id}-symptom",
        native_repeat=False,
    ),
    MonitoringTrack.WEATHER_ALERT: TrackSpec(
        track=MonitoringTrack.WEATHER_ALERT,
        job_id_template="weather-alert-{patient_id}",
        native_repeat=False,
    ),
}

EMERGENCY_FOLLOW_UP_TEMPLATE = "emergency-followup-{patient_id}"


def get_track_spec(track: MonitoringTrack | str) -> TrackSpec:
    """Look up a track spec.  Raises ValueError for an unknown track name."""
    return TRACK_REGISTRY[parse_track(track)]


def parse_track(value: MonitoringTrack | str) -> MonitoringTrack:
    if isinstance(value, MonitoringTrack):
        return value
    normalized = str(value).strip().lower().replace("_", "-")
    return MonitoringTrack(normalized)


def job_id_for(patient_id: str, track: MonitoringTrack | str) -> str:
    return get_track_spec(track).job_id(patient_id)


def emergency_follow_up_job_id(patient_id: str) -> str:
    return EMERGENCY_FOLLOW_UP_TEMPLATE.format(patient_id=patient_id)
