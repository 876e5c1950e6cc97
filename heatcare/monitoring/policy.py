"""
Escalation Policy — maps an urgency classification to a check-in cadence.

Pure functions over fixed tables; every lookup is total.  Unknown symptom
levels fall back to MEDIUM, unknown weather urgencies to ROUTINE.

Symptom track:   emergency 1m, critical 2m, high 5m, medium 15m, low 60m
Weather track:   emergency 15m, high 30m, routine 60m (routine never starts a chain)
Daily track:     every 24h, anchored to 09:00 local
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from heatcare.monitoring.tracks import MonitoringTrack

DAILY_INTERVAL_MINUTES = 24 * 60


class EscalationLevel(str, Enum):
    """Symptom urgency tiers, most urgent first."""

    EMERGENCY = "emergency"
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Higher rank means more urgent."""
        return _LEVEL_ORDER.index(self)


# Least to most urgent
_LEVEL_ORDER = [
    EscalationLevel.LOW,
    EscalationLevel.MEDIUM,
    EscalationLevel.HIGH,
    EscalationLevel.CRITICAL,
    EscalationLevel.EMERGENCY,
]


class WeatherUrgency(str, Enum):
    EMERGENCY = "emergency"
    HIGH = "high"
    ROUTINE = "routine"


@dataclass(frozen=True)
class Cadence:
    """How often to check in and for how many occurrences (None = indefinite)."""

    interval_minutes: int
    total_checks: Optional[int] = None

    @property
    def bounded(self) -> bool:
        return self.total_checks is not None

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.interval_minutes)


SYMPTOM_CADENCE: dict[EscalationLevel, Cadence] = {
    EscalationLevel.EMERGENCY: Cadence(interval_minutes=1),
    EscalationLevel.CRITICAL: Cadence(interval_minutes=2),
    EscalationLevel.HIGH: Cadence(interval_minutes=5),
    EscalationLevel.MEDIUM: Cadence(interval_minutes=15),
    EscalationLevel.LOW: Cadence(interval_minutes=60),
}

WEATHER_CADENCE: dict[WeatherUrgency, Cadence] = {
    WeatherUrgency.EMERGENCY: Cadence(interval_minutes=15),
    WeatherUrgency.HIGH: Cadence(interval_minutes=30),
    WeatherUrgency.ROUTINE: Cadence(interval_minutes=60),
}

DAILY_CADENCE = Cadence(interval_minutes=DAILY_INTERVAL_MINUTES)

# Weather urgencies that justify a recurring check-in chain
CHAIN_WEATHER_URGENCIES = {WeatherUrgency.EMERGENCY, WeatherUrgency.HIGH}


# ── Normalisation ──


def normalize_level(value: EscalationLevel | str | None) -> EscalationLevel:
    """Coerce anything into an EscalationLevel.  Unknown input → MEDIUM."""
    if isinstance(value, EscalationLevel):
        return value
    try:
        return EscalationLevel(str(value).strip().lower())
    except ValueError:
        return EscalationLevel.MEDIUM


def normalize_urgency(value: WeatherUrgency | str | None) -> WeatherUrgency:
    """Coerce anything into a WeatherUrgency.  Unknown input → ROUTINE."""
    if isinstance(value, WeatherUrgency):
        return value
    try:
        return WeatherUrgency(str(value).strip().lower())
    except ValueError:
        return WeatherUrgency.ROUTINE


def normalize_for_track(track: MonitoringTrack, value: str | None) -> str:
    """Canonical level string for the given track."""
    if track == MonitoringTrack.WEATHER_ALERT:
        return normalize_urgency(value).value
    if track == MonitoringTrack.DAILY:
        return "daily"
    return normalize_level(value).value


# ── Lookups ──


def classify(
    level: EscalationLevel | WeatherUrgency | str | None,
    track: MonitoringTrack = MonitoringTrack.SYMPTOM,
) -> Cadence:
    """Cadence for a classification on a track.  Never raises."""
    if track == MonitoringTrack.DAILY:
        return DAILY_CADENCE
    if track == MonitoringTrack.WEATHER_ALERT:
        return WEATHER_CADENCE[normalize_urgency(level)]
    return SYMPTOM_CADENCE[normalize_level(level)]


def starts_chain(track: MonitoringTrack, level: str | None) -> bool:
    """Whether a classification should instantiate a chain at all."""
    if track == MonitoringTrack.WEATHER_ALERT:
        return normalize_urgency(level) in CHAIN_WEATHER_URGENCIES
    return True


def next_higher(level: EscalationLevel | str | None) -> EscalationLevel:
    current = normalize_level(level)
    return _LEVEL_ORDER[min(current.rank + 1, len(_LEVEL_ORDER) - 1)]


def next_lower(level: EscalationLevel | str | None) -> EscalationLevel:
    current = normalize_level(level)
    return _LEVEL_ORDER[max(current.rank - 1, 0)]


# Least to most urgent
_URGENCY_ORDER = [WeatherUrgency.ROUTINE, WeatherUrgency.HIGH, WeatherUrgency.EMERGENCY]


def default_level(track: MonitoringTrack) -> str:
    """Level assumed when a track has no pending job to read it from."""
    if track == MonitoringTrack.WEATHER_ALERT:
        return WeatherUrgency.ROUTINE.value
    return EscalationLevel.MEDIUM.value


def level_rank(track: MonitoringTrack, level: str | None) -> int:
    if track == MonitoringTrack.WEATHER_ALERT:
        return _URGENCY_ORDER.index(normalize_urgency(level))
    return normalize_level(level).rank


def step_level(track: MonitoringTrack, level: str | None, steps: int) -> str:
    """Move a level up (steps > 0) or down (steps < 0), clamped to the table."""
    order = _URGENCY_ORDER if track == MonitoringTrack.WEATHER_ALERT else _LEVEL_ORDER
    index = level_rank(track, level) + steps
    return order[max(0, min(index, len(order) - 1))].value


def next_daily_run(
    now: datetime,
    tz: ZoneInfo | str,
    hour: int = 9,
    minute: int = 0,
) -> datetime:
    """
    Next occurrence of hour:minute local time, returned in UTC.

    Today if that time has not yet passed, otherwise tomorrow.
    """
    if isinstance(tz, str):
        tz = ZoneInfo(tz)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(tz)
    candidate = datetime.combine(local_now.date(), time(hour, minute), tzinfo=tz)
    if local_now >= candidate:
        candidate = datetime.combine(
            local_now.date() + timedelta(days=1), time(hour, minute), tzinfo=tz,
        )
    return candidate.astimezone(timezone.utc)
