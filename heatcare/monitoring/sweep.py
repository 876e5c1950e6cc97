"""
Weather Alert Sweep — background loop that reconciles WeatherAlert chains
with current heat conditions.

For every registered patient, each pass:
  - patients who opted out have all monitoring cancelled
  - Emergency / High urgency: send a heat alert and start the WeatherAlert
    chain, at most once per (patient, urgency, local day)
  - Routine urgency: end any WeatherAlert chain still running

Scaling path: run one sweep per region, or drive run_once() from an
external cron hitting an endpoint.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from heatcare.monitoring.collaborators import PatientRecord, PatientRegistry, WeatherRiskSource
from heatcare.monitoring.dedup import AlertDedupCache
from heatcare.monitoring.policy import WeatherUrgency, normalize_urgency, starts_chain
from heatcare.monitoring.tracks import MonitoringTrack

logger = logging.getLogger("monitoring.sweep")

# How often the loop runs (in seconds)
SWEEP_INTERVAL = 1800

HEAT_ALERT_MESSAGES = {
    WeatherUrgency.EMERGENCY: (
        "EXTREME HEAT WARNING: dangerous heat in your area today. "
        "Stay indoors somewhere cool, drink water often and call 911 if you feel unwell."
    ),
    WeatherUrgency.HIGH: (
        "HEAT ADVISORY: high heat in your area today. "
        "Limit time outside, keep drinking water and check on others."
    ),
}


class WeatherAlertSweep:
    """
    Usage:
        sweep = WeatherAlertSweep(controller, patients, weather_source)
        await sweep.start()

    On shutdown:
        await sweep.stop()
    """

    def __init__(
        self,
        controller,
        patients: PatientRegistry,
        weather: WeatherRiskSource,
        *,
        dedup: AlertDedupCache | None = None,
        interval_seconds: int = SWEEP_INTERVAL,
        timezone_name: str = "America/New_York",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._controller = controller
        self._patients = patients
        self._weather = weather
        self._dedup = dedup or AlertDedupCache()
        self._interval = interval_seconds
        self._tz = ZoneInfo(timezone_name)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._task: asyncio.Task | None = None
        self._running = False
        self._last_run: datetime | None = None

    @property
    def last_run(self) -> datetime | None:
        return self._last_run

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("WeatherAlertSweep already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("WeatherAlertSweep started (every %ds)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("WeatherAlertSweep stopped")

    async def run_once(self) -> dict[str, str]:
        """One pass over every patient.  Returns patient_id → outcome."""
        outcomes: dict[str, str] = {}
        for patient in await self._patients.list_patients():
            try:
                outcomes[patient.patient_id] = await self._check_patient(patient)
            except Exception as exc:
                outcomes[patient.patient_id] = "error"
                logger.warning("Sweep failed for patient %s: %s", patient.patient_id, exc)
        self._last_run = self._clock()
        logger.info("Weather sweep checked %d patient(s)", len(outcomes))
        return outcomes

    # ── Internal ──

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                if not self._running:
                    break
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Weather sweep loop error: %s", exc, exc_info=True)

    async def _check_patient(self, patient: PatientRecord) -> str:
        if not patient.monitoring_enabled:
            await self._controller.cancel_all(patient.patient_id)
            return "disabled"

        urgency = normalize_urgency(await self._weather.urgency_for(patient))
        if not starts_chain(MonitoringTrack.WEATHER_ALERT, urgency):
            if await self._controller.cancel(patient.patient_id, MonitoringTrack.WEATHER_ALERT):
                logger.info("Heat risk for %s back to routine — weather chain ended", patient.patient_id)
                return "ended"
            return "routine"

        key = self._dedup_key(patient.patient_id, urgency)
        if not self._dedup.claim(key):
            return "duplicate"

        try:
            await self._controller.send_alert(patient.patient_id, HEAT_ALERT_MESSAGES[urgency])
            await self._controller.start_weather_alert(
                patient.patient_id, urgency.value, {"source": "weather_sweep"},
            )
        except Exception:
            # Let the next pass try again
            self._dedup.forget(key)
            raise
        return "alerted"

    def _dedup_key(self, patient_id: str, urgency: WeatherUrgency) -> str:
        local_day = self._clock().astimezone(self._tz).date().isoformat()
        return f"{patient_id}:{urgency.value}:{local_day}"
