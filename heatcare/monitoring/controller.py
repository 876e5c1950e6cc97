"""
Monitoring Chain Controller — the single owner of every check-in chain.

All scheduling mutations go through here.  For each (patient, track)
identity the controller guarantees at most one pending job:

  start       cancel whatever is pending, then enqueue the first job
  on_fire     dispatch the check-in, then enqueue the successor
  escalate    move the pending job in place to a more urgent level
  deescalate  move the pending job in place to a less urgent level
  cancel      remove the pending job; the chain ends

Every mutation of an identity runs under that identity's lock, including
the whole of on_fire, so a fire can never resurrect a chain that a
concurrent cancel has just ended.  Fires whose handle is no longer live
(cancelled or superseded while queued) are skipped.

Delivery failures are logged and never block the successor: a patient
who missed one check-in must still get the next one.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from heatcare.monitoring.alerts import OperationalAlerter
from heatcare.monitoring.channels import DispatcherRegistry
from heatcare.monitoring.collaborators import (
    PatientRecord,
    PatientRegistry,
    RiskAssessment,
    RiskClassifier,
)
from heatcare.monitoring.errors import (
    ChainBrokenError,
    DuplicateIdentityViolation,
    MonitoringError,
)
from heatcare.monitoring.handlers import (
    EMERGENCY_MESSAGE,
    ContinuationDecision,
    FireHandler,
    default_handlers,
)
from heatcare.monitoring.jobs import ChainState, CheckinJob
from heatcare.monitoring.jobstore import JobHandle, JobStore, RepeatSpec
from heatcare.monitoring.locks import IdentityLocks
from heatcare.monitoring.policy import (
    DAILY_INTERVAL_MINUTES,
    classify,
    default_level,
    level_rank,
    next_daily_run,
    normalize_for_track,
    starts_chain,
    step_level,
)
from heatcare.monitoring.tracks import (
    JobKind,
    MonitoringTrack,
    emergency_follow_up_job_id,
    get_track_spec,
    parse_track,
)

logger = logging.getLogger("monitoring.controller")

# Optional override for message copy: (job, patient) -> text
MessageRenderer = Callable[[CheckinJob, Optional[PatientRecord]], str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MonitoringChainController:
    """
    Usage:
        controller = MonitoringChainController(store, dispatcher_registry)
        await controller.start("PT-1", MonitoringTrack.SYMPTOM, "high")
        await controller.escalate("PT-1", MonitoringTrack.SYMPTOM)
        await controller.cancel("PT-1", MonitoringTrack.SYMPTOM)
    """

    def __init__(
        self,
        store: JobStore,
        dispatcher: DispatcherRegistry,
        *,
        patients: PatientRegistry | None = None,
        classifier: RiskClassifier | None = None,
        alerter: OperationalAlerter | None = None,
        handlers: dict[str, FireHandler] | None = None,
        renderer: MessageRenderer | None = None,
        clock: Callable[[], datetime] | None = None,
        timezone_name: str = "America/New_York",
        daily_hour: int = 9,
        daily_minute: int = 0,
        follow_up_minutes: int = 5,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._patients = patients
        self._classifier = classifier
        self._alerter = alerter or OperationalAlerter()
        self._handlers = handlers or default_handlers()
        self._renderer = renderer
        self._clock = clock or _utcnow
        self._tz = ZoneInfo(timezone_name)
        self._daily_hour = daily_hour
        self._daily_minute = daily_minute
        self._follow_up_minutes = follow_up_minutes
        self._locks = IdentityLocks()

        store.register_handler(self.on_fire)

    @property
    def alerter(self) -> OperationalAlerter:
        return self._alerter

    @property
    def locks(self) -> IdentityLocks:
        return self._locks

    # ── Chain lifecycle ──

    async def start(
        self,
        patient_id: str,
        track: MonitoringTrack | str,
        level: str | None = None,
        context: dict[str, Any] | None = None,
        *,
        total_checks: int | None = None,
    ) -> CheckinJob | None:
        """
        Start (or restart) the chain for one track.

        Returns the first job, or None when nothing was scheduled: the
        patient opted out, or a Routine weather urgency.
        """
        track = parse_track(track)
        if not await self._monitoring_enabled(patient_id):
            logger.info("Monitoring disabled for %s — not starting %s", patient_id, track.value)
            await self.cancel_all(patient_id)
            return None

        job_id = get_track_spec(track).job_id(patient_id)
        async with self._locks.hold(job_id):
            return await self._start_locked(
                patient_id, track, level, dict(context or {}), total_checks=total_checks,
            )

    async def start_daily(
        self, patient_id: str, context: dict[str, Any] | None = None,
    ) -> CheckinJob | None:
        return await self.start(patient_id, MonitoringTrack.DAILY, context=context)

    async def start_weather_alert(
        self,
        patient_id: str,
        urgency: str,
        context: dict[str, Any] | None = None,
        *,
        total_checks: int | None = None,
    ) -> CheckinJob | None:
        return await self.start(
            patient_id, MonitoringTrack.WEATHER_ALERT, urgency, context,
            total_checks=total_checks,
        )

    async def cancel(self, patient_id: str, track: MonitoringTrack | str) -> bool:
        """End the chain for one track.  True if a pending job was removed."""
        job_id = get_track_spec(track).job_id(patient_id)
        async with self._locks.hold(job_id):
            removed = await self._store.cancel(job_id)
        if removed:
            logger.info("Cancelled %s for %s", job_id, patient_id)
        return removed

    async def cancel_all(self, patient_id: str) -> dict[str, bool]:
        """End every chain for the patient, including a pending emergency follow-up."""
        results: dict[str, bool] = {}
        for track in MonitoringTrack:
            results[track.value] = await self.cancel(patient_id, track)

        follow_up_id = emergency_follow_up_job_id(patient_id)
        async with self._locks.hold(follow_up_id):
            results[JobKind.EMERGENCY_FOLLOW_UP.value] = await self._store.cancel(follow_up_id)
        return results

    async def escalate(
        self,
        patient_id: str,
        track: MonitoringTrack | str,
        new_level: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> CheckinJob | None:
        """
        Restart the chain at a more urgent level, in place when a job is pending.

        Without new_level the level moves one step up.  An explicit level
        lower than the current one is ignored: escalation never slows a chain.
        """
        return await self._change_level(patient_id, track, new_level, context, upward=True)

    async def deescalate(
        self,
        patient_id: str,
        track: MonitoringTrack | str,
        new_level: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> CheckinJob | None:
        """Restart the chain at a less urgent level (one step down by default)."""
        return await self._change_level(patient_id, track, new_level, context, upward=False)

    # ── Classifications ──

    async def report_classification(
        self,
        patient_id: str,
        assessment: RiskAssessment,
        context: dict[str, Any] | None = None,
    ) -> CheckinJob | None:
        """Apply a fresh symptom verdict to the Symptom chain."""
        if assessment.emergency_flag:
            return await self.handle_emergency(patient_id, context)
        return await self.escalate(
            patient_id, MonitoringTrack.SYMPTOM, assessment.urgency_level, context,
        )

    async def report_symptoms(
        self,
        patient_id: str,
        text: str,
        context: dict[str, Any] | None = None,
    ) -> CheckinJob | None:
        """Classify a free-text symptom report and apply the verdict."""
        if self._classifier is None:
            raise MonitoringError("No risk classifier configured")
        patient = await self._get_patient(patient_id)
        assessment = await self._classifier.classify(text, patient)
        logger.info(
            "Symptoms from %s classified %s (emergency=%s)",
            patient_id, assessment.urgency_level, assessment.emergency_flag,
        )
        merged = {"symptom": text, **(context or {})}
        return await self.report_classification(patient_id, assessment, merged)

    async def handle_emergency(
        self, patient_id: str, context: dict[str, Any] | None = None,
    ) -> CheckinJob:
        """
        Replace the Symptom chain with the emergency protocol.

        The chain is cancelled, emergency instructions go out immediately
        and exactly one follow-up is scheduled.  Runs even for patients who
        opted out of routine monitoring.
        """
        await self.cancel(patient_id, MonitoringTrack.SYMPTOM)

        patient = await self._get_patient(patient_id)
        await self._send(patient_id, patient, EMERGENCY_MESSAGE, {"emergency": True})

        follow_up_id = emergency_follow_up_job_id(patient_id)
        async with self._locks.hold(follow_up_id):
            now = self._clock()
            job = CheckinJob(
                patient_id=patient_id,
                track=MonitoringTrack.SYMPTOM,
                escalation_level="emergency",
                kind=JobKind.EMERGENCY_FOLLOW_UP,
                total_checks=1,
                interval_minutes=self._follow_up_minutes,
                due_at=now + timedelta(minutes=self._follow_up_minutes),
                started_at=now,
                context=dict(context or {}),
            )
            await self._replace(job)
        logger.warning("Emergency protocol started for %s", patient_id)
        return job

    async def send_alert(self, patient_id: str, message: str) -> None:
        """One-off message outside any chain (e.g. a heat warning)."""
        patient = await self._get_patient(patient_id)
        await self._send(patient_id, patient, message, {"alert": True})

    # ── Firing ──

    async def on_fire(self, handle: JobHandle) -> ContinuationDecision:
        """Job store callback: deliver one check-in and continue the chain."""
        job = CheckinJob.from_payload(handle.payload)
        opted_out = False

        async with self._locks.hold(handle.job_id):
            if not await self._store.is_live(handle.handle_id):
                logger.info("Skipping superseded job %s (%s)", handle.job_id, handle.handle_id)
                return ContinuationDecision.SUPERSEDED

            patient = await self._get_patient(job.patient_id)
            if (
                patient is not None
                and not patient.monitoring_enabled
                and job.kind != JobKind.EMERGENCY_FOLLOW_UP
            ):
                opted_out = True
            else:
                handler = self._handlers.get(job.variant)
                if handler is None:
                    logger.error("No fire handler for variant %s — ending %s", job.variant, handle.job_id)
                    return ContinuationDecision.TERMINATE

                await self._dispatch(job, patient, handler)
                decision = handler.decide(job)
                if decision == ContinuationDecision.RESCHEDULE:
                    await self._continue_chain(job, handle)
                elif decision == ContinuationDecision.TERMINATE:
                    logger.info(
                        "Chain %s for %s complete after %d check-in(s)",
                        handle.job_id, job.patient_id, job.sequence_number,
                    )
                return decision

        # Outside the lock: cancel_all takes this identity's lock too
        logger.info("Patient %s opted out — ending all monitoring", job.patient_id)
        await self.cancel_all(job.patient_id)
        return ContinuationDecision.TERMINATE

    async def _continue_chain(self, job: CheckinJob, handle: JobHandle) -> None:
        successor = job.successor(self._clock() + timedelta(minutes=job.interval_minutes))
        try:
            await self._replace(successor)
        except Exception as exc:
            error = ChainBrokenError(job.patient_id, handle.job_id, exc)
            await self._alerter.chain_broken(error)
            raise error from exc
        logger.info(
            "Scheduled %s #%d for %s at %s (level=%s)",
            handle.job_id, successor.sequence_number, job.patient_id,
            successor.due_at.isoformat(), successor.escalation_level,
        )

    # ── Introspection ──

    async def current_job(
        self, patient_id: str, track: MonitoringTrack | str,
    ) -> CheckinJob | None:
        job_id = get_track_spec(track).job_id(patient_id)
        async with self._locks.hold(job_id):
            return await self._current_job(job_id, patient_id)

    async def chain_state(self, patient_id: str, track: MonitoringTrack | str) -> ChainState:
        job_id = get_track_spec(track).job_id(patient_id)
        if await self._store.pending(job_id):
            return ChainState.ACTIVE
        if await self._store.last_result(job_id) == ContinuationDecision.TERMINATE.value:
            return ChainState.TERMINATED
        return ChainState.IDLE

    async def status(self, patient_id: str) -> dict[str, Any]:
        """Per-track view of the patient's monitoring, for the status endpoint."""
        tracks: dict[str, Any] = {}
        for track in MonitoringTrack:
            job = await self.current_job(patient_id, track)
            tracks[track.value] = {
                "state": (await self.chain_state(patient_id, track)).value,
                "job": job.model_dump(mode="json") if job else None,
            }

        follow_up = None
        follow_up_id = emergency_follow_up_job_id(patient_id)
        async with self._locks.hold(follow_up_id):
            job = await self._current_job(follow_up_id, patient_id)
        if job is not None:
            follow_up = job.model_dump(mode="json")

        return {
            "patient_id": patient_id,
            "monitoring_enabled": await self._monitoring_enabled(patient_id),
            "tracks": tracks,
            "emergency_follow_up": follow_up,
        }

    # ── Internal ──

    async def _change_level(
        self,
        patient_id: str,
        track: MonitoringTrack | str,
        new_level: str | None,
        context: dict[str, Any] | None,
        *,
        upward: bool,
    ) -> CheckinJob | None:
        track = parse_track(track)
        if track == MonitoringTrack.DAILY:
            raise ValueError("The daily track has a fixed cadence and no escalation level")
        if not await self._monitoring_enabled(patient_id):
            await self.cancel_all(patient_id)
            return None

        job_id = get_track_spec(track).job_id(patient_id)
        async with self._locks.hold(job_id):
            current = await self._current_job(job_id, patient_id)
            current_level = current.escalation_level if current else default_level(track)

            if new_level is None:
                target = step_level(track, current_level, 1 if upward else -1)
            else:
                target = normalize_for_track(track, new_level)
                if current is not None:
                    moved_up = level_rank(track, target) > level_rank(track, current_level)
                    moved_down = level_rank(track, target) < level_rank(track, current_level)
                    if (upward and moved_down) or (not upward and moved_up):
                        target = current_level

            if current is not None and target == current_level:
                logger.info(
                    "%s for %s already at %s; pending check-in left as is",
                    track.value, patient_id, target,
                )
                return current

            merged = dict(current.context) if current else {}
            merged.update(context or {})
            total_checks = current.total_checks if current else None
            logger.info(
                "%s %s for %s: %s -> %s",
                "Escalating" if upward else "De-escalating",
                track.value, patient_id, current_level, target,
            )

            if current is not None and starts_chain(track, target):
                # Same identity, new level: move the pending job in place
                job, _ = self._build_job(patient_id, track, target, merged, total_checks)
                delay = max(job.due_at - self._clock(), timedelta(0))
                if await self._store.reschedule(job_id, delay, job.to_payload()) is not None:
                    return job

            return await self._start_locked(
                patient_id, track, target, merged, total_checks=total_checks,
            )

    def _build_job(
        self,
        patient_id: str,
        track: MonitoringTrack,
        level_value: str,
        context: dict[str, Any],
        total_checks: int | None,
    ) -> tuple[CheckinJob, RepeatSpec | None]:
        """First job of a chain at level_value, plus the store repeat for native tracks."""
        spec = get_track_spec(track)
        now = self._clock()
        cadence = classify(level_value, track)
        repeat = None
        if spec.native_repeat:
            due_at = next_daily_run(now, self._tz, self._daily_hour, self._daily_minute)
            repeat = RepeatSpec(every_seconds=DAILY_INTERVAL_MINUTES * 60)
        else:
            due_at = now + cadence.interval

        if total_checks is None:
            total_checks = cadence.total_checks if cadence.bounded else spec.default_total_checks

        job = CheckinJob(
            patient_id=patient_id,
            track=track,
            escalation_level=level_value,
            total_checks=total_checks,
            interval_minutes=cadence.interval_minutes,
            due_at=due_at,
            started_at=now,
            context=context,
        )
        return job, repeat

    async def _start_locked(
        self,
        patient_id: str,
        track: MonitoringTrack,
        level: str | None,
        context: dict[str, Any],
        *,
        total_checks: int | None = None,
    ) -> CheckinJob | None:
        """Cancel-then-enqueue for one identity.  Caller holds the identity lock."""
        level_value = normalize_for_track(track, level)

        if not starts_chain(track, level_value):
            if await self._store.cancel(get_track_spec(track).job_id(patient_id)):
                logger.info("%s urgency for %s is %s — chain ended", track.value, patient_id, level_value)
            return None

        job, repeat = self._build_job(patient_id, track, level_value, context, total_checks)
        await self._replace(job, repeat=repeat)
        logger.info(
            "Scheduled %s #%d for %s at %s (level=%s)",
            job.job_id, job.sequence_number, patient_id, job.due_at.isoformat(), level_value,
        )
        return job

    async def _replace(self, job: CheckinJob, *, repeat: RepeatSpec | None = None) -> None:
        """
        Swap whatever is pending under the job's identity with job.

        If the enqueue fails the previously pending job is put back, so a
        failed start leaves the identity exactly as it was.
        """
        job_id = job.job_id
        previous = await self._store.pending(job_id)
        if len(previous) > 1:
            self._alerter.integrity_warning(
                DuplicateIdentityViolation(job_id, previous), job.patient_id,
            )

        await self._store.cancel(job_id)
        delay = max(job.due_at - self._clock(), timedelta(0))
        try:
            await self._store.enqueue(job_id, job.to_payload(), delay=delay, repeat=repeat)
        except Exception:
            if previous:
                await self._restore(previous[-1], job.patient_id)
            raise

    async def _restore(self, handle: JobHandle, patient_id: str) -> None:
        remaining = max(handle.due_at - self._clock(), timedelta(0))
        try:
            await self._store.enqueue(
                handle.job_id, handle.payload, delay=remaining, repeat=handle.repeat,
            )
            logger.warning("Enqueue failed — restored previous job for %s", handle.job_id)
        except Exception as exc:
            logger.error(
                "Could not restore previous job for %s: %s", handle.job_id, exc,
                exc_info=True,
            )
            await self._alerter.restore_failed(handle.job_id, patient_id, exc)

    async def _current_job(self, job_id: str, patient_id: str) -> CheckinJob | None:
        try:
            handle = await self._store.find(job_id)
        except DuplicateIdentityViolation as exc:
            self._alerter.integrity_warning(exc, patient_id)
            handle = await self._heal_duplicates(exc.handles)
        return CheckinJob.from_payload(handle.payload) if handle else None

    async def _heal_duplicates(self, handles: list[JobHandle]) -> JobHandle:
        """Keep the newest handle, cancel the rest."""
        newest = max(handles, key=lambda h: h.created_at)
        for handle in handles:
            if handle.handle_id != newest.handle_id:
                await self._store.cancel_handle(handle.handle_id)
        return newest

    async def _dispatch(
        self, job: CheckinJob, patient: PatientRecord | None, handler: FireHandler,
    ) -> None:
        if self._renderer is not None:
            message = self._renderer(job, patient)
        else:
            message = handler.render(job, patient)
        await self._send(job.patient_id, patient, message, {
            "track": job.track.value,
            "kind": job.kind.value,
            "sequence_number": job.sequence_number,
            "escalation_level": job.escalation_level,
        })

    async def _send(
        self,
        patient_id: str,
        patient: PatientRecord | None,
        message: str,
        metadata: dict[str, Any],
    ) -> None:
        """Deliver a message.  Failures are logged, never raised."""
        if patient is not None and patient.phone:
            metadata = {"phone": patient.phone, **metadata}
        channel = patient.preferred_channel if patient else None
        try:
            result = await self._dispatcher.send(
                patient_id, message, channel=channel, metadata=metadata,
            )
        except Exception as exc:
            logger.error("Dispatch to %s raised: %s", patient_id, exc, exc_info=True)
            return
        if not result.success:
            logger.warning("Delivery to %s failed: %s", patient_id, result.error)

    async def _get_patient(self, patient_id: str) -> PatientRecord | None:
        if self._patients is None:
            return None
        return await self._patients.get(patient_id)

    async def _monitoring_enabled(self, patient_id: str) -> bool:
        patient = await self._get_patient(patient_id)
        return patient is None or patient.monitoring_enabled
