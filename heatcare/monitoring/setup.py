"""
Monitoring Setup — initializes and wires together the scheduler components.

Called once during app startup.  If anything fails, monitoring is disabled
and the rest of the app (health checks) keeps working.

The patient registry, risk classifier and weather source belong to the
surrounding application and are passed in; without them the scheduler
runs against an empty in-memory registry and the weather sweep is off.
"""

from __future__ import annotations

import logging

from heatcare import settings
from heatcare.monitoring.alerts import OperationalAlerter
from heatcare.monitoring.channels import DispatcherRegistry
from heatcare.monitoring.collaborators import (
    InMemoryPatientRegistry,
    PatientRegistry,
    RiskClassifier,
    WeatherRiskSource,
)
from heatcare.monitoring.controller import MonitoringChainController
from heatcare.monitoring.dedup import AlertDedupCache
from heatcare.monitoring.dispatchers.memory_dispatcher import InMemoryDispatcher
from heatcare.monitoring.jobstore import InMemoryJobStore, JobStore
from heatcare.monitoring.responses import ResponseInterpreter
from heatcare.monitoring.sweep import WeatherAlertSweep

logger = logging.getLogger("monitoring.setup")

# Module-level singletons (set during initialize)
_controller: MonitoringChainController | None = None
_interpreter: ResponseInterpreter | None = None
_job_store: JobStore | None = None
_dispatcher_registry: DispatcherRegistry | None = None
_patient_registry: PatientRegistry | None = None
_sweep: WeatherAlertSweep | None = None


async def initialize_monitoring(
    patients: PatientRegistry | None = None,
    classifier: RiskClassifier | None = None,
    weather: WeatherRiskSource | None = None,
) -> MonitoringChainController:
    """
    Wire together all monitoring components and start background tasks.

    Returns the fully initialized controller.
    """
    global _controller, _interpreter, _job_store
    global _dispatcher_registry, _patient_registry, _sweep

    logger.info("Initializing HeatCare monitoring...")

    # 1. Dispatcher registry
    _dispatcher_registry = DispatcherRegistry(default_channel=settings.DEFAULT_CHANNEL)
    _dispatcher_registry.register(InMemoryDispatcher())
    _register_external_dispatchers(_dispatcher_registry)

    # 2. Job store (in-process worker pool)
    _job_store = InMemoryJobStore(
        concurrency=settings.WORKER_CONCURRENCY,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
        backoff_seconds=settings.JOB_BACKOFF_SECONDS,
        poll_interval_seconds=settings.JOB_POLL_INTERVAL_SECONDS,
    )

    # 3. Controller + interpreter
    _patient_registry = patients or InMemoryPatientRegistry()
    alerter = OperationalAlerter(
        dispatcher=_dispatcher_registry,
        ops_channel=settings.OPS_ALERT_CHANNEL,
        ops_recipient=settings.OPS_ALERT_RECIPIENT,
    )
    _controller = MonitoringChainController(
        _job_store,
        _dispatcher_registry,
        patients=_patient_registry,
        classifier=classifier,
        alerter=alerter,
        timezone_name=settings.MONITORING_TIMEZONE,
        daily_hour=settings.DAILY_CHECKIN_HOUR,
        daily_minute=settings.DAILY_CHECKIN_MINUTE,
        follow_up_minutes=settings.EMERGENCY_FOLLOW_UP_MINUTES,
    )
    _interpreter = ResponseInterpreter(_controller)
    await _job_store.start()

    # 4. Weather sweep (only with a weather source)
    if weather is not None:
        _sweep = WeatherAlertSweep(
            _controller,
            _patient_registry,
            weather,
            dedup=AlertDedupCache(
                ttl_seconds=settings.ALERT_DEDUP_TTL_SECONDS,
                max_entries=settings.ALERT_DEDUP_MAX_ENTRIES,
            ),
            interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
            timezone_name=settings.MONITORING_TIMEZONE,
        )
        await _sweep.start()

    logger.info(
        "Monitoring initialized: channels=%s, sweep=%s",
        _dispatcher_registry.registered_channels,
        "on" if _sweep else "off",
    )
    return _controller


async def shutdown_monitoring() -> None:
    """Gracefully stop background tasks."""
    if _sweep:
        await _sweep.stop()
    if _job_store:
        await _job_store.stop()
        logger.info("Monitoring shutdown complete")


def get_controller() -> MonitoringChainController | None:
    return _controller


def get_interpreter() -> ResponseInterpreter | None:
    return _interpreter


def get_job_store() -> JobStore | None:
    return _job_store


def get_dispatcher_registry() -> DispatcherRegistry | None:
    return _dispatcher_registry


def get_sweep() -> WeatherAlertSweep | None:
    return _sweep


def _register_external_dispatchers(registry: DispatcherRegistry) -> None:
    """
    Register provider dispatchers.

    Twilio is always registered: without credentials it runs in stub mode
    so the default WhatsApp channel never silently drops messages.
    """
    import os

    try:
        from heatcare.monitoring.dispatchers.twilio_dispatcher import (
            TwilioWhatsAppDispatcher,
        )
        dispatcher = TwilioWhatsAppDispatcher()
        registry.register(dispatcher)
        logger.info(
            "Twilio WhatsApp dispatcher registered (%s)",
            "stub" if dispatcher.stub_mode else os.getenv("TWILIO_WHATSAPP_FROM", "live"),
        )
    except Exception as exc:
        logger.warning("Twilio WhatsApp dispatcher failed to register: %s", exc)
