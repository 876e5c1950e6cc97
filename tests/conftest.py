"""
Shared fixtures for the HeatCare monitoring test suite.

Everything runs in-process: a fake clock drives the in-memory job store,
messages land in an InMemoryDispatcher, patients live in an in-memory
registry.  Tests advance time with ``clock.advance(...)`` and deliver due
jobs with ``await store.run_due()``.
"""

from datetime import datetime, timedelta, timezone

import pytest

from heatcare.monitoring.alerts import OperationalAlerter
from heatcare.monitoring.channels import DispatcherRegistry
from heatcare.monitoring.collaborators import InMemoryPatientRegistry, PatientRecord
from heatcare.monitoring.controller import MonitoringChainController
from heatcare.monitoring.dispatchers.memory_dispatcher import InMemoryDispatcher
from heatcare.monitoring.jobstore import InMemoryJobStore

# 2026-07-01 09:05 in New York (EDT, UTC-4)
START = datetime(2026, 7, 1, 13, 5, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryJobStore(clock=clock, backoff_seconds=1.0)


@pytest.fixture
def memory_dispatcher():
    return InMemoryDispatcher()


@pytest.fixture
def dispatcher_registry(memory_dispatcher):
    registry = DispatcherRegistry(default_channel="memory", retry_delay=0)
    registry.register(memory_dispatcher)
    return registry


@pytest.fixture
def patients():
    return InMemoryPatientRegistry([
        PatientRecord(patient_id="PT-1", phone="+15550000001", first_name="Ada", age=72),
        PatientRecord(patient_id="PT-2", phone="+15550000002", first_name="Ben", age=45),
    ])


@pytest.fixture
def alerter():
    return OperationalAlerter()


@pytest.fixture
def controller(store, dispatcher_registry, patients, alerter, clock):
    return MonitoringChainController(
        store,
        dispatcher_registry,
        patients=patients,
        alerter=alerter,
        clock=clock,
        timezone_name="America/New_York",
    )
