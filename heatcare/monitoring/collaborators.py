"""
External collaborators the scheduler consumes but does not own.

  - PatientRegistry     read-only patient records (monitoring flag, risk attributes)
  - RiskClassifier      free text → urgency verdict (opaque oracle)
  - WeatherRiskSource   patient → current heat urgency (opaque oracle)

Only the interfaces and a simple in-memory registry live here; real
implementations belong to the surrounding application.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field

from heatcare.monitoring.policy import EscalationLevel, WeatherUrgency


class PatientRecord(BaseModel):
    patient_id: str
    phone: str = ""
    first_name: str = ""
    age: Optional[int] = None
    zipcode: str = ""
    preferred_channel: Optional[str] = None
    monitoring_enabled: bool = True
    risk_factors: list[str] = Field(default_factory=list)


class PatientRegistry(ABC):
    @abstractmethod
    async def get(self, patient_id: str) -> PatientRecord | None:
        """Return the patient or None if unknown."""

    @abstractmethod
    async def list_patients(self) -> list[PatientRecord]:
        """Every registered patient (used by periodic sweeps)."""


class InMemoryPatientRegistry(PatientRegistry):
    def __init__(self, patients: list[PatientRecord] | None = None) -> None:
        self._patients: dict[str, PatientRecord] = {
            p.patient_id: p for p in (patients or [])
        }

    async def get(self, patient_id: str) -> PatientRecord | None:
        return self._patients.get(patient_id)

    async def list_patients(self) -> list[PatientRecord]:
        return list(self._patients.values())

    def upsert(self, patient: PatientRecord) -> None:
        self._patients[patient.patient_id] = patient

    def set_monitoring_enabled(self, patient_id: str, enabled: bool) -> None:
        patient = self._patients.get(patient_id)
        if patient is not None:
            patient.monitoring_enabled = enabled


@dataclass
class RiskAssessment:
    """Verdict from the risk classifier."""

    urgency_level: EscalationLevel
    emergency_flag: bool = False
    reasoning: str = ""


class RiskClassifier(ABC):
    @abstractmethod
    async def classify(self, text: str, patient: PatientRecord | None) -> RiskAssessment:
        """Classify a free-text symptom report in the patient's context."""


class WeatherRiskSource(ABC):
    @abstractmethod
    async def urgency_for(self, patient: PatientRecord) -> WeatherUrgency:
        """Current heat urgency at the patient's location."""
