"""
Care-platform records normalized into correlation signals.

Each model mirrors one upstream table as the correlation engine reads it:
- medication_administration_log: scheduled dose outcomes
- health_metrics: vital sign measurements from devices or manual entry
- family_observations: concerns submitted by family members
- tasks: caregiver task records with free-text completion notes

Records are validated on the way in and converted to immutable Signals; the
abnormal flag is decided by the domain registry so the adapters and the
aggregator always agree.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from caresignal.domain.models import Signal, SignalDomain, SourceRef
from caresignal.domain.signal_domains import SignalDomainRegistry


class MedicationStatus(str, Enum):
    """Outcome recorded for a scheduled medication dose."""

    ON_TIME = "ON_TIME"
    LATE = "LATE"
    MISSED = "MISSED"
    REFUSED = "REFUSED"
    HELD = "HELD"


class ConcernLevel(str, Enum):
    """Concern level a family member attaches to an observation."""

    NONE = "NONE"
    LOW = "LOW"
    MODERATE = "MODERATE"
    URGENT = "URGENT"


class TaskState(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


# Physiologically possible ranges; values outside are data-entry errors
_PLAUSIBLE_VITALS: dict[str, tuple[float, float]] = {
    "blood_pressure_systolic": (40.0, 300.0),
    "blood_pressure_diastolic": (20.0, 200.0),
    "heart_rate": (20.0, 250.0),
    "oxygen_saturation": (50.0, 100.0),
    "body_temperature": (30.0, 45.0),
}


class _CareRecord(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str
    resident_id: str

    def _signal(
        self,
        registry: SignalDomainRegistry | None,
        domain: SignalDomain,
        subtype: str,
        table_name: str,
        timestamp: datetime,
        payload: dict[str, Any],
    ) -> Signal:
        signal = Signal(
            domain=domain,
            subtype=subtype,
            subject_id=self.resident_id,
            timestamp=timestamp,
            payload=payload,
            source_ref=SourceRef(table_name=table_name, id=self.id),
        )
        if registry is None:
            return signal
        return signal.model_copy(update={"abnormal": registry.is_abnormal(signal)})


class MedicationAdministration(_CareRecord):
    """Row of medication_administration_log."""

    medication_id: str
    status: MedicationStatus
    administered_at: datetime
    notes: str | None = None

    def to_signal(self, registry: SignalDomainRegistry | None = None) -> Signal:
        return self._signal(
            registry,
            SignalDomain.MEDICATION,
            "medication_admin",
            "medication_administration_log",
            self.administered_at,
            {"status": self.status, "medication_id": self.medication_id, "notes": self.notes},
        )


class HealthMeasurement(_CareRecord):
    """Row of health_metrics."""

    metric_type: str
    value_numeric: float
    unit: str
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data_source: str = Field(default="manual", description="Device id or 'manual'")

    @field_validator("value_numeric")
    @classmethod
    def validate_plausible_range(cls, v: float, info: ValidationInfo) -> float:
        """Reject readings no device or nurse could have produced."""
        bounds = _PLAUSIBLE_VITALS.get(info.data.get("metric_type", ""))
        if bounds and not bounds[0] <= v <= bounds[1]:
            raise ValueError(f"Value {v} outside plausible range {bounds}")
        return v

    def to_signal(self, registry: SignalDomainRegistry | None = None) -> Signal:
        return self._signal(
            registry,
            SignalDomain.VITAL,
            self.metric_type,
            "health_metrics",
            self.recorded_at,
            {
                "metric_type": self.metric_type,
                "value": self.value_numeric,
                "unit": self.unit,
                "data_source": self.data_source,
            },
        )


class FamilyObservation(_CareRecord):
    """Row of family_observations."""

    family_user_id: str | None = None
    concern_level: ConcernLevel
    observation_text: str = Field(min_length=1)
    submitted_at: datetime

    def to_signal(self, registry: SignalDomainRegistry | None = None) -> Signal:
        return self._signal(
            registry,
            SignalDomain.OBSERVATION,
            "family_observation",
            "family_observations",
            self.submitted_at,
            {
                "concern_level": self.concern_level,
                "observation_text": self.observation_text,
                "family_user_id": self.family_user_id,
            },
        )


class CareTask(_CareRecord):
    """Row of tasks; only finished tasks carry an actual_end."""

    task_name: str
    state: TaskState
    notes: str | None = None
    actual_end: datetime | None = None

    def to_signal(self, registry: SignalDomainRegistry | None = None) -> Signal | None:
        if self.actual_end is None:
            return None
        return self._signal(
            registry,
            SignalDomain.TASK,
            "task_completion",
            "tasks",
            self.actual_end,
            {"state": self.state, "task_name": self.task_name, "notes": self.notes},
        )
