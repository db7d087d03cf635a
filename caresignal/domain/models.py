"""
Domain models for signal correlation.

These models represent the core business concepts and are framework-agnostic.
Signals come from upstream care domains and are never mutated here; compound
events and their contributions are written once and never updated.
"""

import hashlib
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class SignalDomain(str, Enum):
    """Observation streams the engine ships adapters for."""

    MEDICATION = "medication"
    VITAL = "vital"
    OBSERVATION = "observation"
    TASK = "task"


class Severity(str, Enum):
    """Compound event severity, as configured on the triggering rule."""

    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SourceRef(BaseModel):
    """Pointer back to the upstream row a signal was read from."""

    model_config = ConfigDict(frozen=True)

    table_name: str = Field(min_length=1)
    id: str = Field(min_length=1)


class Signal(BaseModel):
    """A single normalized observation from one domain."""

    model_config = ConfigDict(frozen=True)

    # Plain string so registered domains beyond SignalDomain are allowed
    domain: str
    subtype: str
    subject_id: str
    timestamp: datetime
    abnormal: bool = False
    payload: dict[str, Any] = Field(default_factory=dict)
    source_ref: SourceRef

    @field_validator("domain", mode="before")
    @classmethod
    def coerce_domain(cls, v: Any) -> Any:
        return v.value if isinstance(v, SignalDomain) else v


class CorrelationRule(BaseModel):
    """Externally configured AND-combination of per-domain minimum counts."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    correlation_type: str = ""
    required_domains: frozenset[str]
    thresholds: dict[str, int]
    severity_output: Severity
    confidence_value: float = Field(ge=0.0, le=1.0)
    requires_human_action: bool = False
    active: bool = True
    time_window_hours: int | None = Field(default=None, gt=0)
    contribution_cap: int | None = Field(default=None, gt=0)
    reasoning_template: str | None = None

    @field_validator("required_domains", mode="before")
    @classmethod
    def coerce_domains(cls, v: Any) -> Any:
        if isinstance(v, (list, set, tuple, frozenset)):
            return frozenset(d.value if isinstance(d, SignalDomain) else d for d in v)
        return v

    @field_validator("thresholds", mode="before")
    @classmethod
    def coerce_threshold_keys(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {(k.value if isinstance(k, SignalDomain) else k): n for k, n in v.items()}
        return v

    def sorted_domains(self) -> list[str]:
        """Required domains in a stable order for reasoning and linking."""
        return sorted(self.required_domains)


class EvaluationWindow(BaseModel):
    """Inclusive lookback range for one evaluation run."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    hours: int = Field(gt=0)

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end


class CompoundEvent(BaseModel):
    """Higher-confidence event synthesized from co-occurring signals."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    subject_id: str
    agency_id: str | None = None
    rule_id: str
    rule_name: str
    correlation_type: str = ""
    severity: Severity
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning_text: str = Field(min_length=1)
    reasoning_detail: dict[str, Any]
    window_start: datetime
    window_end: datetime
    contributing_signal_count: int = Field(ge=0)
    requires_human_action: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @computed_field(return_type=str)
    def natural_key(self) -> str:
        """Stable key for (subject, rule, window) used for idempotent writes."""
        return natural_key(self.subject_id, self.rule_id, self.window_start, self.window_end)


class SignalContribution(BaseModel):
    """Audit link from a compound event to one signal that justified it."""

    model_config = ConfigDict(frozen=True)

    compound_event_id: str
    source_domain: str
    source_ref: SourceRef
    signal_type: str
    signal_timestamp: datetime
    signal_snapshot: dict[str, Any]
    contribution_weight: float = Field(default=1.0, ge=0.0, le=1.0)


class EventSummary(BaseModel):
    """Entry in the run result for one created event."""

    rule_name: str
    event_id: str
    severity: Severity
    deduplicated: bool = False


class RuleFailure(BaseModel):
    """A satisfied (or unevaluable) rule whose event could not be produced."""

    rule_name: str
    error: str


EvaluationStatus = Literal["success", "partial", "subject_not_found"]


class EvaluationResult(BaseModel):
    """Outcome of one correlation run for a single subject."""

    status: EvaluationStatus
    subject_id: str
    agency_id: str | None = None
    window_hours: int
    window_start: datetime | None = None
    window_end: datetime | None = None
    events_created: int = Field(default=0, ge=0)
    events: list[EventSummary] = Field(default_factory=list)
    failures: list[RuleFailure] = Field(default_factory=list)
    skipped_rules: list[str] = Field(default_factory=list)


class AgencyEvaluationResult(BaseModel):
    """Outcome of running correlation for every subject in an agency."""

    agency_id: str
    total_events_created: int = 0
    subjects_processed: int = 0
    details: list[EvaluationResult] = Field(default_factory=list)


def natural_key(subject_id: str, rule_id: str, window_start: datetime, window_end: datetime) -> str:
    raw = "|".join([subject_id, rule_id, window_start.isoformat(), window_end.isoformat()])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
