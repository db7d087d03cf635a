"""
Correlation rule registry.

Rules are external configuration; the engine only reads the active ones.
The seeded set mirrors the platform's reference rule table and can be
replaced by a JSON rule file.
"""

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from pydantic import TypeAdapter

from caresignal.domain.models import CorrelationRule, Severity, SignalDomain
from caresignal.services.signal_sources import logger

MEDICATION = SignalDomain.MEDICATION.value
VITAL = SignalDomain.VITAL.value
OBSERVATION = SignalDomain.OBSERVATION.value
TASK = SignalDomain.TASK.value

DEFAULT_RULES: tuple[CorrelationRule, ...] = (
    CorrelationRule(
        id="medication_adherence_vitals_pattern",
        name="medication_adherence_vitals_pattern",
        description="Late/missed medications combined with rising blood pressure or heart rate",
        correlation_type="MEDICATION_STABILITY_RISK",
        required_domains={MEDICATION, VITAL},
        thresholds={MEDICATION: 2, VITAL: 1},
        severity_output=Severity.HIGH,
        confidence_value=0.85,
        requires_human_action=True,
        time_window_hours=168,
        contribution_cap=10,
        reasoning_template=(
            "Medication instability pattern detected: {medication} late/missed medications "
            "and {vital} abnormal vital sign readings in past {window_hours} hours"
        ),
    ),
    CorrelationRule(
        id="family_concern_caregiver_observation",
        name="family_concern_caregiver_observation",
        description="Family observation matches caregiver task outcome concern",
        correlation_type="CROSS_OBSERVER_VALIDATION",
        required_domains={OBSERVATION, TASK},
        thresholds={OBSERVATION: 1, TASK: 1},
        severity_output=Severity.MODERATE,
        confidence_value=0.80,
        requires_human_action=True,
        time_window_hours=48,
        contribution_cap=5,
        reasoning_template=(
            "Cross-observer validation: {observation} family concern(s) align with "
            "{task} caregiver task concern(s)"
        ),
    ),
    CorrelationRule(
        id="multi_domain_instability",
        name="multi_domain_instability",
        description="Simultaneous issues across medications, vitals, and observations",
        correlation_type="MULTI_DOMAIN_INSTABILITY",
        required_domains={MEDICATION, VITAL, OBSERVATION},
        thresholds={MEDICATION: 2, VITAL: 1, OBSERVATION: 1},
        severity_output=Severity.CRITICAL,
        confidence_value=0.95,
        requires_human_action=True,
        time_window_hours=96,
        contribution_cap=5,
        reasoning_template=(
            "CRITICAL: Multi-domain instability - {medication} medication issues, "
            "{vital} abnormal vitals, {observation} urgent family observations"
        ),
    ),
    # Needs a care_activity stream, which has no adapter yet
    CorrelationRule(
        id="device_vitals_activity_decline",
        name="device_vitals_activity_decline",
        description="Device shows declining activity with abnormal vitals",
        correlation_type="ACTIVITY_HEALTH_CORRELATION",
        required_domains={VITAL, "care_activity"},
        thresholds={VITAL: 1, "care_activity": 1},
        severity_output=Severity.MODERATE,
        confidence_value=0.75,
        requires_human_action=False,
        active=False,
        time_window_hours=72,
    ),
)

_rules_adapter = TypeAdapter(list[CorrelationRule])


class RuleRegistry(Protocol):
    """Read accessor over correlation rule configuration."""

    def active_rules(self) -> list[CorrelationRule]: ...


class InMemoryRuleRegistry:
    """Rule registry holding rules in insertion order."""

    def __init__(self, rules: Iterable[CorrelationRule] = DEFAULT_RULES) -> None:
        self._rules: dict[str, CorrelationRule] = {}
        for rule in rules:
            self.add(rule)

    def add(self, rule: CorrelationRule) -> None:
        if rule.name in self._rules:
            raise ValueError(f"Rule {rule.name!r} is already registered")
        self._rules[rule.name] = rule

    def all_rules(self) -> list[CorrelationRule]:
        return list(self._rules.values())

    def active_rules(self) -> list[CorrelationRule]:
        return [rule for rule in self._rules.values() if rule.active]


def load_rules(path: str | Path) -> list[CorrelationRule]:
    """Load rule definitions from a JSON array file."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    rules = _rules_adapter.validate_python(raw)
    logger.info("correlation_rules_loaded", path=str(path), count=len(rules))
    return rules


class SubjectDirectory(Protocol):
    """Resolves subjects (residents) to their agency."""

    def agency_for(self, subject_id: str) -> str | None: ...

    def subjects_in_agency(self, agency_id: str) -> list[str]: ...


class InMemorySubjectDirectory:
    """Subject directory backed by a subject -> agency mapping."""

    def __init__(self, subjects: dict[str, str] | None = None) -> None:
        self._subjects: dict[str, str] = dict(subjects or {})

    def add(self, subject_id: str, agency_id: str) -> None:
        self._subjects[subject_id] = agency_id

    def agency_for(self, subject_id: str) -> str | None:
        return self._subjects.get(subject_id)

    def subjects_in_agency(self, agency_id: str) -> list[str]:
        return sorted(s for s, a in self._subjects.items() if a == agency_id)
