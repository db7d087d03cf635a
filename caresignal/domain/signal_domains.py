"""
Registry of signal domains.

Each domain registers how to recognise an abnormal signal and how to
snapshot a signal for audit links. The aggregator and emitter only ever go
through this registry, so a new observation stream is added by registering a
DomainSpec rather than by editing their loops.
"""

from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from caresignal.domain.models import Signal, SignalDomain

AbnormalityPredicate = Callable[[Signal], bool]
SnapshotBuilder = Callable[[Signal], dict[str, Any]]

SNAPSHOT_TEXT_LIMIT = 100

DEFAULT_MEDICATION_STATUSES: tuple[str, ...] = ("LATE", "MISSED")
DEFAULT_OBSERVATION_CONCERN_LEVELS: tuple[str, ...] = ("MODERATE", "URGENT")
DEFAULT_TASK_CONCERN_KEYWORDS: tuple[str, ...] = ("concern", "issue", "problem")
DEFAULT_TASK_COMPLETED_STATE = "completed"

# (low, high): abnormal when value < low or value > high; None means unbounded
DEFAULT_VITAL_RANGES: dict[str, tuple[float | None, float | None]] = {
    "blood_pressure_systolic": (None, 140.0),
    "heart_rate": (60.0, 100.0),
}


@dataclass(frozen=True)
class DomainSpec:
    """How one observation stream is classified and linked."""

    domain: str
    source_table: str
    is_abnormal: AbnormalityPredicate
    snapshot: SnapshotBuilder
    label: str = field(default="")

    @property
    def display_label(self) -> str:
        return self.label or f"{self.domain} signals"


class SignalDomainRegistry:
    """Mapping of domain name to DomainSpec."""

    def __init__(self, specs: Iterable[DomainSpec] = ()) -> None:
        self._specs: dict[str, DomainSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: DomainSpec) -> None:
        if spec.domain in self._specs:
            raise ValueError(f"Domain {spec.domain!r} is already registered")
        self._specs[spec.domain] = spec

    def get(self, domain: str) -> DomainSpec | None:
        return self._specs.get(domain)

    def __contains__(self, domain: object) -> bool:
        return domain in self._specs

    def __iter__(self) -> Iterator[DomainSpec]:
        return iter(self._specs.values())

    @property
    def domains(self) -> frozenset[str]:
        return frozenset(self._specs)

    def is_abnormal(self, signal: Signal) -> bool:
        """Classify a signal; signals of unregistered domains are never abnormal."""
        spec = self._specs.get(signal.domain)
        return bool(spec and spec.is_abnormal(signal))


def _truncate(value: Any, limit: int = SNAPSHOT_TEXT_LIMIT) -> Any:
    if isinstance(value, str) and len(value) > limit:
        return value[:limit]
    return value


def medication_predicate(statuses: Iterable[str]) -> AbnormalityPredicate:
    wanted = frozenset(s.upper() for s in statuses)

    def predicate(signal: Signal) -> bool:
        status = signal.payload.get("status")
        return isinstance(status, str) and status.upper() in wanted

    return predicate


def vital_predicate(
    ranges: Mapping[str, tuple[float | None, float | None]],
) -> AbnormalityPredicate:
    table = dict(ranges)

    def predicate(signal: Signal) -> bool:
        metric_type = signal.payload.get("metric_type", signal.subtype)
        bounds = table.get(metric_type)
        value = signal.payload.get("value")
        if bounds is None or not isinstance(value, (int, float)) or isinstance(value, bool):
            return False
        low, high = bounds
        if low is not None and value < low:
            return True
        return high is not None and value > high

    return predicate


def observation_predicate(levels: Iterable[str]) -> AbnormalityPredicate:
    wanted = frozenset(level.upper() for level in levels)

    def predicate(signal: Signal) -> bool:
        level = signal.payload.get("concern_level")
        return isinstance(level, str) and level.upper() in wanted

    return predicate


def task_predicate(
    keywords: Iterable[str], completed_state: str = DEFAULT_TASK_COMPLETED_STATE
) -> AbnormalityPredicate:
    needles = tuple(k.lower() for k in keywords if k)

    def predicate(signal: Signal) -> bool:
        if signal.payload.get("state") != completed_state:
            return False
        notes = signal.payload.get("notes") or ""
        lowered = notes.lower()
        return any(needle in lowered for needle in needles)

    return predicate


def _medication_snapshot(signal: Signal) -> dict[str, Any]:
    return {
        "status": signal.payload.get("status"),
        "medication_id": signal.payload.get("medication_id"),
    }


def _vital_snapshot(signal: Signal) -> dict[str, Any]:
    return {
        "metric_type": signal.payload.get("metric_type", signal.subtype),
        "value": signal.payload.get("value"),
        "unit": signal.payload.get("unit"),
    }


def _observation_snapshot(signal: Signal) -> dict[str, Any]:
    return {
        "concern_level": signal.payload.get("concern_level"),
        "observation_text": _truncate(signal.payload.get("observation_text")),
    }


def _task_snapshot(signal: Signal) -> dict[str, Any]:
    return {
        "state": signal.payload.get("state"),
        "task_name": signal.payload.get("task_name"),
        "notes": _truncate(signal.payload.get("notes")),
    }


def build_default_registry(
    medication_statuses: Iterable[str] = DEFAULT_MEDICATION_STATUSES,
    vital_ranges: Mapping[str, tuple[float | None, float | None]] | None = None,
    observation_levels: Iterable[str] = DEFAULT_OBSERVATION_CONCERN_LEVELS,
    task_keywords: Iterable[str] = DEFAULT_TASK_CONCERN_KEYWORDS,
) -> SignalDomainRegistry:
    """Registry with the four care domains the platform records."""
    return SignalDomainRegistry(
        [
            DomainSpec(
                domain=SignalDomain.MEDICATION.value,
                source_table="medication_administration_log",
                is_abnormal=medication_predicate(medication_statuses),
                snapshot=_medication_snapshot,
                label="late/missed medications",
            ),
            DomainSpec(
                domain=SignalDomain.VITAL.value,
                source_table="health_metrics",
                is_abnormal=vital_predicate(
                    DEFAULT_VITAL_RANGES if vital_ranges is None else vital_ranges
                ),
                snapshot=_vital_snapshot,
                label="abnormal vital sign readings",
            ),
            DomainSpec(
                domain=SignalDomain.OBSERVATION.value,
                source_table="family_observations",
                is_abnormal=observation_predicate(observation_levels),
                snapshot=_observation_snapshot,
                label="family concern observations",
            ),
            DomainSpec(
                domain=SignalDomain.TASK.value,
                source_table="tasks",
                is_abnormal=task_predicate(task_keywords),
                snapshot=_task_snapshot,
                label="caregiver task concerns",
            ),
        ]
    )
