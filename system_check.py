"""
End-to-end check of the correlation pipeline against reference scenarios.

This script exercises:
1. Configuration loading and validation
2. Signal normalization through the care adapters
3. Window aggregation, rule evaluation and event emission
4. Provenance links for every created event
5. Unknown-subject handling

Run with: uv run python system_check.py
"""

import sys
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.care.domain import (
    CareTask,
    ConcernLevel,
    FamilyObservation,
    HealthMeasurement,
    MedicationAdministration,
    MedicationStatus,
    TaskState,
)
from adapters.care.sources import (
    FamilyObservationSource,
    HealthMetricsSource,
    MedicationLogSource,
    TaskCompletionSource,
)
from caresignal.config import AppConfig
from caresignal.domain.models import EvaluationResult
from caresignal.services.correlation_engine import CorrelationEngine
from caresignal.services.event_store import InMemoryEventStore
from caresignal.services.rule_registry import InMemorySubjectDirectory

console = Console()

AGENCY_ID = "agency-demo"


@dataclass
class Scenario:
    name: str
    subject_id: str
    window_hours: int
    expected_rules: set[str]
    expected_status: str = "success"


SCENARIOS = [
    Scenario(
        "three late doses and high systolic",
        "resident-x",
        168,
        {"medication_adherence_vitals_pattern"},
    ),
    Scenario("single late dose", "resident-single-late", 168, set()),
    Scenario(
        "medication, vitals and urgent family concern",
        "resident-y",
        168,
        {"medication_adherence_vitals_pattern", "multi_domain_instability"},
    ),
    Scenario("no signals in window", "resident-quiet", 168, set()),
    Scenario("unknown resident", "resident-unknown", 168, set(), "subject_not_found"),
]


def build_engine(now: datetime, config: AppConfig | None = None) -> CorrelationEngine:
    """Engine over in-memory sources seeded with the scenario residents."""
    medications = MedicationLogSource()
    vitals = HealthMetricsSource()
    observations = FamilyObservationSource()
    tasks = TaskCompletionSource()

    def hours_ago(h: float) -> datetime:
        return now - timedelta(hours=h)

    medications.add(
        *[
            MedicationAdministration(
                id=f"mal-x-{i}",
                resident_id="resident-x",
                medication_id="lisinopril-10mg",
                status=MedicationStatus.LATE,
                administered_at=hours_ago(12 * (i + 1)),
            )
            for i in range(3)
        ],
        MedicationAdministration(
            id="mal-s-0",
            resident_id="resident-single-late",
            medication_id="metformin-500mg",
            status=MedicationStatus.LATE,
            administered_at=hours_ago(20),
        ),
        MedicationAdministration(
            id="mal-y-0",
            resident_id="resident-y",
            medication_id="warfarin-5mg",
            status=MedicationStatus.LATE,
            administered_at=hours_ago(30),
        ),
        MedicationAdministration(
            id="mal-y-1",
            resident_id="resident-y",
            medication_id="warfarin-5mg",
            status=MedicationStatus.MISSED,
            administered_at=hours_ago(54),
        ),
    )
    vitals.add(
        HealthMeasurement(
            id="hm-x-0",
            resident_id="resident-x",
            metric_type="blood_pressure_systolic",
            value_numeric=150,
            unit="mmHg",
            recorded_at=hours_ago(6),
        ),
        HealthMeasurement(
            id="hm-s-0",
            resident_id="resident-single-late",
            metric_type="heart_rate",
            value_numeric=112,
            unit="bpm",
            recorded_at=hours_ago(8),
        ),
        HealthMeasurement(
            id="hm-y-0",
            resident_id="resident-y",
            metric_type="blood_pressure_systolic",
            value_numeric=158,
            unit="mmHg",
            recorded_at=hours_ago(10),
        ),
    )
    observations.add(
        FamilyObservation(
            id="fo-y-0",
            resident_id="resident-y",
            concern_level=ConcernLevel.URGENT,
            observation_text="Mom seemed confused and dizzy during our call this evening",
            submitted_at=hours_ago(4),
        )
    )
    tasks.add(
        CareTask(
            id="task-y-0",
            resident_id="resident-y",
            task_name="Evening medication round",
            state=TaskState.COMPLETED,
            notes="Resident asleep, dose given late",
            actual_end=hours_ago(30),
        )
    )

    subjects = InMemorySubjectDirectory(
        {
            "resident-x": AGENCY_ID,
            "resident-single-late": AGENCY_ID,
            "resident-y": AGENCY_ID,
            "resident-quiet": AGENCY_ID,
        }
    )
    return CorrelationEngine.from_config(
        subjects,
        [medications, vitals, observations, tasks],
        config=config or AppConfig(),
        store=InMemoryEventStore(),
        clock=lambda: now,
    )


def run_scenarios(
    now: datetime | None = None,
) -> list[tuple[Scenario, EvaluationResult, bool]]:
    """Run every scenario; the flag tells whether the outcome matched expectations."""
    engine = build_engine(now or datetime.now(UTC))
    outcomes = []
    for scenario in SCENARIOS:
        result = engine.run(scenario.subject_id, scenario.window_hours)
        fired = {e.rule_name for e in result.events}
        passed = fired == scenario.expected_rules and result.status == scenario.expected_status
        if passed:
            for summary in result.events:
                if not engine.store.contributions_for(summary.event_id):
                    passed = False
        outcomes.append((scenario, result, passed))
    return outcomes


def main() -> int:
    console.print(Panel("Signal Correlation Engine - System Check", style="bold blue"))

    outcomes = run_scenarios()

    table = Table(title="Scenario Results")
    table.add_column("Scenario", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Events", style="magenta")
    table.add_column("Rules Fired", style="yellow")
    table.add_column("Result", style="white")

    for scenario, result, passed in outcomes:
        table.add_row(
            scenario.name,
            result.status,
            str(result.events_created),
            ", ".join(e.rule_name for e in result.events) or "-",
            "[green]PASS[/green]" if passed else "[red]FAIL[/red]",
        )
    console.print(table)

    failed = sum(1 for _, _, passed in outcomes if not passed)
    if failed:
        console.print(f"{failed} scenario(s) failed", style="red")
        return 1
    console.print("All scenarios passed", style="green")
    return 0


if __name__ == "__main__":
    sys.exit(main())
