"""
Tests for the correlation engine pipeline.

Covers:
- Reference end-to-end scenarios
- Rule independence and provenance completeness
- Per-rule atomic writes and partial failure reporting
- Source outages, skipped rules, idempotent re-runs
- Event handlers and agency-wide runs
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

import pytest
from factories import (
    RaisingSignalSource,
    SignalFactory,
    StaticSignalSource,
    concerning_task,
    high_systolic,
    late_dose,
    urgent_observation,
)

from caresignal.config import CorrelationConfig
from caresignal.domain.models import (
    CompoundEvent,
    CorrelationRule,
    EvaluationResult,
    Severity,
    Signal,
)
from caresignal.domain.signal_domains import SignalDomainRegistry
from caresignal.services.correlation_engine import CorrelationEngine, floor_to_granularity
from caresignal.services.event_store import InMemoryEventStore
from caresignal.services.rule_registry import (
    DEFAULT_RULES,
    InMemoryRuleRegistry,
    InMemorySubjectDirectory,
)
from caresignal.services.signal_sources import SignalSource
from caresignal.services.window_aggregator import WindowAggregator


class FailingContributionStore(InMemoryEventStore):
    """Store whose unit of work fails when linking evidence for one rule."""

    def __init__(self, failing_rule: str) -> None:
        super().__init__()
        self.failing_rule = failing_rule

    @contextmanager
    def transaction(self) -> Iterator:  # type: ignore[override]
        with super().transaction() as pending:
            original = pending.add_contributions

            def add_contributions(contributions: Iterable) -> None:
                original(contributions)
                if any(e.rule_name == self.failing_rule for e in pending.events):
                    raise OSError("contribution insert failed")

            pending.add_contributions = add_contributions  # type: ignore[method-assign]
            yield pending


def _engine(
    now: datetime,
    registry: SignalDomainRegistry,
    signals: Iterable[Signal] = (),
    rules: Iterable[CorrelationRule] = DEFAULT_RULES,
    store: InMemoryEventStore | None = None,
    config: CorrelationConfig | None = None,
    failing_domains: Iterable[str] = (),
    raising_domains: Iterable[str] = (),
    clock: Callable[[], datetime] | None = None,
    system_clock: bool = False,
) -> CorrelationEngine:
    signals = list(signals)
    failing = set(failing_domains)
    raising = set(raising_domains)
    sources: list[SignalSource] = [
        RaisingSignalSource(domain)
        if domain in raising
        else StaticSignalSource(
            domain, [s for s in signals if s.domain == domain], should_fail=domain in failing
        )
        for domain in ("medication", "vital", "observation", "task")
    ]
    engine_clock = None if system_clock else (clock or (lambda: now))
    return CorrelationEngine(
        subjects=InMemorySubjectDirectory(
            {"resident-1": "agency-1", "resident-2": "agency-1", "resident-3": "agency-2"}
        ),
        rules=InMemoryRuleRegistry(rules),
        aggregator=WindowAggregator(registry, sources),
        store=store if store is not None else InMemoryEventStore(),
        config=config,
        clock=engine_clock,
    )


class TestReferenceScenarios:
    def test_three_late_doses_and_high_systolic(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        signals = [late_dose(make_signal, hours_ago=h) for h in (10, 40, 70)]
        signals.append(high_systolic(make_signal, value=150))
        engine = _engine(now, registry, signals)

        result = engine.run("resident-1", 168)

        assert result.status == "success"
        assert result.events_created == 1
        [summary] = result.events
        assert summary.rule_name == "medication_adherence_vitals_pattern"
        event = engine.store.get_event(summary.event_id)
        assert event is not None
        assert event.confidence == 0.85
        assert event.severity is Severity.HIGH
        assert event.contributing_signal_count == 4

    def test_single_late_dose_does_not_fire(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        signals = [late_dose(make_signal), high_systolic(make_signal)]
        engine = _engine(now, registry, signals)

        result = engine.run("resident-1", 168)

        assert result.status == "success"
        assert result.events_created == 0
        assert len(engine.store) == 0

    def test_medication_vitals_and_urgent_observation(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        signals = [
            late_dose(make_signal),
            late_dose(make_signal, status="MISSED", hours_ago=30),
            high_systolic(make_signal),
            urgent_observation(make_signal),
        ]
        engine = _engine(now, registry, signals)

        result = engine.run("resident-1", 168)

        assert result.events_created == 2
        assert {e.rule_name for e in result.events} == {
            "medication_adherence_vitals_pattern",
            "multi_domain_instability",
        }

    def test_no_signals_in_window(self, now: datetime, registry: SignalDomainRegistry) -> None:
        result = _engine(now, registry).run("resident-1", 168)

        assert result.status == "success"
        assert result.events_created == 0
        assert result.failures == []


def test_all_reference_rules_fire_as_separate_events(
    now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
) -> None:
    signals = [
        late_dose(make_signal),
        late_dose(make_signal, hours_ago=5),
        high_systolic(make_signal),
        urgent_observation(make_signal),
        concerning_task(make_signal),
    ]
    engine = _engine(now, registry, signals)

    result = engine.run("resident-1", 168)

    assert result.events_created == 3
    assert len({e.event_id for e in result.events}) == 3
    assert len(engine.store.events_for_subject("resident-1")) == 3


def test_every_event_links_evidence_from_each_required_domain(
    now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
) -> None:
    signals = [
        late_dose(make_signal),
        late_dose(make_signal, hours_ago=5),
        high_systolic(make_signal),
        urgent_observation(make_signal),
        concerning_task(make_signal),
        late_dose(make_signal, hours_ago=500),
    ]
    engine = _engine(now, registry, signals)
    in_window = {
        (s.source_ref.table_name, s.source_ref.id)
        for s in signals
        if now - timedelta(hours=168) <= s.timestamp <= now
    }

    result = engine.run("resident-1", 168)

    rules = {r.name: r for r in DEFAULT_RULES}
    for summary in result.events:
        contributions = engine.store.contributions_for(summary.event_id)
        domains = {c.source_domain for c in contributions}
        assert domains == rules[summary.rule_name].required_domains
        for c in contributions:
            assert (c.source_ref.table_name, c.source_ref.id) in in_window


def test_contribution_cap_enforced_end_to_end(
    now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
) -> None:
    signals = [late_dose(make_signal, hours_ago=h + 1) for h in range(25)]
    signals.append(high_systolic(make_signal))
    engine = _engine(now, registry, signals, rules=DEFAULT_RULES[:1])

    result = engine.run("resident-1", 168)

    [summary] = result.events
    medication = [
        c
        for c in engine.store.contributions_for(summary.event_id)
        if c.source_domain == "medication"
    ]
    assert len(medication) == 10
    event = engine.store.get_event(summary.event_id)
    assert event is not None
    assert event.contributing_signal_count == 26


def test_write_failure_is_per_rule_and_atomic(
    now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
) -> None:
    signals = [
        late_dose(make_signal),
        late_dose(make_signal, hours_ago=5),
        high_systolic(make_signal),
        urgent_observation(make_signal),
    ]
    store = FailingContributionStore("multi_domain_instability")
    engine = _engine(now, registry, signals, store=store)

    result = engine.run("resident-1", 168)

    assert result.status == "partial"
    assert [e.rule_name for e in result.events] == ["medication_adherence_vitals_pattern"]
    assert [f.rule_name for f in result.failures] == ["multi_domain_instability"]
    assert "contribution insert failed" in result.failures[0].error
    assert len(store) == 1


def test_source_outage_fails_dependent_rules_only(
    now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
) -> None:
    signals = [
        late_dose(make_signal),
        late_dose(make_signal, hours_ago=5),
        high_systolic(make_signal),
        urgent_observation(make_signal),
        concerning_task(make_signal),
    ]
    engine = _engine(now, registry, signals, failing_domains=["medication"])

    result = engine.run("resident-1", 168)

    assert result.status == "partial"
    assert [e.rule_name for e in result.events] == ["family_concern_caregiver_observation"]
    assert {f.rule_name for f in result.failures} == {
        "medication_adherence_vitals_pattern",
        "multi_domain_instability",
    }
    assert all("medication" in f.error for f in result.failures)


def test_raising_source_fails_dependent_rules_only(
    now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
) -> None:
    signals = [urgent_observation(make_signal), concerning_task(make_signal)]
    engine = _engine(now, registry, signals, raising_domains=["vital"])

    result = engine.run("resident-1", 168)

    assert result.status == "partial"
    assert [e.rule_name for e in result.events] == ["family_concern_caregiver_observation"]
    assert {f.rule_name for f in result.failures} == {
        "medication_adherence_vitals_pattern",
        "multi_domain_instability",
    }
    assert all("vital" in f.error for f in result.failures)


def test_zero_threshold_rule_is_skipped_for_quiet_subject(
    now: datetime, registry: SignalDomainRegistry
) -> None:
    zero = CorrelationRule(
        id="z",
        name="z",
        required_domains={"medication", "vital"},
        thresholds={"medication": 0, "vital": 0},
        severity_output=Severity.LOW,
        confidence_value=0.5,
    )
    engine = _engine(now, registry, rules=[zero, *DEFAULT_RULES])

    result = engine.run("resident-1", 168)

    assert result.status == "success"
    assert result.failures == []
    assert result.skipped_rules == ["z"]
    assert len(engine.store) == 0


def test_unevaluable_rule_is_skipped_without_blocking_others(
    now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
) -> None:
    orphan = CorrelationRule(
        id="activity_only",
        name="activity_only",
        required_domains={"care_activity"},
        thresholds={"care_activity": 1},
        severity_output=Severity.LOW,
        confidence_value=0.5,
    )
    signals = [
        late_dose(make_signal),
        late_dose(make_signal, hours_ago=3),
        high_systolic(make_signal),
    ]
    engine = _engine(now, registry, signals, rules=[orphan, DEFAULT_RULES[0]])

    result = engine.run("resident-1", 168)

    assert result.status == "success"
    assert result.skipped_rules == ["activity_only"]
    assert result.events_created == 1


def test_inactive_seed_rule_is_ignored(
    now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
) -> None:
    result = _engine(now, registry, [high_systolic(make_signal)]).run("resident-1", 168)

    assert result.skipped_rules == []
    assert result.events_created == 0


class TestReruns:
    def _signals(self, make_signal: SignalFactory) -> list[Signal]:
        return [
            late_dose(make_signal),
            late_dose(make_signal, hours_ago=5),
            high_systolic(make_signal),
        ]

    def test_default_mode_appends_on_rerun(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        engine = _engine(now, registry, self._signals(make_signal))

        engine.run("resident-1", 168)
        engine.run("resident-1", 168)

        assert len(engine.store) == 2

    def test_idempotent_mode_reuses_existing_event(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        engine = _engine(
            now,
            registry,
            self._signals(make_signal),
            config=CorrelationConfig(idempotent_writes=True),
        )

        first = engine.run("resident-1", 168)
        second = engine.run("resident-1", 168)

        assert len(engine.store) == 1
        assert first.events_created == 1
        assert second.events_created == 0
        assert second.events[0].deduplicated is True
        assert second.events[0].event_id == first.events[0].event_id

    def test_idempotent_mode_with_system_clock_and_pinned_window(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        engine = _engine(
            now,
            registry,
            self._signals(make_signal),
            config=CorrelationConfig(idempotent_writes=True),
            system_clock=True,
        )

        first = engine.run("resident-1", 168, as_of=now)
        second = engine.run("resident-1", 168, as_of=now)

        assert len(engine.store) == 1
        assert first.events_created == 1
        assert second.events_created == 0

    def test_idempotent_mode_dedups_reruns_within_granularity(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        current = [now + timedelta(minutes=5)]
        engine = _engine(
            now,
            registry,
            self._signals(make_signal),
            config=CorrelationConfig(idempotent_writes=True, window_granularity_minutes=60),
            clock=lambda: current[0],
        )

        first = engine.run("resident-1", 168)
        current[0] = now + timedelta(minutes=40)
        second = engine.run("resident-1", 168)
        current[0] = now + timedelta(minutes=65)
        third = engine.run("resident-1", 168)

        assert first.window_end == second.window_end == now
        assert second.events[0].deduplicated is True
        assert third.window_end == now + timedelta(hours=1)
        assert third.events_created == 1
        assert len(engine.store) == 2

    def test_default_mode_keeps_exact_window_end(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        engine = _engine(
            now, registry, self._signals(make_signal), clock=lambda: now + timedelta(minutes=7)
        )

        assert engine.run("resident-1", 168).window_end == now + timedelta(minutes=7)


@pytest.mark.parametrize(
    "minutes,expected",
    [
        (60, datetime(2026, 3, 2, 12, 0)),
        (15, datetime(2026, 3, 2, 12, 30)),
        (1440, datetime(2026, 3, 2)),
    ],
)
def test_floor_to_granularity(now: datetime, minutes: int, expected: datetime) -> None:
    ts = now + timedelta(minutes=37, seconds=12)

    assert floor_to_granularity(ts, minutes) == expected.replace(tzinfo=now.tzinfo)


def _pattern_signals(make_signal: SignalFactory) -> list[Signal]:
    return [late_dose(make_signal), late_dose(make_signal, hours_ago=2), high_systolic(make_signal)]


class TestHandlers:
    def test_handler_receives_committed_events(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        received: list[CompoundEvent] = []
        engine = _engine(
            now,
            registry,
            _pattern_signals(make_signal),
        )
        engine.add_handler(received.append)

        result = engine.run("resident-1", 168)

        assert [e.id for e in received] == [result.events[0].event_id]

    def test_handler_error_does_not_fail_run(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        def broken(event: CompoundEvent) -> None:
            raise RuntimeError("webhook down")

        engine = _engine(
            now,
            registry,
            _pattern_signals(make_signal),
        )
        engine.add_handler(broken)

        result = engine.run("resident-1", 168)

        assert result.status == "success"
        assert result.events_created == 1

    def test_handler_may_rerun_same_subject(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        engine = _engine(
            now,
            registry,
            _pattern_signals(make_signal),
        )
        nested: list[EvaluationResult] = []
        calls: list[str] = []

        def rerun(event: CompoundEvent) -> None:
            if not calls:
                calls.append(event.id)
                nested.append(engine.run(event.subject_id, 168))

        engine.add_handler(rerun)

        result = engine.run("resident-1", 168)

        assert result.events_created == 1
        assert nested[0].events_created == 1
        assert len(engine.store) == 2


def test_subject_locks_are_released_after_runs(
    now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
) -> None:
    engine = _engine(now, registry, [late_dose(make_signal)])

    engine.run("resident-1", 168)
    engine.run("resident-2", 168)
    engine.run_agency("agency-1", 168)

    assert engine._subject_locks == {}


class TestRunInputs:
    def test_unknown_subject(self, now: datetime, registry: SignalDomainRegistry) -> None:
        result = _engine(now, registry).run("nobody", 168)

        assert result.status == "subject_not_found"
        assert result.events_created == 0
        assert result.events == []

    @pytest.mark.parametrize("hours", [0, -5])
    def test_non_positive_window_rejected(
        self, now: datetime, registry: SignalDomainRegistry, hours: int
    ) -> None:
        with pytest.raises(ValueError, match="window_hours"):
            _engine(now, registry).run("resident-1", hours)

    def test_default_window_from_config(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        signals = [
            late_dose(make_signal, hours_ago=1),
            late_dose(make_signal, hours_ago=30),
            high_systolic(make_signal),
        ]
        engine = _engine(
            now, registry, signals, config=CorrelationConfig(default_window_hours=24)
        )

        result = engine.run("resident-1")

        assert result.window_hours == 24
        assert result.window_start == now - timedelta(hours=24)
        assert result.events_created == 0

    def test_window_excludes_older_signals(
        self, now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
    ) -> None:
        signals = [
            late_dose(make_signal, hours_ago=1),
            late_dose(make_signal, hours_ago=200),
            high_systolic(make_signal),
        ]

        assert _engine(now, registry, signals).run("resident-1", 168).events_created == 0
        assert _engine(now, registry, signals).run("resident-1", 240).events_created == 1


def test_run_agency_covers_every_subject(
    now: datetime, registry: SignalDomainRegistry, make_signal: SignalFactory
) -> None:
    signals = [
        late_dose(make_signal, subject_id="resident-2"),
        late_dose(make_signal, subject_id="resident-2", hours_ago=4),
        high_systolic(make_signal, subject_id="resident-2"),
        late_dose(make_signal, subject_id="resident-3"),
        late_dose(make_signal, subject_id="resident-3", hours_ago=4),
        high_systolic(make_signal, subject_id="resident-3"),
    ]
    engine = _engine(now, registry, signals)

    result = engine.run_agency("agency-1", 168)

    assert result.subjects_processed == 2
    assert result.total_events_created == 1
    assert [d.subject_id for d in result.details] == ["resident-1", "resident-2"]
    assert engine.store.events_for_subject("resident-3") == []


def test_run_agency_shares_one_window_end(now: datetime, registry: SignalDomainRegistry) -> None:
    engine = _engine(now, registry, system_clock=True)

    result = engine.run_agency("agency-1", 24, as_of=now)

    assert {d.window_end for d in result.details} == {now}
