"""
Signal correlation engine.

One run for one subject:
1. Resolve the subject and load the active rules
2. Aggregate abnormal signals per domain over the lookback window
3. Evaluate every rule against the counts
4. Emit and persist one compound event per satisfied rule
5. Hand committed events to the registered handlers

Runs are synchronous and keep no state between invocations other than what
the event store holds. Runs for the same subject are serialized.
"""

import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta

from caresignal.config import AppConfig, CorrelationConfig, get_config
from caresignal.domain.models import (
    AgencyEvaluationResult,
    CompoundEvent,
    CorrelationRule,
    EvaluationResult,
    EvaluationWindow,
    EventSummary,
    RuleFailure,
    natural_key,
)
from caresignal.services.event_emitter import EventEmitter
from caresignal.services.event_store import EventStore, InMemoryEventStore
from caresignal.services.rule_evaluator import evaluate, partition_rules, required_domains
from caresignal.services.rule_registry import (
    InMemoryRuleRegistry,
    RuleRegistry,
    SubjectDirectory,
    load_rules,
)
from caresignal.services.signal_sources import Result, SignalSource, logger
from caresignal.services.window_aggregator import WindowAggregate, WindowAggregator

EventHandler = Callable[[CompoundEvent], None]

_EPOCH = datetime(1970, 1, 1)


def floor_to_granularity(ts: datetime, minutes: int) -> datetime:
    """Floor a timestamp to a multiple of ``minutes`` since the epoch."""
    step = timedelta(minutes=minutes)
    return ts - (ts - _EPOCH.replace(tzinfo=ts.tzinfo)) % step


class _SubjectLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class CorrelationEngine:
    """Aggregate -> evaluate -> emit pipeline over a rule table."""

    def __init__(
        self,
        subjects: SubjectDirectory,
        rules: RuleRegistry,
        aggregator: WindowAggregator,
        store: EventStore,
        emitter: EventEmitter | None = None,
        config: CorrelationConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        handlers: Iterable[EventHandler] = (),
    ) -> None:
        self.config = config or CorrelationConfig()
        self.subjects = subjects
        self.rules = rules
        self.aggregator = aggregator
        self.store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self.emitter = emitter or EventEmitter(
            aggregator.registry, contribution_cap=self.config.contribution_cap, clock=self._clock
        )
        self.handlers: list[EventHandler] = list(handlers)
        self.logger = logger.bind(component="correlation_engine")

        self._locks_guard = threading.Lock()
        self._subject_locks: dict[str, _SubjectLock] = {}

    @classmethod
    def from_config(
        cls,
        subjects: SubjectDirectory,
        sources: Iterable[SignalSource],
        config: AppConfig | None = None,
        store: EventStore | None = None,
        rules: RuleRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> "CorrelationEngine":
        """Wire an engine from application configuration."""
        app_config = config or get_config()
        correlation = app_config.correlation

        if rules is None:
            rules = (
                InMemoryRuleRegistry(load_rules(correlation.rules_file))
                if correlation.rules_file
                else InMemoryRuleRegistry()
            )

        aggregator = WindowAggregator(correlation.build_registry(), sources)
        return cls(
            subjects=subjects,
            rules=rules,
            aggregator=aggregator,
            store=store if store is not None else InMemoryEventStore(),
            config=correlation,
            clock=clock,
        )

    def add_handler(self, handler: EventHandler) -> None:
        """Register a consumer for committed compound events."""
        self.handlers.append(handler)

    @contextmanager
    def _subject_lock(self, subject_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._subject_locks.setdefault(subject_id, _SubjectLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._subject_locks[subject_id]

    def _window(self, window_hours: int, as_of: datetime | None = None) -> EvaluationWindow:
        end = as_of if as_of is not None else self._clock()
        if self.config.idempotent_writes:
            # Re-runs within one granularity step share a natural key
            end = floor_to_granularity(end, self.config.window_granularity_minutes)
        return EvaluationWindow(
            start=end - timedelta(hours=window_hours), end=end, hours=window_hours
        )

    def run(
        self, subject_id: str, window_hours: int | None = None, as_of: datetime | None = None
    ) -> EvaluationResult:
        """
        Correlate one subject's signals over the ``window_hours`` hours ending at ``as_of``.

        ``as_of`` defaults to the engine clock. Handlers are called after the
        subject lock is released, so they may start another run.
        """
        hours = self.config.default_window_hours if window_hours is None else window_hours
        if hours <= 0:
            raise ValueError(f"window_hours must be positive, got {hours}")

        log = self.logger.bind(subject_id=subject_id, window_hours=hours)
        agency_id = self.subjects.agency_for(subject_id)
        if agency_id is None:
            log.warning("subject_not_found")
            return EvaluationResult(
                status="subject_not_found", subject_id=subject_id, window_hours=hours
            )

        committed: list[CompoundEvent] = []
        with self._subject_lock(subject_id):
            window = self._window(hours, as_of)
            valid_rules, invalid = partition_rules(
                self.rules.active_rules(), self.aggregator.domains
            )
            aggregate = self.aggregator.collect(
                subject_id, window.start, window.end, required_domains(valid_rules)
            )

            failures: list[RuleFailure] = []
            evaluable: list[CorrelationRule] = []
            for rule in valid_rules:
                unavailable = sorted(rule.required_domains & aggregate.failed_domains.keys())
                if unavailable:
                    failures.append(
                        RuleFailure(
                            rule_name=rule.name,
                            error=f"signal source unavailable for {', '.join(unavailable)}",
                        )
                    )
                else:
                    evaluable.append(rule)

            events: list[EventSummary] = []
            for rule in evaluate(aggregate.counts, evaluable):
                outcome = self._emit_and_store(
                    subject_id, agency_id, rule, aggregate, window, committed
                )
                if outcome.is_ok():
                    events.append(outcome.unwrap())
                else:
                    failures.append(
                        RuleFailure(rule_name=rule.name, error=str(outcome.unwrap_err()))
                    )

        for event in committed:
            self._dispatch(event)

        result = EvaluationResult(
            status="partial" if failures else "success",
            subject_id=subject_id,
            agency_id=agency_id,
            window_hours=hours,
            window_start=window.start,
            window_end=window.end,
            events_created=sum(1 for e in events if not e.deduplicated),
            events=events,
            failures=failures,
            skipped_rules=[e.rule_name for e in invalid],
        )
        log.info(
            "correlation_run_completed",
            status=result.status,
            counts=aggregate.counts,
            events_created=result.events_created,
            failures=len(failures),
            skipped_rules=len(result.skipped_rules),
        )
        return result

    def _emit_and_store(
        self,
        subject_id: str,
        agency_id: str,
        rule: CorrelationRule,
        aggregate: WindowAggregate,
        window: EvaluationWindow,
        committed: list[CompoundEvent],
    ) -> Result[EventSummary, Exception]:
        """Create and persist one event with its contributions as a single unit."""
        try:
            if self.config.idempotent_writes:
                existing = self.store.find_by_natural_key(
                    natural_key(subject_id, rule.id, window.start, window.end)
                )
                if existing is not None:
                    self.logger.info(
                        "compound_event_deduplicated", rule_name=rule.name, event_id=existing.id
                    )
                    return Result.ok(
                        EventSummary(
                            rule_name=rule.name,
                            event_id=existing.id,
                            severity=existing.severity,
                            deduplicated=True,
                        )
                    )

            event, contributions = self.emitter.emit(
                subject_id, rule, aggregate.matched, window, agency_id=agency_id
            )
            with self.store.transaction() as tx:
                tx.add_event(event)
                tx.add_contributions(contributions)
        except Exception as e:
            self.logger.exception(
                "compound_event_failed", rule_name=rule.name, subject_id=subject_id, error=str(e)
            )
            return Result.err(e)

        self.logger.info(
            "compound_event_created",
            rule_name=rule.name,
            event_id=event.id,
            severity=event.severity.value,
            confidence=event.confidence,
            contributions=len(contributions),
        )
        committed.append(event)
        return Result.ok(
            EventSummary(rule_name=rule.name, event_id=event.id, severity=event.severity)
        )

    def _dispatch(self, event: CompoundEvent) -> None:
        for handler in self.handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    "event_dispatch_failed",
                    handler=getattr(handler, "__name__", type(handler).__name__),
                    event_id=event.id,
                    error=str(e),
                )

    def run_agency(
        self, agency_id: str, window_hours: int | None = None, as_of: datetime | None = None
    ) -> AgencyEvaluationResult:
        """Run correlation for every subject belonging to an agency, over one shared window end."""
        end = as_of if as_of is not None else self._clock()
        details = [
            self.run(subject_id, window_hours, as_of=end)
            for subject_id in self.subjects.subjects_in_agency(agency_id)
        ]
        result = AgencyEvaluationResult(
            agency_id=agency_id,
            total_events_created=sum(d.events_created for d in details),
            subjects_processed=len(details),
            details=details,
        )
        self.logger.info(
            "agency_correlation_completed",
            agency_id=agency_id,
            subjects_processed=result.subjects_processed,
            total_events_created=result.total_events_created,
        )
        return result
