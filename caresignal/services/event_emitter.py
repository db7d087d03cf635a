"""
Compound event construction.

Turns one satisfied rule plus the matched signals into a CompoundEvent and
its SignalContribution links. Confidence and severity come straight from the
rule; nothing here is scored dynamically.
"""

from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from caresignal.domain.models import (
    CompoundEvent,
    CorrelationRule,
    EvaluationWindow,
    Signal,
    SignalContribution,
)
from caresignal.domain.signal_domains import SignalDomainRegistry
from caresignal.services.signal_sources import logger
from caresignal.services.window_aggregator import newest_first

DEFAULT_CONTRIBUTION_CAP = 10


class EmitterInvariantError(RuntimeError):
    """An event would be created without evidence for a required domain."""


class EventEmitter:
    """Builds compound events and their evidence links."""

    def __init__(
        self,
        registry: SignalDomainRegistry,
        contribution_cap: int = DEFAULT_CONTRIBUTION_CAP,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if contribution_cap < 1:
            raise ValueError("contribution_cap must be at least 1")
        self.registry = registry
        self.contribution_cap = contribution_cap
        self._clock = clock or (lambda: datetime.now(UTC))
        self.logger = logger.bind(component="event_emitter")

    def emit(
        self,
        subject_id: str,
        rule: CorrelationRule,
        matched_signals_by_domain: Mapping[str, Sequence[Signal]],
        window: EvaluationWindow,
        agency_id: str | None = None,
    ) -> tuple[CompoundEvent, list[SignalContribution]]:
        domains = rule.sorted_domains()
        counts = {d: len(matched_signals_by_domain.get(d, ())) for d in domains}
        now = self._clock()

        event = CompoundEvent(
            subject_id=subject_id,
            agency_id=agency_id,
            rule_id=rule.id,
            rule_name=rule.name,
            correlation_type=rule.correlation_type,
            severity=rule.severity_output,
            confidence=rule.confidence_value,
            reasoning_text=self.reasoning_text(rule, counts, window),
            reasoning_detail=self.reasoning_detail(rule, counts, window, now),
            window_start=window.start,
            window_end=window.end,
            contributing_signal_count=sum(counts.values()),
            requires_human_action=rule.requires_human_action,
            created_at=now,
        )

        cap = rule.contribution_cap or self.contribution_cap
        contributions: list[SignalContribution] = []
        for domain in domains:
            selected = newest_first(matched_signals_by_domain.get(domain, ()))[:cap]
            if not selected:
                raise EmitterInvariantError(
                    f"Rule {rule.name!r} fired without signals for domain {domain!r}"
                )
            contributions.extend(self._contribution(event.id, s) for s in selected)

        self.logger.debug(
            "compound_event_built",
            rule_name=rule.name,
            subject_id=subject_id,
            contributions=len(contributions),
        )
        return event, contributions

    def _contribution(self, event_id: str, signal: Signal) -> SignalContribution:
        spec = self.registry.get(signal.domain)
        snapshot = spec.snapshot(signal) if spec else {"subtype": signal.subtype}
        return SignalContribution(
            compound_event_id=event_id,
            source_domain=signal.domain,
            source_ref=signal.source_ref,
            signal_type=signal.subtype,
            signal_timestamp=signal.timestamp,
            signal_snapshot=snapshot,
        )

    def _label(self, domain: str) -> str:
        spec = self.registry.get(domain)
        return spec.display_label if spec else f"{domain} signals"

    def reasoning_text(
        self, rule: CorrelationRule, counts: Mapping[str, int], window: EvaluationWindow
    ) -> str:
        if rule.reasoning_template:
            try:
                return rule.reasoning_template.format(**counts, window_hours=window.hours)
            except (KeyError, IndexError, ValueError) as e:
                self.logger.warning(
                    "reasoning_template_invalid", rule_name=rule.name, error=str(e)
                )

        parts = [f"{counts[d]} {self._label(d)}" for d in rule.sorted_domains()]
        if len(parts) > 1:
            joined = ", ".join(parts[:-1]) + f" and {parts[-1]}"
        else:
            joined = parts[0]
        headline = rule.description or rule.name
        return f"{headline}: {joined} in past {window.hours} hours"

    def reasoning_detail(
        self,
        rule: CorrelationRule,
        counts: Mapping[str, int],
        window: EvaluationWindow,
        evaluated_at: datetime,
    ) -> dict[str, Any]:
        return {
            "rule_id": rule.id,
            "rule_name": rule.name,
            "correlation_type": rule.correlation_type,
            "counts": dict(counts),
            "thresholds": {d: rule.thresholds[d] for d in rule.sorted_domains()},
            "domains_affected": len(counts),
            "time_window_hours": window.hours,
            "window_start": window.start.isoformat(),
            "window_end": window.end.isoformat(),
            "evaluation_timestamp": evaluated_at.isoformat(),
        }
