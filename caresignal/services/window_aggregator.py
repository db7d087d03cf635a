"""
Window aggregation over the registered signal sources.

For a subject and an inclusive time range, pulls signals from each domain's
source and keeps the ones the domain registry classifies as abnormal.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from caresignal.domain.models import Signal
from caresignal.domain.signal_domains import SignalDomainRegistry
from caresignal.services.signal_sources import Result, SignalSource, logger


def newest_first(signals: Iterable[Signal]) -> list[Signal]:
    """Timestamp descending; source id breaks ties so ordering is stable."""
    return sorted(
        signals,
        key=lambda s: (s.timestamp, s.source_ref.table_name, s.source_ref.id),
        reverse=True,
    )


@dataclass
class WindowAggregate:
    """Abnormal signals per domain for one subject and window."""

    subject_id: str
    window_start: datetime
    window_end: datetime
    matched: dict[str, list[Signal]] = field(default_factory=dict)
    failed_domains: dict[str, str] = field(default_factory=dict)

    @property
    def counts(self) -> dict[str, int]:
        return {domain: len(signals) for domain, signals in self.matched.items()}

    def count(self, domain: str) -> int:
        return len(self.matched.get(domain, ()))

    def signals_for(self, domain: str) -> list[Signal]:
        return self.matched.get(domain, [])


class WindowAggregator:
    """
    Counts abnormal signals per domain within a window.

    A domain with no registered source counts as zero. A source that fails is
    recorded in ``failed_domains`` so callers can tell "zero" from "unknown".
    """

    def __init__(
        self, registry: SignalDomainRegistry, sources: Iterable[SignalSource] = ()
    ) -> None:
        self.registry = registry
        self.sources: dict[str, SignalSource] = {}
        self.logger = logger.bind(component="window_aggregator")
        for source in sources:
            self.add_source(source)

    def add_source(self, source: SignalSource) -> None:
        """Attach the source for a registered domain."""
        if not hasattr(source, "fetch_signals"):
            raise TypeError(f"Source {source} must implement SignalSource protocol")
        if source.domain not in self.registry:
            raise ValueError(f"No domain registered for source domain {source.domain!r}")
        self.sources[source.domain] = source
        self.logger.info("source_added", domain=source.domain, source_type=type(source).__name__)

    @property
    def domains(self) -> frozenset[str]:
        """Domains that can be aggregated (registered and backed by a source)."""
        return frozenset(self.sources)

    def collect(
        self,
        subject_id: str,
        window_start: datetime,
        window_end: datetime,
        domains: Iterable[str] | None = None,
    ) -> WindowAggregate:
        if window_start > window_end:
            raise ValueError("window_start must not be after window_end")

        wanted = sorted(self.registry.domains if domains is None else set(domains))
        aggregate = WindowAggregate(
            subject_id=subject_id, window_start=window_start, window_end=window_end
        )

        for domain in wanted:
            spec = self.registry.get(domain)
            source = self.sources.get(domain)
            if spec is None or source is None:
                aggregate.matched[domain] = []
                continue

            try:
                result = source.fetch_signals(subject_id, window_start, window_end)
            except Exception as e:
                result = Result.err(e)
            if result.is_err():
                error = result.unwrap_err()
                self.logger.warning(
                    "source_fetch_failed", domain=domain, subject_id=subject_id, error=str(error)
                )
                aggregate.failed_domains[domain] = str(error)
                continue

            matched = [
                signal
                for signal in result.unwrap()
                if signal.domain == domain
                and signal.subject_id == subject_id
                and window_start <= signal.timestamp <= window_end
                and spec.is_abnormal(signal)
            ]
            aggregate.matched[domain] = newest_first(matched)

        self.logger.debug(
            "window_aggregated",
            subject_id=subject_id,
            counts=aggregate.counts,
            failed_domains=sorted(aggregate.failed_domains),
        )
        return aggregate

    def aggregate(
        self, subject_id: str, window_start: datetime, window_end: datetime
    ) -> dict[str, int]:
        """Abnormal-signal count per domain."""
        return self.collect(subject_id, window_start, window_end).counts
