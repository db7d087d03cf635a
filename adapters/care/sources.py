"""
Read-only signal sources over care-platform records.

One source per domain, each implementing the SignalSource protocol. They are
backed by in-process record lists here; a production deployment swaps them
for query-backed sources with the same interface.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Generic, Protocol, TypeVar

from adapters.care.domain import (
    CareTask,
    FamilyObservation,
    HealthMeasurement,
    MedicationAdministration,
)
from caresignal.domain.models import Signal, SignalDomain
from caresignal.domain.signal_domains import SignalDomainRegistry
from caresignal.services.signal_sources import Result, logger


class _ConvertibleRecord(Protocol):
    resident_id: str

    def to_signal(self, registry: SignalDomainRegistry | None = None) -> Signal | None: ...


RecordT = TypeVar("RecordT", bound=_ConvertibleRecord)


class RecordSignalSource(Generic[RecordT]):
    """Serves signals for one domain from a list of upstream records."""

    domain: str

    def __init__(
        self, records: Iterable[RecordT] = (), registry: SignalDomainRegistry | None = None
    ) -> None:
        self.records: list[RecordT] = list(records)
        self.registry = registry
        self.logger = logger.bind(source=type(self).__name__, domain=self.domain)

    def add(self, *records: RecordT) -> None:
        self.records.extend(records)

    def fetch_signals(
        self, subject_id: str, window_start: datetime, window_end: datetime
    ) -> Result[list[Signal], Exception]:
        try:
            signals: list[Signal] = []
            for record in self.records:
                if record.resident_id != subject_id:
                    continue
                signal = record.to_signal(self.registry)
                if signal is not None and window_start <= signal.timestamp <= window_end:
                    signals.append(signal)
        except Exception as e:
            self.logger.error("signal_fetch_failed", subject_id=subject_id, error=str(e))
            return Result.err(e)

        self.logger.debug("signals_fetched", subject_id=subject_id, count=len(signals))
        return Result.ok(signals)


class MedicationLogSource(RecordSignalSource[MedicationAdministration]):
    domain = SignalDomain.MEDICATION.value


class HealthMetricsSource(RecordSignalSource[HealthMeasurement]):
    domain = SignalDomain.VITAL.value


class FamilyObservationSource(RecordSignalSource[FamilyObservation]):
    domain = SignalDomain.OBSERVATION.value


class TaskCompletionSource(RecordSignalSource[CareTask]):
    domain = SignalDomain.TASK.value
