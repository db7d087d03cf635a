"""
Write side for compound events and their signal contributions.

An event and its contributions are always written in one unit of work: the
store only sees them after the transaction block exits cleanly.
"""

import threading
from collections.abc import Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import Protocol

from caresignal.domain.models import CompoundEvent, SignalContribution
from caresignal.services.signal_sources import logger


class EventStoreError(RuntimeError):
    """Raised when a unit of work cannot be committed."""


class UnitOfWork(Protocol):
    def add_event(self, event: CompoundEvent) -> None: ...

    def add_contributions(self, contributions: Iterable[SignalContribution]) -> None: ...


class EventStore(Protocol):
    """Persistence boundary for the engine's outputs."""

    def transaction(self) -> AbstractContextManager[UnitOfWork]: ...

    def find_by_natural_key(self, key: str) -> CompoundEvent | None: ...

    def get_event(self, event_id: str) -> CompoundEvent | None: ...

    def contributions_for(self, event_id: str) -> list[SignalContribution]: ...

    def events_for_subject(self, subject_id: str) -> list[CompoundEvent]: ...


class _PendingWrites:
    """Staged writes for one InMemoryEventStore transaction."""

    def __init__(self) -> None:
        self.events: list[CompoundEvent] = []
        self.contributions: list[SignalContribution] = []

    def add_event(self, event: CompoundEvent) -> None:
        self.events.append(event)

    def add_contributions(self, contributions: Iterable[SignalContribution]) -> None:
        self.contributions.extend(contributions)


class InMemoryEventStore:
    """
    Reference EventStore keeping rows in process memory.

    Commit validates referential integrity (every contribution points at an
    event in the same transaction or already stored) before anything becomes
    visible.
    """

    def __init__(self) -> None:
        self._events: dict[str, CompoundEvent] = {}
        self._by_key: dict[str, str] = {}
        self._contributions: dict[str, list[SignalContribution]] = {}
        self._lock = threading.Lock()
        self.logger = logger.bind(component="event_store")

    @contextmanager
    def transaction(self) -> Iterator[_PendingWrites]:
        pending = _PendingWrites()
        try:
            yield pending
        except Exception:
            self.logger.warning(
                "transaction_rolled_back",
                events=len(pending.events),
                contributions=len(pending.contributions),
            )
            raise
        self._commit(pending)

    def _commit(self, pending: _PendingWrites) -> None:
        with self._lock:
            new_ids = {e.id for e in pending.events}
            for event in pending.events:
                if event.id in self._events:
                    raise EventStoreError(f"Duplicate compound event id {event.id}")
            for contribution in pending.contributions:
                if (
                    contribution.compound_event_id not in new_ids
                    and contribution.compound_event_id not in self._events
                ):
                    raise EventStoreError(
                        "Signal contribution references unknown compound event "
                        f"{contribution.compound_event_id}"
                    )

            for event in pending.events:
                self._events[event.id] = event
                self._by_key[event.natural_key] = event.id
                self._contributions.setdefault(event.id, [])
            for contribution in pending.contributions:
                self._contributions[contribution.compound_event_id].append(contribution)

    def find_by_natural_key(self, key: str) -> CompoundEvent | None:
        event_id = self._by_key.get(key)
        return self._events.get(event_id) if event_id else None

    def get_event(self, event_id: str) -> CompoundEvent | None:
        return self._events.get(event_id)

    def contributions_for(self, event_id: str) -> list[SignalContribution]:
        return list(self._contributions.get(event_id, ()))

    def events_for_subject(self, subject_id: str) -> list[CompoundEvent]:
        """Events for the subject, newest first."""
        events = [e for e in self._events.values() if e.subject_id == subject_id]
        return sorted(events, key=lambda e: e.created_at, reverse=True)

    def __len__(self) -> int:
        return len(self._events)
