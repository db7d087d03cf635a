"""Shared fixtures for correlation engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta
from itertools import count
from typing import Any

import pytest
from factories import NOW, SignalFactory

from caresignal.domain.models import Signal, SourceRef
from caresignal.domain.signal_domains import SignalDomainRegistry, build_default_registry

_TABLES = {
    "medication": "medication_administration_log",
    "vital": "health_metrics",
    "observation": "family_observations",
    "task": "tasks",
}

_SUBTYPES = {
    "medication": "medication_admin",
    "observation": "family_observation",
    "task": "task_completion",
}


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def registry() -> SignalDomainRegistry:
    return build_default_registry()


@pytest.fixture
def make_signal() -> SignalFactory:
    """Factory for signals; payload keys are passed as keyword arguments."""
    ids = count(1)

    def _make(
        domain: str,
        subject_id: str = "resident-1",
        hours_ago: float = 1.0,
        subtype: str | None = None,
        **payload: Any,
    ) -> Signal:
        n = next(ids)
        if domain == "vital":
            subtype = subtype or payload.get("metric_type", "heart_rate")
            payload.setdefault("metric_type", subtype)
        return Signal(
            domain=domain,
            subtype=subtype or _SUBTYPES.get(domain, domain),
            subject_id=subject_id,
            timestamp=NOW - timedelta(hours=hours_ago),
            payload=payload,
            source_ref=SourceRef(table_name=_TABLES.get(domain, domain), id=f"{domain}-{n:04d}"),
        )

    return _make
