"""
Core services for the correlation engine.

This package contains the aggregation, rule evaluation, event emission and
storage services, plus the engine that wires them together.
"""

from .correlation_engine import CorrelationEngine, EventHandler
from .event_emitter import EmitterInvariantError, EventEmitter
from .event_store import EventStore, EventStoreError, InMemoryEventStore
from .rule_evaluator import RuleConfigurationError, evaluate, validate_rule
from .rule_registry import (
    DEFAULT_RULES,
    InMemoryRuleRegistry,
    InMemorySubjectDirectory,
    RuleRegistry,
    SubjectDirectory,
    load_rules,
)
from .signal_sources import Result, SignalSource, configure_logging
from .window_aggregator import WindowAggregate, WindowAggregator

__all__ = [
    "CorrelationEngine",
    "EventHandler",
    "EventEmitter",
    "EmitterInvariantError",
    "EventStore",
    "EventStoreError",
    "InMemoryEventStore",
    "RuleConfigurationError",
    "evaluate",
    "validate_rule",
    "DEFAULT_RULES",
    "InMemoryRuleRegistry",
    "InMemorySubjectDirectory",
    "RuleRegistry",
    "SubjectDirectory",
    "load_rules",
    "Result",
    "SignalSource",
    "configure_logging",
    "WindowAggregate",
    "WindowAggregator",
]
