"""
Signal source protocol, explicit result type and logging setup.

Key patterns:
- Protocol-based dependency injection for the four upstream domains
- Generic Result type for expected failures at the source boundary
- Structured logging shared by every engine component
"""

import logging
from datetime import datetime
from typing import Generic, Literal, Protocol, TypeVar

import structlog

from caresignal.domain.models import Signal

_SHARED_PROCESSORS = [
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]

# Structured logging with JSON output unless reconfigured at startup
structlog.configure(
    processors=[*_SHARED_PROCESSORS, structlog.processors.JSONRenderer()],
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)

logger = structlog.get_logger(__name__)


def configure_logging(
    level: str = "INFO", fmt: Literal["json", "console"] = "json"
) -> None:
    """Reconfigure structlog from LoggingConfig values."""
    renderer = (
        structlog.dev.ConsoleRenderer() if fmt == "console" else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[*_SHARED_PROCESSORS, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    Used where a failure must be reported per item (one source, one rule)
    instead of aborting the whole evaluation.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error


class SignalSource(Protocol):
    """
    Read-only view over one upstream domain, normalized into Signals.

    Implementations return every signal for the subject recorded in the
    inclusive range; abnormality filtering happens in the aggregator.
    """

    domain: str

    def fetch_signals(
        self, subject_id: str, window_start: datetime, window_end: datetime
    ) -> Result[list[Signal], Exception]:
        ...
