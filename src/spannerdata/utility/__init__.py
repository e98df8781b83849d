"""
Utility functions and classes for spannerdata.
"""
from .clock import Clock, Scheduler, SystemClock, SystemScheduler
from .exceptions import (
    AbortedError,
    AttemptOutcome,
    ConfigError,
    DeadlineExceededError,
    InvalidArgumentError,
    InvalidStateError,
    SessionNotFoundError,
    SpannerError,
    UnavailableError,
)

__all__ = [
    "Clock",
    "Scheduler",
    "SystemClock",
    "SystemScheduler",
    "SpannerError",
    "InvalidStateError",
    "InvalidArgumentError",
    "ConfigError",
    "AbortedError",
    "DeadlineExceededError",
    "UnavailableError",
    "SessionNotFoundError",
    "AttemptOutcome",
]
