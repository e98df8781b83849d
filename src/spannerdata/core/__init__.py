"""
Core components of spannerdata: connections and commands.
"""
from .command import (
    CommandPartition,
    CommandType,
    SpannerBatchCommand,
    SpannerCommand,
)
from .configs import ConnectionStringBuilder
from .connection import ConnectionState, SpannerConnection, StateChange

__all__ = [
    "CommandPartition",
    "CommandType",
    "ConnectionState",
    "ConnectionStringBuilder",
    "SpannerBatchCommand",
    "SpannerCommand",
    "SpannerConnection",
    "StateChange",
]
