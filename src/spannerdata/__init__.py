"""
Pooled sessions and transactions for a Spanner-style database.
"""
from .connections import (
    ClientOptions,
    RetryOptions,
    SessionClient,
    SessionPool,
    SessionPoolKey,
    SessionPoolManager,
    SessionPoolOptions,
)
from .core import (
    CommandPartition,
    ConnectionState,
    ConnectionStringBuilder,
    SpannerBatchCommand,
    SpannerCommand,
    SpannerConnection,
)
from .transactions import (
    DisposeBehavior,
    EphemeralTransaction,
    ExplicitTransaction,
    RetriableTransaction,
    TransactionScope,
)
from .utility.exceptions import (
    AbortedError,
    BatchDmlError,
    ConfigError,
    DeadlineExceededError,
    InvalidArgumentError,
    InvalidStateError,
    SessionNotFoundError,
    SpannerError,
    UnavailableError,
)
from .v1 import (
    DatabaseName,
    Mutation,
    TimestampBound,
    TransactionId,
    TransactionOptions,
)

__all__ = [
    # Core components
    "SpannerConnection",
    "SpannerCommand",
    "SpannerBatchCommand",
    "CommandPartition",
    "ConnectionState",
    "ConnectionStringBuilder",
    # Sessions
    "SessionClient",
    "SessionPool",
    "SessionPoolKey",
    "SessionPoolManager",
    # Transactions
    "EphemeralTransaction",
    "ExplicitTransaction",
    "RetriableTransaction",
    "TransactionScope",
    "DisposeBehavior",
    # Config classes
    "ClientOptions",
    "RetryOptions",
    "SessionPoolOptions",
    # Values
    "DatabaseName",
    "Mutation",
    "TimestampBound",
    "TransactionId",
    "TransactionOptions",
    # Errors
    "SpannerError",
    "AbortedError",
    "BatchDmlError",
    "ConfigError",
    "DeadlineExceededError",
    "InvalidArgumentError",
    "InvalidStateError",
    "SessionNotFoundError",
    "UnavailableError",
]
