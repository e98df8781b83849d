"""
Data model for the spannerdata wire layer.

Names, transaction options and request/response messages. Everything here
is a plain value; nothing talks to the network.
"""
from .names import DatabaseName, InstanceName, database_of_session
from .requests import (
    CommitResponse,
    ExecuteBatchDmlRequest,
    ExecuteBatchDmlResponse,
    ExecuteSqlRequest,
    Mutation,
    MutationOperation,
    PartitionOptions,
    ResultSet,
    TransactionSelector,
    TypeCode,
)
from .transaction import (
    TimestampBound,
    TimestampBoundMode,
    TransactionId,
    TransactionMode,
    TransactionOptions,
)

__all__ = [
    "DatabaseName",
    "InstanceName",
    "database_of_session",
    "CommitResponse",
    "ExecuteBatchDmlRequest",
    "ExecuteBatchDmlResponse",
    "ExecuteSqlRequest",
    "Mutation",
    "MutationOperation",
    "PartitionOptions",
    "ResultSet",
    "TransactionSelector",
    "TypeCode",
    "TimestampBound",
    "TimestampBoundMode",
    "TransactionId",
    "TransactionMode",
    "TransactionOptions",
]
