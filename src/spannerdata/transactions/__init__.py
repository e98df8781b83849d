"""
Transaction strategies for spannerdata.
"""
from .ambient import AmbientTransaction, TransactionScope
from .base import ResultStream, SpannerTransactionBase, TransactionKind
from .ephemeral import EphemeralTransaction
from .explicit import DisposeBehavior, ExplicitTransaction
from .retriable import RetriableTransaction

__all__ = [
    "SpannerTransactionBase",
    "TransactionKind",
    "ResultStream",
    "EphemeralTransaction",
    "ExplicitTransaction",
    "DisposeBehavior",
    "RetriableTransaction",
    "AmbientTransaction",
    "TransactionScope",
]
