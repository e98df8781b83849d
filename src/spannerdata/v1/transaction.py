"""
Transaction options and read staleness bounds.

A TransactionOptions value is one of a closed set of modes: read-only (with a
TimestampBound), read-write, or partitioned DML. "Single-use" is not a mode of
its own; it describes how options are applied (inline in one request instead
of through a begin-transaction RPC).
"""
import base64
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TimestampBoundMode(str, Enum):
    """How current the data seen by a read-only transaction must be."""

    STRONG = "strong"
    READ_TIMESTAMP = "read_timestamp"
    MIN_READ_TIMESTAMP = "min_read_timestamp"
    EXACT_STALENESS = "exact_staleness"
    MAX_STALENESS = "max_staleness"


class TimestampBound(BaseModel):
    """
    Staleness bound for read-only transactions.

    MIN_READ_TIMESTAMP and MAX_STALENESS let the server pick the read
    timestamp per request, so they only make sense for single-use reads.
    """

    model_config = ConfigDict(frozen=True)

    mode: TimestampBoundMode = TimestampBoundMode.STRONG
    timestamp: Optional[datetime] = None
    staleness: Optional[timedelta] = None

    @model_validator(mode="after")
    def validate_mode_fields(self):
        """Each mode carries exactly the field it needs."""
        needs_timestamp = self.mode in (
            TimestampBoundMode.READ_TIMESTAMP,
            TimestampBoundMode.MIN_READ_TIMESTAMP,
        )
        needs_staleness = self.mode in (
            TimestampBoundMode.EXACT_STALENESS,
            TimestampBoundMode.MAX_STALENESS,
        )
        if needs_timestamp != (self.timestamp is not None):
            raise ValueError(f"{self.mode.value} bound requires exactly a timestamp")
        if needs_staleness != (self.staleness is not None):
            raise ValueError(f"{self.mode.value} bound requires exactly a staleness")
        if self.staleness is not None and self.staleness < timedelta(0):
            raise ValueError("Staleness must not be negative")
        return self

    @classmethod
    def strong(cls) -> "TimestampBound":
        return cls()

    @classmethod
    def of_read_timestamp(cls, timestamp: datetime) -> "TimestampBound":
        return cls(mode=TimestampBoundMode.READ_TIMESTAMP, timestamp=timestamp)

    @classmethod
    def of_min_read_timestamp(cls, timestamp: datetime) -> "TimestampBound":
        return cls(mode=TimestampBoundMode.MIN_READ_TIMESTAMP, timestamp=timestamp)

    @classmethod
    def of_exact_staleness(cls, staleness: timedelta) -> "TimestampBound":
        return cls(mode=TimestampBoundMode.EXACT_STALENESS, staleness=staleness)

    @classmethod
    def of_max_staleness(cls, staleness: timedelta) -> "TimestampBound":
        return cls(mode=TimestampBoundMode.MAX_STALENESS, staleness=staleness)

    @property
    def is_single_use_only(self) -> bool:
        return self.mode in (
            TimestampBoundMode.MIN_READ_TIMESTAMP,
            TimestampBoundMode.MAX_STALENESS,
        )

    def to_transaction_options(self) -> "TransactionOptions":
        return TransactionOptions.read_only(self)


class TransactionMode(str, Enum):
    READ_ONLY = "read_only"
    READ_WRITE = "read_write"
    PARTITIONED_DML = "partitioned_dml"


class TransactionOptions(BaseModel):
    """Options used to begin a transaction, or to run one single-use request."""

    model_config = ConfigDict(frozen=True)

    mode: TransactionMode
    read_only_bound: Optional[TimestampBound] = None

    @model_validator(mode="after")
    def validate_bound(self):
        if self.mode != TransactionMode.READ_ONLY and self.read_only_bound:
            raise ValueError("Only read-only transactions take a timestamp bound")
        return self

    @classmethod
    def read_write(cls) -> "TransactionOptions":
        return cls(mode=TransactionMode.READ_WRITE)

    @classmethod
    def partitioned_dml(cls) -> "TransactionOptions":
        return cls(mode=TransactionMode.PARTITIONED_DML)

    @classmethod
    def read_only(cls, bound: Optional[TimestampBound] = None) -> "TransactionOptions":
        return cls(
            mode=TransactionMode.READ_ONLY,
            read_only_bound=bound or TimestampBound.strong(),
        )

    @property
    def is_read_only(self) -> bool:
        return self.mode == TransactionMode.READ_ONLY


class TransactionId(BaseModel):
    """
    Portable identifier of a read-only transaction.

    Lets another connection (or another process) read at the same snapshot by
    reattaching to the session that owns the transaction.
    """

    model_config = ConfigDict(frozen=True)

    database: str
    session: str
    id: str = Field(description="Base64 encoded server transaction id")
    timestamp_bound: Optional[TimestampBound] = None

    @classmethod
    def from_bytes(
        cls,
        database: str,
        session: str,
        transaction_id: bytes,
        timestamp_bound: Optional[TimestampBound] = None,
    ) -> "TransactionId":
        return cls(
            database=database,
            session=session,
            id=base64.b64encode(transaction_id).decode("ascii"),
            timestamp_bound=timestamp_bound,
        )

    @property
    def id_bytes(self) -> bytes:
        return base64.b64decode(self.id)
