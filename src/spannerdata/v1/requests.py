"""
Request and response messages exchanged with the session transport.

These mirror the server's wire messages field for field where the driver
needs them; encoding them is the transport's job.
"""
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

import grpc
from pydantic import BaseModel, Field, model_validator

from .transaction import TransactionOptions


class TypeCode(IntEnum):
    """Column and parameter type codes."""

    TYPE_CODE_UNSPECIFIED = 0
    BOOL = 1
    INT64 = 2
    FLOAT64 = 3
    TIMESTAMP = 4
    DATE = 5
    STRING = 6
    BYTES = 7
    ARRAY = 8
    STRUCT = 9


class TransactionSelector(BaseModel):
    """
    Which transaction a request runs in.

    Exactly one of:
    - single_use: run in a temporary transaction with these options
    - id: run in an already begun transaction
    - begin: begin a transaction with these options as part of this request
    """

    single_use: Optional[TransactionOptions] = None
    id: Optional[bytes] = None
    begin: Optional[TransactionOptions] = None

    @model_validator(mode="after")
    def validate_exactly_one(self):
        chosen = [
            f for f in (self.single_use, self.id, self.begin) if f is not None
        ]
        if len(chosen) != 1:
            raise ValueError(
                "TransactionSelector needs exactly one of single_use, id, begin"
            )
        return self


class ExecuteSqlRequest(BaseModel):
    """A query or DML statement with its parameters."""

    sql: str
    params: Dict[str, Any] = Field(default_factory=dict)
    param_types: Dict[str, TypeCode] = Field(default_factory=dict)
    transaction: Optional[TransactionSelector] = None
    seqno: Optional[int] = Field(
        default=None, description="Replay protection for DML in a transaction"
    )
    partition_token: Optional[bytes] = None


class PartitionOptions(BaseModel):
    partition_size_bytes: Optional[int] = Field(default=None, ge=1)
    max_partitions: Optional[int] = Field(default=None, ge=1)


class MutationOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    INSERT_OR_UPDATE = "insert_or_update"
    REPLACE = "replace"
    DELETE = "delete"


class Mutation(BaseModel):
    """A buffered write applied atomically at commit."""

    operation: MutationOperation
    table: str
    columns: List[str] = Field(default_factory=list)
    values: List[List[Any]] = Field(default_factory=list)
    key_set: List[List[Any]] = Field(
        default_factory=list, description="Primary keys for deletes"
    )

    @model_validator(mode="after")
    def validate_shape(self):
        if self.operation == MutationOperation.DELETE:
            if self.columns or self.values:
                raise ValueError("Delete mutations only take a key set")
        else:
            for row in self.values:
                if len(row) != len(self.columns):
                    raise ValueError(
                        f"Row has {len(row)} values for {len(self.columns)} columns"
                    )
        return self


class ResultSet(BaseModel):
    """Unary execution result (DML and small queries)."""

    rows: List[List[Any]] = Field(default_factory=list)
    row_count_exact: Optional[int] = None
    row_count_lower_bound: Optional[int] = None
    transaction_id: Optional[bytes] = Field(
        default=None, description="Set when the request began a transaction"
    )


class CommitResponse(BaseModel):
    commit_timestamp: Optional[datetime] = None


class ExecuteBatchDmlRequest(BaseModel):
    """DML statements run in order in one transaction, in one round trip."""

    statements: List[ExecuteSqlRequest]
    transaction: TransactionSelector
    seqno: int


class ExecuteBatchDmlResponse(BaseModel):
    """
    Results of a DML batch.

    Holds one result set per statement that succeeded. Execution stops at the
    first failing statement, whose status is reported in ``status_code``;
    ``OK`` means every statement ran.
    """

    result_sets: List[ResultSet] = Field(default_factory=list)
    status_code: grpc.StatusCode = grpc.StatusCode.OK
    status_message: str = ""
