"""
Commands: one statement or one mutation bound to a connection.

A command picks the transaction it runs in (its own, the connection's
ambient one, or a fresh ephemeral one) and hands the request to it. SQL text
is passed through untouched; parameter values are sent as given.
"""
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel

from spannerdata.messages import get_logger
from spannerdata.transactions import (
    EphemeralTransaction,
    ExplicitTransaction,
    ResultStream,
    SpannerTransactionBase,
)
from spannerdata.utility.exceptions import InvalidStateError
from spannerdata.v1 import (
    ExecuteSqlRequest,
    Mutation,
    MutationOperation,
    TimestampBound,
    TransactionOptions,
    TransactionSelector,
    TypeCode,
)

if TYPE_CHECKING:
    from .connection import SpannerConnection


class CommandType(Enum):
    SELECT = "select"
    DML = "dml"
    INSERT = "insert"
    UPDATE = "update"
    INSERT_OR_UPDATE = "insert_or_update"
    DELETE = "delete"


_MUTATION_OPERATIONS = {
    CommandType.INSERT: MutationOperation.INSERT,
    CommandType.UPDATE: MutationOperation.UPDATE,
    CommandType.INSERT_OR_UPDATE: MutationOperation.INSERT_OR_UPDATE,
    CommandType.DELETE: MutationOperation.DELETE,
}


class CommandPartition(BaseModel):
    """One partition of a query, readable from any connection."""

    request: ExecuteSqlRequest

    @property
    def partition_token(self) -> Optional[bytes]:
        return self.request.partition_token


class SpannerCommand:
    """
    A statement (query or DML) or a single-row mutation against a table.

    Example:
        ```python
        command = connection.create_select_command(
            "SELECT Name FROM Singers WHERE Id = @id", {"id": 1}
        )
        async with await command.execute_reader() as rows:
            async for row in rows:
                ...
        ```
    """

    def __init__(
        self,
        connection: "SpannerConnection",
        command_type: CommandType,
        sql: Optional[str] = None,
        table: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        param_types: Optional[Dict[str, TypeCode]] = None,
        transaction: Optional[SpannerTransactionBase] = None,
        partition: Optional[CommandPartition] = None,
    ):
        if command_type in _MUTATION_OPERATIONS and not table:
            raise InvalidStateError(f"{command_type.value} commands need a table")
        if command_type in (CommandType.SELECT, CommandType.DML) and not (
            sql or partition
        ):
            raise InvalidStateError(f"{command_type.value} commands need SQL text")
        self.connection = connection
        self.command_type = command_type
        self.sql = sql if sql is not None else (partition.request.sql if partition else None)
        self.table = table
        self.parameters = dict(parameters or {})
        self.param_types = dict(param_types or {})
        self.transaction = transaction
        self.partition = partition
        self.command_timeout: Optional[float] = connection.timeout
        self.logger = get_logger("spannerdata.command")

    async def execute_reader(
        self, single_use_bound: Optional[TimestampBound] = None
    ) -> ResultStream:
        """
        Run a query and stream its rows.

        Outside an explicit transaction the query holds a session of its own
        until the stream is read to the end, closed with ``aclose()``, or left
        through ``async with``. Dropping a stream half-read keeps that session
        checked out.

        Args:
            single_use_bound: Read with this staleness in a single-use
                transaction; not allowed together with an explicit transaction

        Raises:
            InvalidStateError: For non-query commands, or a single-use bound
                combined with the command's transaction
        """
        if self.command_type != CommandType.SELECT:
            raise InvalidStateError("execute_reader is only available for queries")
        await self.connection.ensure_open()

        if single_use_bound is not None and self.transaction is not None:
            raise InvalidStateError(
                "A single-use bound cannot be used within another transaction"
            )

        request = self._build_request()
        if single_use_bound is not None:
            request = request.model_copy(
                update={
                    "transaction": TransactionSelector(
                        single_use=single_use_bound.to_transaction_options()
                    )
                }
            )
            transaction: SpannerTransactionBase = EphemeralTransaction(self.connection)
        else:
            transaction = self._effective_transaction(None)

        self.logger.debug(f"Query: {request.sql}")
        return await transaction.execute_query(request, self.command_timeout)

    async def execute_scalar(self) -> Any:
        """First column of the first row, or None when there are no rows."""
        async with await self.execute_reader() as rows:
            async for row in rows:
                return row[0] if row else None
        return None

    async def execute_non_query(self) -> int:
        """
        Run DML or apply the command's mutation.

        Returns:
            Rows changed by DML, or the number of mutations sent
        """
        await self.connection.ensure_open()
        if self.command_type == CommandType.DML:
            transaction = self._effective_transaction(TransactionOptions.read_write())
            self.logger.debug(f"DML: {self.sql}")
            return await transaction.execute_dml(
                self._build_request(), self.command_timeout
            )
        if self.command_type in _MUTATION_OPERATIONS:
            mutations = [self._build_mutation()]
            transaction = self._effective_transaction(TransactionOptions.read_write())
            await transaction.execute_mutations(mutations, self.command_timeout)
            return len(mutations)
        raise InvalidStateError(
            "execute_non_query is only available for DML and mutation commands"
        )

    async def execute_partitioned_update(self) -> int:
        """Run DML as partitioned DML; returns a lower bound of rows changed."""
        if self.transaction is not None or self.connection.ambient_transaction is not None:
            raise InvalidStateError(
                "Partitioned updates cannot be executed within another transaction"
            )
        if self.command_type != CommandType.DML:
            raise InvalidStateError(
                "Only DML commands can be executed as partitioned updates"
            )
        await self.connection.ensure_open()
        transaction = EphemeralTransaction(
            self.connection, TransactionOptions.partitioned_dml()
        )
        return await transaction.execute_dml(self._build_request(), self.command_timeout)

    async def get_reader_partitions(
        self,
        partition_size_bytes: Optional[int] = None,
        max_partitions: Optional[int] = None,
    ) -> List[CommandPartition]:
        """Split the query into partitions of the command's read-only transaction."""
        if not (
            isinstance(self.transaction, ExplicitTransaction)
            and self.transaction.is_read_only
        ):
            raise InvalidStateError(
                "get_reader_partitions can only be executed within an explicitly "
                "created read-only transaction"
            )
        if self.command_type != CommandType.SELECT:
            raise InvalidStateError("Only queries can be partitioned")
        await self.connection.ensure_open()

        request = self._build_request()
        tokens = await self.transaction.get_partition_tokens(
            request,
            partition_size_bytes=partition_size_bytes,
            max_partitions=max_partitions,
            timeout=self.command_timeout,
        )
        return [
            CommandPartition(request=request.model_copy(update={"partition_token": t}))
            for t in tokens
        ]

    def _effective_transaction(
        self, ephemeral_options: Optional[TransactionOptions]
    ) -> SpannerTransactionBase:
        return (
            self.transaction
            or self.connection.ambient_transaction
            or EphemeralTransaction(self.connection, ephemeral_options)
        )

    def _build_request(self) -> ExecuteSqlRequest:
        if self.partition is not None:
            return self.partition.request.model_copy()
        return ExecuteSqlRequest(
            sql=self.sql,
            params=self.parameters,
            param_types=self.param_types,
        )

    def _build_mutation(self) -> Mutation:
        operation = _MUTATION_OPERATIONS[self.command_type]
        if operation == MutationOperation.DELETE:
            return Mutation(
                operation=operation,
                table=self.table,
                key_set=[list(self.parameters.values())],
            )
        return Mutation(
            operation=operation,
            table=self.table,
            columns=list(self.parameters.keys()),
            values=[list(self.parameters.values())],
        )


class SpannerBatchCommand:
    """
    DML statements sent to the server together and run in order.

    Execution stops at the first failing statement and raises BatchDmlError,
    whose ``row_counts`` covers the statements that ran. Without a
    transaction of its own (or an ambient one) the batch commits on its own.

    Example:
        ```python
        batch = connection.create_batch_dml_command()
        batch.add("UPDATE Singers SET Name = @name WHERE Id = 1", {"name": "a"})
        batch.add("DELETE FROM Albums WHERE SingerId = 1")
        counts = await batch.execute_non_query()
        ```
    """

    def __init__(
        self,
        connection: "SpannerConnection",
        transaction: Optional[SpannerTransactionBase] = None,
    ):
        self.connection = connection
        self.transaction = transaction
        self.statements: List[ExecuteSqlRequest] = []
        self.command_timeout: Optional[float] = connection.timeout
        self.logger = get_logger("spannerdata.command")

    def add(
        self,
        sql: str,
        parameters: Optional[Dict[str, Any]] = None,
        param_types: Optional[Dict[str, TypeCode]] = None,
    ) -> "SpannerBatchCommand":
        self.statements.append(
            ExecuteSqlRequest(
                sql=sql, params=dict(parameters or {}), param_types=dict(param_types or {})
            )
        )
        return self

    def add_command(self, command: SpannerCommand) -> "SpannerBatchCommand":
        """Add the statement of a DML command."""
        if command.command_type != CommandType.DML:
            raise InvalidStateError("Only DML commands can be added to a batch")
        self.statements.append(command._build_request())
        return self

    async def execute_non_query(self) -> List[int]:
        """
        Run every statement and return their row counts in order.

        Raises:
            InvalidStateError: If the batch is empty
            BatchDmlError: If a statement failed
        """
        if not self.statements:
            raise InvalidStateError("A batch command needs at least one statement")
        await self.connection.ensure_open()
        transaction = (
            self.transaction
            or self.connection.ambient_transaction
            or EphemeralTransaction(self.connection, TransactionOptions.read_write())
        )
        self.logger.debug(f"Batch DML: {len(self.statements)} statements")
        return await transaction.execute_batch_dml(self.statements, self.command_timeout)
