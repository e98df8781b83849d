"""
Scope-bound transactions.

A TransactionScope groups work on one or more connections into transactions
that commit together when the scope ends. Connections opened with a scope
enlist an AmbientTransaction, which begins its ExplicitTransaction lazily on
first use so a scope that never touches the database costs nothing.
"""
import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional, Sequence

from spannerdata.utility.exceptions import InvalidStateError, SpannerError
from spannerdata.v1 import (
    ExecuteSqlRequest,
    Mutation,
    TransactionId,
    TransactionOptions,
)

from .base import ResultStream, SpannerTransactionBase, TransactionKind
from .explicit import ExplicitTransaction

if TYPE_CHECKING:
    from spannerdata.core.connection import SpannerConnection


class AmbientTransaction(SpannerTransactionBase, kind=TransactionKind.AMBIENT):
    """
    Transaction owned by a TransactionScope rather than by the caller.

    Read-write unless the connection was opened read-only (with a timestamp
    bound, or with the TransactionId of a transaction to join).
    """

    def __init__(
        self,
        connection: "SpannerConnection",
        scope: "TransactionScope",
        options: Optional[TransactionOptions] = None,
        transaction_id: Optional[TransactionId] = None,
    ):
        super().__init__(connection)
        self.scope = scope
        self.options = options or TransactionOptions.read_write()
        self._transaction_id = transaction_id
        self._transaction: Optional[ExplicitTransaction] = None
        self._begin_lock = asyncio.Lock()

    @property
    def has_begun(self) -> bool:
        return self._transaction is not None

    async def get_transaction(
        self, timeout: Optional[float] = None
    ) -> ExplicitTransaction:
        """The underlying transaction, begun on first call."""
        async with self._begin_lock:
            if self._transaction is None:
                if self._transaction_id is not None:
                    self._transaction = ExplicitTransaction.attach(
                        self.connection, self._transaction_id
                    )
                else:
                    self._transaction = await ExplicitTransaction.begin(
                        self.connection, self.options, timeout
                    )
                    # Commits happen at scope exit, outside any command
                    self._transaction.commit_timeout = self.connection.timeout
            return self._transaction

    async def execute_query(
        self, request: ExecuteSqlRequest, timeout: Optional[float] = None
    ) -> ResultStream:
        transaction = await self.get_transaction(timeout)
        return await transaction.execute_query(request, timeout)

    async def execute_dml(
        self, request: ExecuteSqlRequest, timeout: Optional[float] = None
    ) -> int:
        transaction = await self.get_transaction(timeout)
        return await transaction.execute_dml(request, timeout)

    async def execute_batch_dml(
        self, requests: Sequence[ExecuteSqlRequest], timeout: Optional[float] = None
    ) -> List[int]:
        transaction = await self.get_transaction(timeout)
        return await transaction.execute_batch_dml(requests, timeout)

    async def execute_mutations(
        self, mutations: Sequence[Mutation], timeout: Optional[float] = None
    ) -> None:
        transaction = await self.get_transaction(timeout)
        await transaction.execute_mutations(mutations, timeout)

    async def get_partition_tokens(
        self,
        request: ExecuteSqlRequest,
        partition_size_bytes: Optional[int] = None,
        max_partitions: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> List[bytes]:
        transaction = await self.get_transaction(timeout)
        return await transaction.get_partition_tokens(
            request, partition_size_bytes, max_partitions, timeout
        )

    async def commit(self, timeout: Optional[float] = None) -> Optional[datetime]:
        if self._transaction is None:
            return None
        return await self._transaction.commit(timeout)

    async def rollback(self, timeout: Optional[float] = None) -> None:
        if self._transaction is not None:
            await self._transaction.rollback(timeout)

    async def dispose(self) -> None:
        try:
            if self._transaction is not None:
                await self._transaction.dispose()
        finally:
            self.connection.clear_ambient_transaction(self)


class TransactionScope:
    """
    Async context manager that ends every enlisted transaction together.

    Call ``complete()`` before the block ends to commit; leaving the block
    without it, or with an exception, rolls everything back. If a commit
    fails the remaining transactions are rolled back and the error is
    raised.

    Example:
        ```python
        async with TransactionScope() as scope:
            connection = SpannerConnection(connection_string)
            await connection.open(scope=scope)
            await connection.create_dml_command(sql).execute_non_query()
            scope.complete()
        ```
    """

    def __init__(self):
        self._transactions: List[AmbientTransaction] = []
        self._completed = False
        self._ended = False

    def complete(self) -> None:
        """Mark the scope's work as done; the scope commits on exit."""
        if self._ended:
            raise InvalidStateError("Transaction scope has already ended")
        self._completed = True

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def transactions(self) -> List[AmbientTransaction]:
        return list(self._transactions)

    def enlist(
        self,
        connection: "SpannerConnection",
        options: Optional[TransactionOptions] = None,
        transaction_id: Optional[TransactionId] = None,
    ) -> AmbientTransaction:
        if self._ended:
            raise InvalidStateError("Transaction scope has already ended")
        transaction = AmbientTransaction(connection, self, options, transaction_id)
        self._transactions.append(transaction)
        return transaction

    async def __aenter__(self) -> "TransactionScope":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self._ended = True
        commit = self._completed and exc_type is None
        failure: Optional[SpannerError] = None
        for transaction in self._transactions:
            try:
                if commit and failure is None:
                    await transaction.commit()
                else:
                    await transaction.rollback()
            except SpannerError as e:
                if commit and failure is None:
                    failure = e
                else:
                    transaction.logger.warning(
                        f"Rollback at end of scope failed: {str(e)}"
                    )
            finally:
                await transaction.dispose()
        if failure is not None:
            raise failure
