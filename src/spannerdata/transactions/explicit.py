"""
Multi-operation transactions begun up front.

An ExplicitTransaction holds one session and one server transaction for its
whole life. Operations reuse the transaction id, run one at a time, and the
session only goes back to the pool when the transaction is disposed.
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator, List, Optional, Sequence

from spannerdata.connections.session import Session
from spannerdata.utility.clock import timeout_or_none
from spannerdata.utility.exceptions import (
    InvalidArgumentError,
    InvalidStateError,
    SessionNotFoundError,
    SpannerError,
    error_translation,
    translate_error,
)
from spannerdata.v1 import (
    ExecuteBatchDmlRequest,
    ExecuteSqlRequest,
    Mutation,
    PartitionOptions,
    TransactionId,
    TransactionOptions,
    TransactionSelector,
)

from .base import (
    ResultStream,
    SpannerTransactionBase,
    TransactionKind,
    batch_row_counts,
    batch_statements,
    row_count,
)

if TYPE_CHECKING:
    from spannerdata.core.connection import SpannerConnection


class DisposeBehavior(Enum):
    """What happens to the session when a transaction is disposed."""

    RELEASE = "release"  # back to the pool
    DETACH = "detach"  # left alone; another process keeps using it
    DISCARD = "discard"  # deleted


class ExplicitTransaction(SpannerTransactionBase, kind=TransactionKind.EXPLICIT):
    """
    Read-only or read-write transaction with an explicit begin.

    Read-write transactions buffer mutations until ``commit``; DML runs
    immediately with an increasing sequence number. Read-only transactions
    reject writes and need no commit or rollback RPC.

    Example:
        ```python
        async with await connection.begin_transaction() as transaction:
            await transaction.execute_dml(update_request)
            await transaction.execute_mutations([insert])
            await transaction.commit()
        ```
    """

    def __init__(
        self,
        connection: "SpannerConnection",
        session: Session,
        transaction_id: bytes,
        options: TransactionOptions,
    ):
        super().__init__(connection)
        self.options = options
        self.dispose_behavior = DisposeBehavior.RELEASE
        self.commit_timeout: Optional[float] = connection.timeout
        self.commit_timestamp: Optional[datetime] = None
        self._session = session
        self._id = transaction_id
        self._lock = asyncio.Lock()
        self._seqno = 0
        self._mutations: List[Mutation] = []
        self._committed = False
        self._rolled_back = False
        self._disposed = False

    @classmethod
    async def begin(
        cls,
        connection: "SpannerConnection",
        options: TransactionOptions,
        timeout: Optional[float] = None,
    ) -> "ExplicitTransaction":
        """Check out a session and begin a transaction on it."""
        if options.is_read_only and options.read_only_bound.is_single_use_only:
            raise InvalidArgumentError(
                f"{options.read_only_bound.mode.value} bounds can only be used "
                "for single-use reads"
            )
        timeout = timeout_or_none(
            connection.timeout if timeout is None else timeout
        )

        session = await connection.acquire_session(options, timeout=timeout)
        try:
            async with error_translation(
                "ExplicitTransaction.begin", connection.logger
            ):
                transaction_id = await connection.client.begin_transaction(
                    session.name, options, timeout=timeout
                )
            session.begin(options.mode, transaction_id)
        except BaseException as e:
            if isinstance(translate_error(e), SessionNotFoundError):
                session.mark_unhealthy()
            await connection.release_session(session)
            raise
        return cls(connection, session, transaction_id, options)

    @classmethod
    def attach(
        cls, connection: "SpannerConnection", transaction_id: TransactionId
    ) -> "ExplicitTransaction":
        """Join a read-only transaction begun by another connection or process."""
        options = TransactionOptions.read_only(transaction_id.timestamp_bound)
        session = connection.create_detached_session(transaction_id)
        transaction = cls(connection, session, transaction_id.id_bytes, options)
        transaction.dispose_behavior = DisposeBehavior.DETACH
        return transaction

    @property
    def session(self) -> Session:
        return self._session

    @property
    def is_read_only(self) -> bool:
        return self.options.is_read_only

    @property
    def is_committed(self) -> bool:
        return self._committed

    @property
    def transaction_id(self) -> TransactionId:
        """Shareable id of a read-only transaction."""
        if not self.is_read_only:
            raise InvalidStateError("Only read-only transactions can be shared")
        return TransactionId.from_bytes(
            str(self._session.database),
            self._session.name,
            self._id,
            self.options.read_only_bound,
        )

    async def execute_query(
        self, request: ExecuteSqlRequest, timeout: Optional[float] = None
    ) -> ResultStream:
        timeout = self._effective_timeout(timeout)
        async with self._lock:
            self._check_active()
            request = request.model_copy(
                update={"transaction": TransactionSelector(id=self._id)}
            )
            rows = self.connection.client.execute_streaming_sql(
                self._session.name, request, timeout=timeout
            )
        return ResultStream(rows, on_close=self._on_stream_close)

    async def execute_dml(
        self, request: ExecuteSqlRequest, timeout: Optional[float] = None
    ) -> int:
        self._check_writable()
        timeout = self._effective_timeout(timeout)
        async with self._lock:
            self._check_active()
            self._seqno += 1
            request = request.model_copy(
                update={
                    "transaction": TransactionSelector(id=self._id),
                    "seqno": self._seqno,
                }
            )
            async with self._rpc("execute_dml"):
                result = await self.connection.client.execute_sql(
                    self._session.name, request, timeout=timeout
                )
        return row_count(result)

    async def execute_batch_dml(
        self, requests: Sequence[ExecuteSqlRequest], timeout: Optional[float] = None
    ) -> List[int]:
        """Run the statements in one RPC; the batch takes a single seqno."""
        self._check_writable()
        statements = batch_statements(requests)
        timeout = self._effective_timeout(timeout)
        async with self._lock:
            self._check_active()
            self._seqno += 1
            request = ExecuteBatchDmlRequest(
                statements=statements,
                transaction=TransactionSelector(id=self._id),
                seqno=self._seqno,
            )
            async with self._rpc("execute_batch_dml"):
                response = await self.connection.client.execute_batch_dml(
                    self._session.name, request, timeout=timeout
                )
        return batch_row_counts(response)

    async def execute_mutations(
        self, mutations: Sequence[Mutation], timeout: Optional[float] = None
    ) -> None:
        self._check_writable()
        async with self._lock:
            self._check_active()
            self._mutations.extend(mutations)

    async def get_partition_tokens(
        self,
        request: ExecuteSqlRequest,
        partition_size_bytes: Optional[int] = None,
        max_partitions: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> List[bytes]:
        """Split a query into partitions readable from other connections."""
        if not self.is_read_only:
            raise InvalidStateError(
                "Partitioned reads need an explicitly created read-only transaction"
            )
        timeout = self._effective_timeout(timeout)
        partition_options = PartitionOptions(
            partition_size_bytes=partition_size_bytes, max_partitions=max_partitions
        )
        async with self._lock:
            self._check_active()
            async with self._rpc("partition_query"):
                return await self.connection.client.partition_query(
                    self._session.name,
                    request,
                    self._id,
                    partition_options,
                    timeout=timeout,
                )

    async def commit(self, timeout: Optional[float] = None) -> Optional[datetime]:
        """
        Commit buffered mutations and DML.

        Read-only transactions are marked committed without an RPC.

        Raises:
            InvalidStateError: If already committed, rolled back or disposed
        """
        if timeout is None:
            timeout = self.commit_timeout
        timeout = self._effective_timeout(timeout)
        async with self._lock:
            if self._committed:
                raise InvalidStateError("Transaction has already been committed")
            self._check_active()
            if self.is_read_only:
                self._committed = True
                return None
            async with self._rpc("commit"):
                response = await self.connection.client.commit(
                    self._session.name,
                    list(self._mutations),
                    transaction_id=self._id,
                    timeout=timeout,
                )
            self._committed = True
            self._mutations.clear()
            self.commit_timestamp = response.commit_timestamp
            return self.commit_timestamp

    async def rollback(self, timeout: Optional[float] = None) -> None:
        timeout = self._effective_timeout(timeout)
        async with self._lock:
            if self._committed:
                raise InvalidStateError("Cannot roll back a committed transaction")
            if self._rolled_back:
                return
            self._check_active()
            self._mutations.clear()
            self._rolled_back = True
            if not self.is_read_only:
                async with self._rpc("rollback"):
                    await self.connection.client.rollback(
                        self._session.name, self._id, timeout=timeout
                    )

    async def dispose(self, rollback: bool = True) -> None:
        """
        End the transaction and hand the session back per ``dispose_behavior``.

        An uncommitted read-write transaction is rolled back first (best
        effort) unless ``rollback`` is False or the session is being detached.
        """
        if self._disposed:
            return
        if (
            rollback
            and not self._committed
            and not self._rolled_back
            and not self.is_read_only
            and self.dispose_behavior != DisposeBehavior.DETACH
        ):
            try:
                await self.rollback()
            except SpannerError as e:
                self.logger.warning(f"Rollback during dispose failed: {str(e)}")
        self._disposed = True

        if self.dispose_behavior == DisposeBehavior.DETACH:
            self.connection.detach_session(self._session)
        else:
            await self.connection.release_session(
                self._session, discard=self.dispose_behavior == DisposeBehavior.DISCARD
            )

    async def __aenter__(self) -> "ExplicitTransaction":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.dispose()

    def _check_active(self) -> None:
        if self._disposed:
            raise InvalidStateError("Transaction has been disposed")
        if self._committed:
            raise InvalidStateError("Transaction has already been committed")
        if self._rolled_back:
            raise InvalidStateError("Transaction has been rolled back")

    def _check_writable(self) -> None:
        if self.is_read_only:
            raise InvalidStateError("Read-only transactions cannot write")

    @asynccontextmanager
    async def _rpc(self, operation: str) -> AsyncIterator[None]:
        try:
            async with error_translation(
                f"ExplicitTransaction.{operation}", self.logger
            ):
                yield
        except SessionNotFoundError:
            self._session.mark_unhealthy()
            raise

    async def _on_stream_close(self, error: Optional[BaseException]) -> None:
        if error is not None and isinstance(error, SessionNotFoundError):
            self._session.mark_unhealthy()
