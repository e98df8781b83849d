"""
Single-operation transactions.

Each operation checks out a session, carries its transaction options inline
in the request (no begin RPC), and gives the session back as soon as the
operation is over, whether it succeeded or failed.
"""
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional, Sequence

from spannerdata.connections.session import Session
from spannerdata.utility.exceptions import (
    BatchDmlError,
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
    TransactionMode,
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


class EphemeralTransaction(SpannerTransactionBase, kind=TransactionKind.EPHEMERAL):
    """
    Runs each operation in its own single-use transaction.

    - Queries use a single-use read-only selector (strong unless the request
      already carries a selector); the session is released when the result
      stream closes
    - DML begins a transaction inline and commits it right after; partitioned
      DML is never committed by the client
    - Mutations are committed in one single-use read-write commit

    There is nothing to commit or roll back afterwards: ``commit`` does
    nothing and ``rollback`` raises InvalidStateError.
    """

    def __init__(
        self,
        connection: "SpannerConnection",
        options: Optional[TransactionOptions] = None,
    ):
        super().__init__(connection)
        self.options = options

    async def execute_query(
        self, request: ExecuteSqlRequest, timeout: Optional[float] = None
    ) -> ResultStream:
        """
        Start a query on a session of its own.

        The session stays checked out until the returned stream is read to
        the end, closed with ``aclose()``, or left through ``async with``.
        A stream that is dropped half-read keeps its session out of the pool.
        """
        timeout = self._effective_timeout(timeout)
        if request.transaction is None:
            single_use = self.options or TransactionOptions.read_only()
            request = request.model_copy(
                update={"transaction": TransactionSelector(single_use=single_use)}
            )

        session = await self.connection.acquire_session(
            request.transaction.single_use, timeout=timeout
        )
        try:
            rows = self.connection.client.execute_streaming_sql(
                session.name, request, timeout=timeout
            )
        except BaseException as e:
            await self._release(session, e)
            raise

        async def on_close(error: Optional[BaseException]) -> None:
            await self._release(session, error)

        return ResultStream(rows, on_close=on_close)

    async def execute_dml(
        self, request: ExecuteSqlRequest, timeout: Optional[float] = None
    ) -> int:
        timeout = self._effective_timeout(timeout)
        options = self.options or TransactionOptions.read_write()
        if options.is_read_only:
            raise InvalidStateError("DML cannot run in a read-only transaction")
        request = request.model_copy(
            update={"transaction": TransactionSelector(begin=options), "seqno": 1}
        )

        session = await self.connection.acquire_session(options, timeout=timeout)
        error: Optional[BaseException] = None
        try:
            async with error_translation("EphemeralTransaction.execute_dml", self.logger):
                result = await self.connection.client.execute_sql(
                    session.name, request, timeout=timeout
                )
                if options.mode != TransactionMode.PARTITIONED_DML:
                    if result.transaction_id is None:
                        raise SpannerError(
                            "Server did not return a transaction for an inline begin"
                        )
                    await self.connection.client.commit(
                        session.name,
                        [],
                        transaction_id=result.transaction_id,
                        timeout=timeout,
                    )
            return row_count(result)
        except BaseException as e:
            error = e
            raise
        finally:
            await self._release(session, error)

    async def execute_batch_dml(
        self, requests: Sequence[ExecuteSqlRequest], timeout: Optional[float] = None
    ) -> List[int]:
        """
        Run the statements in one inline-begun transaction and commit it.

        When a statement fails, the transaction begun by the first statement
        is rolled back and nothing in the batch is committed.

        Raises:
            BatchDmlError: If a statement failed
            InvalidStateError: For read-only or partitioned DML options
        """
        timeout = self._effective_timeout(timeout)
        options = self.options or TransactionOptions.read_write()
        if options.is_read_only:
            raise InvalidStateError("DML cannot run in a read-only transaction")
        if options.mode == TransactionMode.PARTITIONED_DML:
            raise InvalidStateError("Partitioned DML cannot be batched")
        request = ExecuteBatchDmlRequest(
            statements=batch_statements(requests),
            transaction=TransactionSelector(begin=options),
            seqno=1,
        )

        session = await self.connection.acquire_session(options, timeout=timeout)
        error: Optional[BaseException] = None
        try:
            async with error_translation(
                "EphemeralTransaction.execute_batch_dml", self.logger
            ):
                response = await self.connection.client.execute_batch_dml(
                    session.name, request, timeout=timeout
                )
            transaction_id = (
                response.result_sets[0].transaction_id if response.result_sets else None
            )
            try:
                counts = batch_row_counts(response)
            except BatchDmlError:
                if transaction_id is not None:
                    await self._rollback_quietly(session, transaction_id, timeout)
                raise
            if transaction_id is None:
                raise SpannerError("Server did not return a transaction for an inline begin")
            async with error_translation("EphemeralTransaction.commit", self.logger):
                await self.connection.client.commit(
                    session.name, [], transaction_id=transaction_id, timeout=timeout
                )
            return counts
        except BaseException as e:
            error = e
            raise
        finally:
            await self._release(session, error)

    async def execute_mutations(
        self, mutations: Sequence[Mutation], timeout: Optional[float] = None
    ) -> None:
        timeout = self._effective_timeout(timeout)
        options = TransactionOptions.read_write()
        session = await self.connection.acquire_session(options, timeout=timeout)
        error: Optional[BaseException] = None
        try:
            async with error_translation(
                "EphemeralTransaction.execute_mutations", self.logger
            ):
                await self.connection.client.commit(
                    session.name, list(mutations), single_use=options, timeout=timeout
                )
        except BaseException as e:
            error = e
            raise
        finally:
            await self._release(session, error)

    async def commit(self, timeout: Optional[float] = None) -> Optional[datetime]:
        return None

    async def rollback(self, timeout: Optional[float] = None) -> None:
        raise InvalidStateError(
            "Ephemeral transactions commit as they go and cannot be rolled back"
        )

    async def _rollback_quietly(
        self, session: Session, transaction_id: bytes, timeout: Optional[float]
    ) -> None:
        try:
            async with error_translation("EphemeralTransaction.rollback", self.logger):
                await self.connection.client.rollback(
                    session.name, transaction_id, timeout=timeout
                )
        except SpannerError as e:
            self.logger.warning(f"Rollback after failed batch failed: {str(e)}")

    async def _release(self, session: Session, error: Optional[BaseException]) -> None:
        if error is not None and isinstance(translate_error(error), SessionNotFoundError):
            session.mark_unhealthy()
        await self.connection.release_session(session)
