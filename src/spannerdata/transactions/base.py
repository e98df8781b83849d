"""
Base transaction strategy for running operations against a session.

A transaction strategy decides which session an operation runs on and which
transaction selector the request carries. Callers (commands, connections)
only use the interface defined here; the variant is visible through ``kind``.

Example:
    ```python
    class MyTransaction(SpannerTransactionBase, kind=TransactionKind.EXPLICIT):
        async def execute_query(self, request, timeout=None) -> ResultStream:
            ...
    ```
"""
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    List,
    Optional,
    Sequence,
)

import grpc

from spannerdata.messages import get_logger
from spannerdata.utility.clock import timeout_or_none
from spannerdata.utility.exceptions import (
    BatchDmlError,
    InvalidArgumentError,
    translate_error,
)
from spannerdata.v1 import (
    ExecuteBatchDmlResponse,
    ExecuteSqlRequest,
    Mutation,
    ResultSet,
)

if TYPE_CHECKING:
    from spannerdata.core.connection import SpannerConnection


class TransactionKind(Enum):
    EPHEMERAL = "ephemeral"
    EXPLICIT = "explicit"
    RETRIABLE = "retriable"
    AMBIENT = "ambient"


def row_count(result: ResultSet) -> int:
    """Rows modified by a DML statement (lower bound for partitioned DML)."""
    if result.row_count_exact is not None:
        return result.row_count_exact
    return result.row_count_lower_bound or 0


def batch_statements(requests: Sequence[ExecuteSqlRequest]) -> List[ExecuteSqlRequest]:
    """Strip per-statement selectors; a batch carries one for all statements."""
    if not requests:
        raise InvalidArgumentError("A DML batch needs at least one statement")
    return [
        request.model_copy(update={"transaction": None, "seqno": None})
        for request in requests
    ]


def batch_row_counts(response: ExecuteBatchDmlResponse) -> List[int]:
    """
    Row counts of a DML batch, one per statement.

    Raises:
        BatchDmlError: If a statement failed, with the counts of the
            statements that ran before it
    """
    counts = [row_count(result) for result in response.result_sets]
    if response.status_code != grpc.StatusCode.OK:
        raise BatchDmlError(
            f"Statement {len(counts)} of the batch failed: {response.status_message}",
            response.status_code,
            row_counts=counts,
        )
    return counts


class ResultStream:
    """
    Async iterator over the rows of a query.

    ``on_close`` runs exactly once: when the rows are exhausted, when reading
    fails, or when the stream is closed early. It receives the error that
    ended the stream, if any.

    Example:
        ```python
        async with await transaction.execute_query(request) as rows:
            async for row in rows:
                ...
        ```
    """

    def __init__(
        self,
        rows: AsyncIterator[List[Any]],
        on_close: Optional[Callable[[Optional[BaseException]], Awaitable[None]]] = None,
    ):
        self._rows = rows
        self._on_close = on_close
        self._closed = False

    def __aiter__(self) -> "ResultStream":
        return self

    async def __anext__(self) -> List[Any]:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._rows.__anext__()
        except StopAsyncIteration:
            await self._finish(None)
            raise
        except BaseException as e:
            translated = translate_error(e)
            await self._finish(translated)
            if translated is e:
                raise
            raise translated from e

    async def fetch_all(self) -> List[List[Any]]:
        """Read every remaining row and close the stream."""
        return [row async for row in self]

    async def aclose(self) -> None:
        if self._closed:
            return
        aclose = getattr(self._rows, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        finally:
            await self._finish(None)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "ResultStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def _finish(self, error: Optional[BaseException]) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            await self._on_close(error)


class SpannerTransactionBase(ABC):
    """
    Interface shared by every transaction strategy.

    Every operation takes an optional ``timeout`` in seconds; when omitted the
    connection's command timeout applies.
    """

    kind: TransactionKind

    def __init_subclass__(cls, kind: Optional[TransactionKind] = None, **kwargs):
        super().__init_subclass__(**kwargs)
        if kind is not None:
            cls.kind = kind

    def __init__(self, connection: "SpannerConnection"):
        self.connection = connection
        self.logger = get_logger(f"spannerdata.transaction.{self.kind.value}")

    @abstractmethod
    async def execute_query(
        self, request: ExecuteSqlRequest, timeout: Optional[float] = None
    ) -> ResultStream:
        """Start a query and return its rows as a stream."""
        pass

    @abstractmethod
    async def execute_dml(
        self, request: ExecuteSqlRequest, timeout: Optional[float] = None
    ) -> int:
        """Run a DML statement and return the number of rows it changed."""
        pass

    @abstractmethod
    async def execute_batch_dml(
        self, requests: Sequence[ExecuteSqlRequest], timeout: Optional[float] = None
    ) -> List[int]:
        """Run DML statements in one round trip and return their row counts."""
        pass

    @abstractmethod
    async def execute_mutations(
        self, mutations: Sequence[Mutation], timeout: Optional[float] = None
    ) -> None:
        """Apply mutations now (ephemeral) or buffer them until commit."""
        pass

    @abstractmethod
    async def commit(self, timeout: Optional[float] = None) -> Optional[datetime]:
        """Commit and return the commit timestamp, when there is one."""
        pass

    @abstractmethod
    async def rollback(self, timeout: Optional[float] = None) -> None:
        pass

    def _effective_timeout(self, timeout: Optional[float]) -> Optional[float]:
        if timeout is None:
            timeout = self.connection.timeout
        return timeout_or_none(timeout)
