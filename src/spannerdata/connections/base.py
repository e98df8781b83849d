"""
Base transport interface for session-addressed RPCs.

Defines the contract a transport must implement for the pool and the
transaction engine to drive it. Encoding, channels and authentication
handshakes live behind this interface.
"""
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, List, Optional, Sequence, Tuple

from spannerdata.v1 import (
    CommitResponse,
    DatabaseName,
    ExecuteBatchDmlRequest,
    ExecuteBatchDmlResponse,
    ExecuteSqlRequest,
    Mutation,
    PartitionOptions,
    ResultSet,
    TransactionOptions,
)

from .constants import ClientOptions
from .credentials import CachedTokenProvider


class SessionClient(ABC):
    """
    Abstract base class for session transports.

    Every call takes a ``timeout`` in seconds (None: no deadline) and may be
    cancelled through its task. Failures are raised as ``grpc.RpcError`` or
    as SpannerError; callers translate them at the boundary.

    Example:
        ```python
        class GrpcSessionClient(SessionClient):
            async def create_session(self, database, timeout=None) -> str:
                response = await self._stub.CreateSession(
                    CreateSessionRequest(database=str(database)),
                    timeout=timeout,
                    metadata=await self.auth_metadata(),
                )
                return response.name
            ...
        ```
    """

    def __init__(
        self,
        options: Optional[ClientOptions] = None,
        credentials: Optional[CachedTokenProvider] = None,
    ):
        """
        Initialize base client.

        Args:
            options: Endpoint and channel settings
            credentials: Token provider for per-call authentication
        """
        self.options = options or ClientOptions()
        self.credentials = credentials

    async def auth_metadata(self) -> List[Tuple[str, str]]:
        """Call metadata for authentication (empty without credentials)."""
        if self.credentials is None:
            return []
        return await self.credentials.auth_metadata()

    @abstractmethod
    async def create_session(
        self, database: DatabaseName, timeout: Optional[float] = None
    ) -> str:
        """Create one session and return its name."""
        pass

    @abstractmethod
    async def batch_create_sessions(
        self, database: DatabaseName, count: int, timeout: Optional[float] = None
    ) -> List[str]:
        """
        Create up to ``count`` sessions in one call.

        The server may return fewer than requested; callers ask again for
        the remainder.
        """
        pass

    @abstractmethod
    async def delete_session(self, name: str, timeout: Optional[float] = None) -> None:
        pass

    @abstractmethod
    async def get_session(self, name: str, timeout: Optional[float] = None) -> None:
        """Health check. Raises NOT_FOUND if the server dropped the session."""
        pass

    @abstractmethod
    async def begin_transaction(
        self,
        session: str,
        options: TransactionOptions,
        timeout: Optional[float] = None,
    ) -> bytes:
        """Begin a transaction and return its id."""
        pass

    @abstractmethod
    async def commit(
        self,
        session: str,
        mutations: Sequence[Mutation],
        transaction_id: Optional[bytes] = None,
        single_use: Optional[TransactionOptions] = None,
        timeout: Optional[float] = None,
    ) -> CommitResponse:
        """Commit a begun transaction, or apply mutations single-use."""
        pass

    @abstractmethod
    async def rollback(
        self, session: str, transaction_id: bytes, timeout: Optional[float] = None
    ) -> None:
        pass

    @abstractmethod
    def execute_streaming_sql(
        self,
        session: str,
        request: ExecuteSqlRequest,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[List[Any]]:
        """Stream the rows of a query."""
        pass

    @abstractmethod
    async def execute_sql(
        self,
        session: str,
        request: ExecuteSqlRequest,
        timeout: Optional[float] = None,
    ) -> ResultSet:
        """Run a statement to completion (used for DML)."""
        pass

    @abstractmethod
    async def execute_batch_dml(
        self,
        session: str,
        request: ExecuteBatchDmlRequest,
        timeout: Optional[float] = None,
    ) -> ExecuteBatchDmlResponse:
        """
        Run DML statements in order, stopping at the first failure.

        A failing statement is reported in the response status, not raised;
        only a failure of the request as a whole raises.
        """
        pass

    @abstractmethod
    async def partition_query(
        self,
        session: str,
        request: ExecuteSqlRequest,
        transaction_id: bytes,
        partition_options: PartitionOptions,
        timeout: Optional[float] = None,
    ) -> List[bytes]:
        """Split a query into partition tokens."""
        pass

    async def close(self) -> None:
        """Release channels. Default implementation has nothing to release."""
        return None
