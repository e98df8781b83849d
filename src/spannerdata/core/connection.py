"""
SpannerConnection: the entry point for running work against a database.

A connection binds a connection string to a shared session pool. Opening it
takes a reference on the pool from the SessionPoolManager, closing it gives
the reference back. Transactions and commands created from an open
connection draw their sessions from that pool.
"""
import asyncio
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    TypeVar,
    Union,
)

from pydantic import BaseModel, ConfigDict

from spannerdata.connections import (
    DatabaseStatistics,
    RetryOptions,
    Session,
    SessionClient,
    SessionPool,
    SessionPoolKey,
    SessionPoolManager,
)
from spannerdata.messages import get_logger
from spannerdata.transactions import (
    AmbientTransaction,
    ExplicitTransaction,
    RetriableTransaction,
    TransactionScope,
)
from spannerdata.utility.clock import Clock, Scheduler, timeout_or_none
from spannerdata.utility.exceptions import (
    DeadlineExceededError,
    InvalidArgumentError,
    InvalidStateError,
    error_translation,
)
from spannerdata.v1 import (
    DatabaseName,
    TimestampBound,
    TransactionId,
    TransactionMode,
    TransactionOptions,
    TypeCode,
)

from .command import (
    CommandPartition,
    CommandType,
    SpannerBatchCommand,
    SpannerCommand,
)
from .configs import ConnectionStringBuilder

T = TypeVar("T")


class ConnectionState(str, Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    BROKEN = "broken"


class StateChange(BaseModel):
    """Notification payload for a connection state transition."""

    model_config = ConfigDict(frozen=True)

    old: ConnectionState
    new: ConnectionState


StateChangeListener = Callable[[StateChange], None]


class SpannerConnection:
    """
    Connection to one database through a shared session pool.

    State moves Closed -> Connecting -> Open (or Broken when opening fails),
    and Open -> Closed on close. Listeners are called synchronously for every
    transition, before the call that caused it returns.

    Example:
        ```python
        async with SpannerConnection(
            "Data Source=projects/p/instances/i/databases/d",
            session_pool_manager=manager,
        ) as connection:
            count = await connection.create_select_command(
                "SELECT COUNT(*) FROM Singers"
            ).execute_scalar()
        ```
    """

    def __init__(
        self,
        connection_string: Union[str, ConnectionStringBuilder, None] = None,
        session_pool_manager: Optional[SessionPoolManager] = None,
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
        credential: Any = None,
    ):
        """
        Initialize connection.

        Args:
            connection_string: Connection string or parsed builder
            session_pool_manager: Registry to draw pools from (process default)
            clock: Time source for retriable transactions
            scheduler: Sleep source for retriable transaction backoff
            credential: Token credential handed to the transport via ClientOptions
        """
        if isinstance(connection_string, ConnectionStringBuilder):
            self.builder = connection_string
        else:
            self.builder = ConnectionStringBuilder.parse(connection_string)
        self.session_pool_manager = session_pool_manager or SessionPoolManager.default()
        self._clock = clock
        self._scheduler = scheduler
        self._credential = credential

        self._state = ConnectionState.CLOSED
        self._listeners: List[StateChangeListener] = []
        self._pool: Optional[SessionPool] = None
        self._holds_pool_reference = False
        self._ambient: Optional[AmbientTransaction] = None
        self.logger = get_logger("spannerdata.connection")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == ConnectionState.OPEN

    @property
    def timeout(self) -> int:
        """Default command timeout in seconds (0: no limit)."""
        return self.builder.timeout

    @property
    def database(self) -> Optional[DatabaseName]:
        return self.builder.database_name

    @property
    def connection_string(self) -> str:
        return self.builder.to_connection_string()

    @property
    def client(self) -> SessionClient:
        """Transport of the connection's session pool."""
        if self._pool is None:
            raise InvalidStateError("The connection has never been opened")
        return self._pool.client

    @property
    def ambient_transaction(self) -> Optional[AmbientTransaction]:
        return self._ambient

    @property
    def session_pool_key(self) -> SessionPoolKey:
        database = self.database
        if database is None:
            raise InvalidStateError(
                "The connection string has no database; a session pool needs one"
            )
        return SessionPoolKey(
            database=database,
            client_options=self.builder.get_client_options(self._credential),
            pool_options=self.builder.get_pool_options(),
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def add_state_change_listener(self, listener: StateChangeListener) -> None:
        self._listeners.append(listener)

    def remove_state_change_listener(self, listener: StateChangeListener) -> None:
        self._listeners.remove(listener)

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self.logger.debug(f"Connection state {old_state.value} -> {new_state.value}")
        change = StateChange(old=old_state, new=new_state)
        for listener in list(self._listeners):
            listener(change)

    async def open(self, scope: Optional[TransactionScope] = None) -> None:
        """
        Open the connection, enlisting in ``scope`` when one is given.

        Opening an open connection does nothing (apart from enlisting).

        Raises:
            InvalidStateError: If another open of this connection is in progress
            DeadlineExceededError: If opening takes longer than the timeout;
                the connection is left Broken
        """
        await self._open(scope, None, None)

    async def open_as_read_only(
        self,
        scope: TransactionScope,
        timestamp_bound: Optional[TimestampBound] = None,
        transaction_id: Optional[TransactionId] = None,
    ) -> None:
        """
        Open within ``scope`` with a read-only ambient transaction.

        The transaction reads at ``timestamp_bound`` (strong by default), or
        joins the existing transaction ``transaction_id``.
        """
        if scope is None:
            raise InvalidStateError(
                "open_as_read_only should only be called with a transaction scope"
            )
        if not self.builder.enlist_in_transaction:
            raise InvalidStateError(
                "open_as_read_only needs EnlistInTransaction set to true"
            )
        options = None
        if transaction_id is None:
            options = TransactionOptions.read_only(timestamp_bound)
        await self._open(scope, options, transaction_id)

    async def _open(
        self,
        scope: Optional[TransactionScope],
        options: Optional[TransactionOptions],
        transaction_id: Optional[TransactionId],
    ) -> None:
        if self._state == ConnectionState.CONNECTING:
            raise InvalidStateError("The connection is already being opened")
        if self._state != ConnectionState.OPEN:
            self._set_state(ConnectionState.CONNECTING)
            try:
                async with error_translation("SpannerConnection.open", self.logger):
                    key = self.session_pool_key
                    try:
                        async with asyncio.timeout(timeout_or_none(self.timeout)):
                            pool = await self.session_pool_manager.acquire_pool(key)
                    except TimeoutError as e:
                        raise DeadlineExceededError(
                            "Timed out opening connection"
                        ) from e
            except BaseException:
                self._set_state(ConnectionState.BROKEN)
                raise
            self._pool = pool
            self._holds_pool_reference = True
            self._set_state(ConnectionState.OPEN)

        if scope is not None and self.builder.enlist_in_transaction:
            self.enlist_transaction(scope, options, transaction_id)

    async def ensure_open(self) -> None:
        if not self.is_open:
            await self.open()
        if not self.is_open:
            raise InvalidStateError("Unable to open the connection to the database")

    async def close(self) -> None:
        """
        Close the connection and release its session pool reference.

        Transactions still running on the connection keep their sessions until
        they end; new operations need the connection to be opened again.

        Raises:
            InvalidStateError: If an open of this connection is still in progress
        """
        if self._state == ConnectionState.CLOSED:
            return
        if self._state == ConnectionState.CONNECTING:
            raise InvalidStateError(
                "The connection is being opened; close it once open completes"
            )
        self._release_pool_reference()
        self._set_state(ConnectionState.CLOSED)

    def _release_pool_reference(self) -> None:
        if self._holds_pool_reference and self._pool is not None:
            self._holds_pool_reference = False
            self.session_pool_manager.release_pool(self._pool)

    async def change_database(self, data_source: str) -> None:
        """Point the connection at another database, closing it first if open."""
        if self._state in (ConnectionState.OPEN, ConnectionState.CONNECTING):
            await self.close()
        if "/" in data_source:
            self.builder = self.builder.with_data_source(data_source)
        else:
            self.builder = self.builder.with_database(data_source)

    async def __aenter__(self) -> "SpannerConnection":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def acquire_session(
        self,
        options: Optional[TransactionOptions] = None,
        timeout: Optional[float] = None,
    ) -> Session:
        """
        Check out a session from the connection's pool.

        Raises:
            InvalidStateError: If the connection is not open
        """
        if not self.is_open:
            raise InvalidStateError(
                f"The connection must be open to acquire a session "
                f"(state: {self._state.value})"
            )
        return await self._pool.acquire_session(
            self.database, options=options, timeout=timeout
        )

    async def release_session(self, session: Session, discard: bool = False) -> None:
        await self._pool.release_session(session, discard=discard)

    def detach_session(self, session: Session) -> None:
        self._pool.detach_session(session)

    def create_detached_session(self, transaction_id: TransactionId) -> Session:
        if not self.is_open:
            raise InvalidStateError("The connection must be open to join a transaction")
        if transaction_id.database != str(self.database):
            raise InvalidArgumentError(
                f"Transaction belongs to {transaction_id.database}, "
                f"not {self.database}"
            )
        return self._pool.create_detached_session(
            transaction_id.session, transaction_id.id_bytes, TransactionMode.READ_ONLY
        )

    async def acquire_session_pool(self) -> SessionPool:
        """The session pool behind this connection, opening it if needed."""
        await self.ensure_open()
        return self._pool

    def get_session_pool_database_statistics(self) -> Optional[DatabaseStatistics]:
        """Snapshot of the pool for this connection's settings, if one exists."""
        return self.session_pool_manager.get_database_statistics(self.session_pool_key)

    async def when_session_pool_ready(self, timeout: Optional[float] = None) -> None:
        """Wait until the pool holds its minimum number of sessions."""
        await self.ensure_open()
        await self._pool.when_pool_ready(self.database, timeout=timeout)

    async def shutdown_session_pool(self, timeout: Optional[float] = None) -> None:
        """Shut the pool down; further acquisitions from it fail immediately."""
        await self.ensure_open()
        await self._pool.shutdown_pool(self.database, timeout=timeout)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def begin_transaction(
        self, timeout: Optional[float] = None
    ) -> ExplicitTransaction:
        """Begin a read-write transaction."""
        await self.ensure_open()
        async with error_translation("SpannerConnection.begin_transaction", self.logger):
            return await ExplicitTransaction.begin(
                self, TransactionOptions.read_write(), timeout
            )

    async def begin_read_only_transaction(
        self,
        bound: Union[TimestampBound, TransactionId, None] = None,
        timeout: Optional[float] = None,
    ) -> ExplicitTransaction:
        """
        Begin a read-only transaction, or join one by its TransactionId.

        Raises:
            InvalidArgumentError: For MIN_READ_TIMESTAMP and MAX_STALENESS
                bounds, which only apply to single-use reads
        """
        if isinstance(bound, TimestampBound) and bound.is_single_use_only:
            raise InvalidArgumentError(
                "min_read_timestamp and max_staleness bounds can only be used in a "
                "single-use read (SpannerCommand.execute_reader)"
            )
        await self.ensure_open()
        if isinstance(bound, TransactionId):
            return ExplicitTransaction.attach(self, bound)
        async with error_translation(
            "SpannerConnection.begin_read_only_transaction", self.logger
        ):
            return await ExplicitTransaction.begin(
                self, TransactionOptions.read_only(bound), timeout
            )

    async def run_with_retriable_transaction(
        self,
        work: Callable[[ExplicitTransaction], Awaitable[T]],
        retry_options: Optional[RetryOptions] = None,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run ``work`` in a read-write transaction, re-running it on abort.

        ``work`` may be invoked several times and must be safe to repeat.
        """
        await self.ensure_open()
        retriable = RetriableTransaction(
            self,
            clock=self._clock,
            scheduler=self._scheduler,
            retry_options=retry_options,
        )
        return await retriable.run(work, timeout)

    def enlist_transaction(
        self,
        scope: TransactionScope,
        options: Optional[TransactionOptions] = None,
        transaction_id: Optional[TransactionId] = None,
    ) -> Optional[AmbientTransaction]:
        """
        Join ``scope``; later commands run in its ambient transaction.

        Raises:
            InvalidStateError: If the connection is already enlisted
        """
        if not self.builder.enlist_in_transaction:
            return None
        if self._ambient is not None:
            raise InvalidStateError("This connection is already enlisted to a transaction")
        self._ambient = scope.enlist(self, options, transaction_id)
        return self._ambient

    def clear_ambient_transaction(self, transaction: AmbientTransaction) -> None:
        if self._ambient is transaction:
            self._ambient = None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_select_command(
        self,
        sql: str,
        parameters: Optional[Dict[str, Any]] = None,
        param_types: Optional[Dict[str, TypeCode]] = None,
    ) -> SpannerCommand:
        return SpannerCommand(
            self, CommandType.SELECT, sql=sql, parameters=parameters, param_types=param_types
        )

    def create_dml_command(
        self,
        sql: str,
        parameters: Optional[Dict[str, Any]] = None,
        param_types: Optional[Dict[str, TypeCode]] = None,
    ) -> SpannerCommand:
        return SpannerCommand(
            self, CommandType.DML, sql=sql, parameters=parameters, param_types=param_types
        )

    def create_batch_dml_command(
        self, transaction: Optional[ExplicitTransaction] = None
    ) -> SpannerBatchCommand:
        """Empty DML batch; add statements before running it."""
        return SpannerBatchCommand(self, transaction=transaction)

    def create_insert_command(
        self, table: str, values: Optional[Dict[str, Any]] = None
    ) -> SpannerCommand:
        return SpannerCommand(self, CommandType.INSERT, table=table, parameters=values)

    def create_update_command(
        self, table: str, values: Optional[Dict[str, Any]] = None
    ) -> SpannerCommand:
        return SpannerCommand(self, CommandType.UPDATE, table=table, parameters=values)

    def create_insert_or_update_command(
        self, table: str, values: Optional[Dict[str, Any]] = None
    ) -> SpannerCommand:
        return SpannerCommand(
            self, CommandType.INSERT_OR_UPDATE, table=table, parameters=values
        )

    def create_delete_command(
        self, table: str, primary_keys: Optional[Dict[str, Any]] = None
    ) -> SpannerCommand:
        return SpannerCommand(
            self, CommandType.DELETE, table=table, parameters=primary_keys
        )

    def create_command_with_partition(
        self, partition: CommandPartition, transaction: ExplicitTransaction
    ) -> SpannerCommand:
        """Command that reads one partition produced by get_reader_partitions."""
        return SpannerCommand(
            self,
            CommandType.SELECT,
            transaction=transaction,
            partition=partition,
        )
