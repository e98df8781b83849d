"""
Session pool for one database.

Keeps a bounded set of server sessions warm so that transactions do not pay
for a create-session RPC each time. Sessions are handed out one caller at a
time, returned on release, and maintained in the background: idle sessions
past the eviction delay are deleted (never below the minimum size), stale idle
sessions are pinged, and the pool is topped back up to its minimum.
"""
import asyncio
import threading
from collections import deque
from typing import Deque, List, Optional, Set, Union

from pydantic import BaseModel

from spannerdata.messages import get_logger
from spannerdata.utility.clock import (
    SYSTEM_CLOCK,
    SYSTEM_SCHEDULER,
    Clock,
    Scheduler,
    timeout_or_none,
)
from spannerdata.utility.exceptions import (
    InvalidArgumentError,
    InvalidStateError,
    SpannerError,
    error_translation,
    translate_error,
)
from spannerdata.utility.retry import transient_retrying
from spannerdata.v1 import (
    DatabaseName,
    TransactionMode,
    TransactionOptions,
    database_of_session,
)

from .base import SessionClient
from .constants import DEFAULT_POOL_OPTIONS, SessionPoolOptions
from .session import Session


class DatabaseStatistics(BaseModel):
    """Point-in-time snapshot of a pool's counters."""

    database: str
    idle_count: int
    checked_out_count: int
    pending_creation_count: int
    health_check_count: int
    waiting_acquirer_count: int
    shutting_down: bool

    @property
    def session_count(self) -> int:
        return self.idle_count + self.checked_out_count + self.health_check_count


class SessionPool:
    """
    Bounded pool of sessions for a single database.

    Design:
    - Idle sessions are kept ordered by last use; acquire takes the most
      recently used one so a small hot set stays warm on the server
    - At capacity, acquirers wait in FIFO order and a released session is
      handed straight to the oldest waiter
    - Counters and the idle set change only under a short threading.Lock that
      is never held across an await
    - Warm-up creates sessions in batches rather than one call per session

    Invariant: idle + checked out + pending creations + in-flight health
    checks never exceeds ``max_pool_size``.

    Example:
        ```python
        pool = SessionPool(database, client, SessionPoolOptions(min_pool_size=5))
        pool.start()
        await pool.when_pool_ready()

        session = await pool.acquire_session()
        try:
            ...
        finally:
            await pool.release_session(session)

        await pool.shutdown_pool()
        ```
    """

    def __init__(
        self,
        database: DatabaseName,
        client: SessionClient,
        options: Optional[SessionPoolOptions] = None,
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        """
        Initialize session pool.

        Args:
            database: Database every session in this pool belongs to
            client: Transport used for session RPCs
            options: Sizing and maintenance settings
            clock: Time source for session timestamps
            scheduler: Sleep source for backoff and the maintenance loop
        """
        self.database = database
        self.client = client
        self.options = options or DEFAULT_POOL_OPTIONS
        self._clock = clock or SYSTEM_CLOCK
        self._scheduler = scheduler or SYSTEM_SCHEDULER

        self._lock = threading.Lock()
        # Least recently used on the left, most recently used on the right
        self._idle: Deque[Session] = deque()
        self._checked_out: Set[Session] = set()
        self._checking: Set[Session] = set()
        self._pending_creations = 0
        self._deleting = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._state_changed = asyncio.Event()

        self._started = False
        self._shutdown = False
        self._warmup_error: Optional[BaseException] = None
        # Bumped on every failed warm-up; waiters only report newer failures
        self._warmup_failures = 0
        self._maintenance_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

        self.logger = get_logger(f"spannerdata.pool.{database}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Begin background warm-up and maintenance.

        Must be called from a running event loop. Calling it again is a no-op.
        """
        if self._started:
            return
        self._started = True
        self.logger.start(
            f"Session pool for {self.logger.name(str(self.database))} "
            f"(min {self.options.min_pool_size}, max {self.options.max_pool_size})"
        )
        self._spawn(self._replenish())
        self._maintenance_task = self._spawn(self._maintenance_loop())

    async def when_pool_ready(
        self,
        database: Union[DatabaseName, str, None] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Wait until the pool holds at least ``min_pool_size`` sessions.

        A new warm-up attempt is started for the wait, so a failure recorded
        before this call is not reported again.

        Raises:
            SpannerError: The failure that stopped warm-up
            InvalidStateError: If the pool has been shut down
            TimeoutError: If ``timeout`` expires first
        """
        self._check_database(database)
        with self._lock:
            seen_failures = self._warmup_failures
        if self._started:
            self._spawn(self._replenish())

        async with asyncio.timeout(timeout_or_none(timeout)):
            while True:
                with self._lock:
                    if self._shutdown:
                        raise InvalidStateError("Session pool has been shut down")
                    if self._session_count_locked() >= self.options.min_pool_size:
                        return
                    if (
                        self._warmup_failures != seen_failures
                        and self._warmup_error is not None
                    ):
                        raise self._warmup_error
                    changed = self._state_changed
                await changed.wait()

    async def shutdown_pool(
        self,
        database: Union[DatabaseName, str, None] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Shut the pool down and delete every session it owns.

        New acquisitions (and acquirers already waiting) fail with
        InvalidStateError. Idle sessions are deleted now; checked-out sessions
        are deleted as they are released, and this call returns once that has
        happened. Safe to call more than once.
        """
        self._check_database(database)
        with self._lock:
            first_call = not self._shutdown
            self._shutdown = True
            idle = list(self._idle)
            self._idle.clear()
            self._deleting += len(idle)
            waiters = list(self._waiters)
            self._waiters.clear()
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_exception(
                        InvalidStateError("Session pool has been shut down")
                    )
            maintenance = self._maintenance_task
            self._notify_locked()

        if first_call:
            self.logger.info(
                f"Shutting down session pool for {self.logger.name(str(self.database))}"
            )
            if maintenance is not None:
                maintenance.cancel()
            await asyncio.gather(*(self._delete_session(s) for s in idle))

        async with asyncio.timeout(timeout_or_none(timeout)):
            while True:
                with self._lock:
                    if not (
                        self._checked_out
                        or self._checking
                        or self._pending_creations
                        or self._deleting
                    ):
                        break
                    changed = self._state_changed
                await changed.wait()

        if first_call:
            self.logger.success(f"Session pool for {self.database} shut down")

    @property
    def is_shut_down(self) -> bool:
        with self._lock:
            return self._shutdown

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire_session(
        self,
        database: Union[DatabaseName, str, None] = None,
        options: Optional[TransactionOptions] = None,
        timeout: Optional[float] = None,
    ) -> Session:
        """
        Check out a session.

        Returns the most recently used idle session if there is one, creates
        a session when below ``max_pool_size``, and otherwise waits for
        another caller to release one. Without a timeout the wait only ends
        when the calling task is cancelled.

        Args:
            database: Must match the pool's database when given
            options: Transaction options the session is wanted for
            timeout: Seconds to wait before giving up (None: wait until cancelled)

        Returns:
            A session no other caller holds

        Raises:
            InvalidStateError: If the pool has been shut down
            asyncio.CancelledError / TimeoutError: If cancelled or timed out
                while waiting; the pool's counters are left unchanged
            SpannerError: If creating a session failed past the retry bound
        """
        self._check_database(database)
        async with asyncio.timeout(timeout_or_none(timeout)):
            session = await self._acquire()
        session.touch(self._clock.now())
        if options is not None:
            self.logger.debug(
                f"Leased {session.short_name} for a {options.mode.value} transaction"
            )
        return session

    async def release_session(self, session: Session, discard: bool = False) -> None:
        """
        Return a session to the pool.

        The session is deleted instead when it was marked unhealthy, when
        ``discard`` is set, or when the pool has been shut down. Releasing a
        session that is not checked out (a second release) does nothing.
        """
        if session.detached:
            self.logger.debug(f"Detached session {session.short_name} left as is")
            return

        with self._lock:
            if session not in self._checked_out:
                self.logger.debug(
                    f"Session {session.short_name} is not checked out; ignoring release"
                )
                return
            self._checked_out.remove(session)
            session.end_transaction()
            delete = discard or not session.healthy or self._shutdown
            if delete:
                self._deleting += 1
                if not self._shutdown:
                    self._grant_slot_locked()
            else:
                session.touch(self._clock.now())
                self._hand_back_locked(session)
            self._notify_locked()

        if delete:
            await self._delete_session(session)

    def detach_session(self, session: Session) -> None:
        """
        Stop tracking a checked-out session without deleting it.

        Used when another process keeps using the session's transaction. The
        session's slot is freed; the session itself is left to expire on the
        server.
        """
        with self._lock:
            if session not in self._checked_out:
                return
            self._checked_out.remove(session)
            session.detached = True
            if not self._shutdown:
                self._grant_slot_locked()
            self._notify_locked()
        self.logger.debug(f"Detached session {session.short_name}")

    def create_detached_session(
        self,
        name: str,
        transaction_id: bytes,
        mode: TransactionMode,
    ) -> Session:
        """
        Reconstruct a session owned by another process.

        The returned session already carries the foreign transaction. It does
        not count against the pool's capacity and is never deleted by it.
        """
        if database_of_session(name) != self.database:
            raise InvalidArgumentError(
                f"Session {name} does not belong to database {self.database}"
            )
        session = Session(
            name=name,
            database=self.database,
            created_at=self._clock.now(),
            detached=True,
        )
        session.begin(mode, transaction_id)
        return session

    @property
    def statistics(self) -> DatabaseStatistics:
        with self._lock:
            return DatabaseStatistics(
                database=str(self.database),
                idle_count=len(self._idle),
                checked_out_count=len(self._checked_out),
                pending_creation_count=self._pending_creations,
                health_check_count=len(self._checking),
                waiting_acquirer_count=sum(1 for w in self._waiters if not w.done()),
                shutting_down=self._shutdown,
            )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def run_maintenance(self) -> None:
        """Run one maintenance pass: evict, health check, top up."""
        await self._evict_idle_sessions()
        await self._health_check_idle_sessions()
        await self._replenish()

    async def _maintenance_loop(self) -> None:
        while True:
            await self._scheduler.delay(self.options.maintenance_interval)
            if self.is_shut_down:
                return
            try:
                await self.run_maintenance()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.warning(f"Maintenance pass failed: {str(e)}")

    async def _evict_idle_sessions(self) -> None:
        now = self._clock.now()
        with self._lock:
            if self._shutdown:
                return
            surplus = self._capacity_used_locked() - self.options.min_pool_size
            evicted: List[Session] = []
            for session in self._idle:
                if surplus <= 0:
                    break
                if session.idle_time(now) >= self.options.idle_eviction_delay:
                    evicted.append(session)
                    surplus -= 1
            for session in evicted:
                self._idle.remove(session)
            self._deleting += len(evicted)
            if evicted:
                self._notify_locked()

        if evicted:
            self.logger.debug(f"Evicting {len(evicted)} idle sessions")
            await asyncio.gather(*(self._delete_session(s) for s in evicted))

    async def _health_check_idle_sessions(self) -> None:
        now = self._clock.now()
        with self._lock:
            if self._shutdown:
                return
            due = [
                s
                for s in self._idle
                if now - s.last_checked_at >= self.options.health_check_interval
            ][: self.options.health_check_batch_size]
            for session in due:
                self._idle.remove(session)
                self._checking.add(session)

        if due:
            self.logger.debug(f"Health checking {len(due)} idle sessions")
            await asyncio.gather(*(self._check_session(s) for s in due))

    async def _check_session(self, session: Session) -> None:
        passed = False
        try:
            async with error_translation("SessionPool.get_session"):
                async for attempt in self._retrying():
                    with attempt:
                        await self.client.get_session(session.name)
            passed = True
        except SpannerError as e:
            self.logger.warning(
                f"Session {session.short_name} failed health check: {str(e)}"
            )
            session.mark_unhealthy()
        finally:
            with self._lock:
                self._checking.discard(session)
                keep = passed and not self._shutdown
                if keep:
                    session.last_checked_at = self._clock.now()
                    self._hand_back_locked(session)
                else:
                    self._deleting += 1
                    if not self._shutdown:
                        self._grant_slot_locked()
                self._notify_locked()
            if not keep:
                await self._delete_session(session)

    async def _replenish(self) -> None:
        """Create sessions in batches until the pool reaches its minimum."""
        with self._lock:
            if self._shutdown:
                return
            needed = self.options.min_pool_size - self._capacity_used_locked()
            if needed <= 0:
                return
            self._pending_creations += needed

        remaining = needed
        try:
            while remaining > 0:
                batch = min(remaining, self.options.max_batch_create_size)
                async with error_translation("SessionPool.batch_create_sessions"):
                    async for attempt in self._retrying():
                        with attempt:
                            names = await self.client.batch_create_sessions(
                                self.database, batch
                            )
                if not names:
                    raise SpannerError("Server created no sessions")

                now = self._clock.now()
                created = [
                    Session(name=n, database=self.database, created_at=now)
                    for n in names
                ]
                extra = created[remaining:]
                created = created[:remaining]
                with self._lock:
                    self._pending_creations -= len(created)
                    remaining -= len(created)
                    if self._shutdown:
                        extra = created + extra
                    else:
                        for session in created:
                            self._hand_back_locked(session)
                        self._warmup_error = None
                    self._deleting += len(extra)
                    self._notify_locked()
                if extra:
                    await asyncio.gather(*(self._delete_session(s) for s in extra))

            self.logger.debug(f"Created {needed} sessions for {self.database}")
        except BaseException as e:
            with self._lock:
                self._pending_creations -= remaining
                if not self._shutdown:
                    for _ in range(remaining):
                        if not self._grant_slot_locked():
                            break
                if not isinstance(e, asyncio.CancelledError):
                    self._warmup_error = translate_error(e)
                    self._warmup_failures += 1
                self._notify_locked()
            if isinstance(e, asyncio.CancelledError):
                raise
            self.logger.error(f"Session pool warm-up failed: {str(e)}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _acquire(self) -> Session:
        loop = asyncio.get_running_loop()
        waiter: Optional[asyncio.Future] = None
        session: Optional[Session] = None
        with self._lock:
            if self._shutdown:
                raise InvalidStateError("Session pool has been shut down")
            if self._idle:
                session = self._idle.pop()
                self._checked_out.add(session)
            elif self._capacity_used_locked() < self.options.max_pool_size:
                self._pending_creations += 1
            else:
                waiter = loop.create_future()
                self._waiters.append(waiter)

        if session is not None:
            return session
        if waiter is not None:
            session = await self._wait_for_handoff(waiter)
            if session is not None:
                return session
            # A slot was freed and reserved for us; fall through and create.
        return await self._create_reserved_session()

    async def _wait_for_handoff(self, waiter: asyncio.Future) -> Optional[Session]:
        """Wait for a session (or a free slot, signalled by None)."""
        try:
            return await waiter
        except BaseException:
            to_delete: Optional[Session] = None
            with self._lock:
                handed_over = (
                    waiter.done()
                    and not waiter.cancelled()
                    and waiter.exception() is None
                )
                if not handed_over:
                    waiter.cancel()
                    try:
                        self._waiters.remove(waiter)
                    except ValueError:
                        pass
                else:
                    handed = waiter.result()
                    if handed is None:
                        self._pending_creations -= 1
                        self._grant_slot_locked()
                    else:
                        self._checked_out.discard(handed)
                        if self._shutdown:
                            self._deleting += 1
                            to_delete = handed
                        else:
                            self._hand_back_locked(handed)
                    self._notify_locked()
            if to_delete is not None:
                await self._delete_session(to_delete)
            raise

    async def _create_reserved_session(self) -> Session:
        """Create a session for a slot already counted as a pending creation."""
        try:
            async with error_translation("SessionPool.create_session"):
                async for attempt in self._retrying():
                    with attempt:
                        name = await self.client.create_session(self.database)
        except BaseException:
            with self._lock:
                self._pending_creations -= 1
                self._grant_slot_locked()
                self._notify_locked()
            raise

        session = Session(name=name, database=self.database, created_at=self._clock.now())
        with self._lock:
            self._pending_creations -= 1
            shut_down = self._shutdown
            if shut_down:
                self._deleting += 1
            else:
                self._checked_out.add(session)
            self._notify_locked()

        if shut_down:
            await self._delete_session(session)
            raise InvalidStateError("Session pool has been shut down")
        self.logger.debug(f"Created session {session.short_name}")
        return session

    async def _delete_session(self, session: Session) -> None:
        """Best-effort delete; callers have already counted it in _deleting."""
        try:
            async with error_translation("SessionPool.delete_session"):
                await self.client.delete_session(session.name)
        except Exception as e:
            self.logger.warning(
                f"Error deleting session {session.short_name}: {str(e)}"
            )
        finally:
            with self._lock:
                self._deleting -= 1
                self._notify_locked()

    def _retrying(self):
        return transient_retrying(
            self.options.session_creation_attempts,
            self.options.session_creation_backoff,
            self._scheduler,
            logger_name="spannerdata.retry.pool",
        )

    def _hand_back_locked(self, session: Session) -> None:
        """Give a usable session to the oldest waiter, or to the idle set."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._checked_out.add(session)
            waiter.set_result(session)
            return
        # Keep the idle set ordered by last use
        index = len(self._idle)
        while index > 0 and self._idle[index - 1].last_used_at > session.last_used_at:
            index -= 1
        self._idle.insert(index, session)

    def _grant_slot_locked(self) -> bool:
        """Let the oldest waiter create a session in a freed slot."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._pending_creations += 1
            waiter.set_result(None)
            return True
        return False

    def _notify_locked(self) -> None:
        self._state_changed.set()
        self._state_changed = asyncio.Event()

    def _capacity_used_locked(self) -> int:
        return (
            len(self._idle)
            + len(self._checked_out)
            + len(self._checking)
            + self._pending_creations
        )

    def _session_count_locked(self) -> int:
        return len(self._idle) + len(self._checked_out) + len(self._checking)

    def _check_database(self, database: Union[DatabaseName, str, None]) -> None:
        if database is None:
            return
        if isinstance(database, str):
            database = DatabaseName.parse(database)
        if database != self.database:
            raise InvalidArgumentError(
                f"Pool for {self.database} cannot serve database {database}"
            )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
