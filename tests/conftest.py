"""
Common test fixtures and configuration.

Provides an in-memory session transport plus a controllable clock and
scheduler, so pool, transaction and connection tests run without a server
and without waiting on the wall clock.
"""
import asyncio
import itertools
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import grpc
import pytest

# Add src directory to Python path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from spannerdata.connections import SessionClient, SessionPoolManager  # noqa: E402
from spannerdata.core import SpannerConnection  # noqa: E402
from spannerdata.utility.clock import Clock, Scheduler  # noqa: E402
from spannerdata.utility.exceptions import SessionNotFoundError  # noqa: E402
from spannerdata.v1 import (  # noqa: E402
    CommitResponse,
    DatabaseName,
    ExecuteBatchDmlResponse,
    ResultSet,
)

DATABASE = DatabaseName.parse("projects/test-project/instances/test-instance/databases/testdb")
CONNECTION_STRING = (
    f"Data Source={DATABASE};MinimumPooledSessions=0;MaximumActiveSessions=10"
)
COMMIT_TIMESTAMP = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.time = start

    def now(self) -> float:
        return self.time

    def advance(self, seconds: float) -> None:
        self.time += seconds


class FakeScheduler(Scheduler):
    """
    Scheduler that records delays instead of sleeping.

    Short delays (backoff) advance the fake clock and return at once. Long
    delays (the pool maintenance interval) park until the task is cancelled,
    so tests run maintenance passes explicitly.
    """

    def __init__(self, clock: Optional[FakeClock] = None, instant_limit: float = 5.0):
        self.clock = clock
        self.instant_limit = instant_limit
        self.delays: List[float] = []

    async def delay(self, seconds: float) -> None:
        if seconds > self.instant_limit:
            await asyncio.get_running_loop().create_future()
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)
        await asyncio.sleep(0)


class FakeSessionClient(SessionClient):
    """
    In-memory session transport.

    Errors queued in the ``*_errors`` lists are raised by the next matching
    calls, oldest first. Setting ``create_gate`` to an unset asyncio.Event
    holds session creation until the event is set.
    """

    def __init__(self):
        super().__init__()
        self._session_ids = itertools.count(1)
        self._transaction_ids = itertools.count(1)
        self.live_sessions: Set[str] = set()
        self.deleted: List[str] = []
        self.create_calls = 0
        self.batch_create_calls: List[int] = []
        self.get_session_calls: List[str] = []
        self.begins: List[Dict[str, Any]] = []
        self.commits: List[Dict[str, Any]] = []
        self.rollbacks: List[Dict[str, Any]] = []
        self.queries: List[Dict[str, Any]] = []
        self.executed: List[Dict[str, Any]] = []
        self.batch_dml: List[Dict[str, Any]] = []
        self.partitions: List[Dict[str, Any]] = []

        self.create_errors: List[BaseException] = []
        self.batch_create_errors: List[BaseException] = []
        self.begin_errors: List[BaseException] = []
        self.commit_errors: List[BaseException] = []
        self.dml_errors: List[BaseException] = []
        self.query_errors: List[BaseException] = []
        self.create_gate: Optional[asyncio.Event] = None
        # (index, code, message): the statement at index fails
        self.batch_dml_failure: Optional[Tuple[int, grpc.StatusCode, str]] = None

        self.query_rows: List[List[Any]] = [[1, "one"], [2, "two"]]
        self.dml_row_count = 1
        self.partition_tokens = [b"p1", b"p2"]
        self.closed = False

    def _new_session(self, database: DatabaseName) -> str:
        name = f"{database}/sessions/s{next(self._session_ids)}"
        self.live_sessions.add(name)
        return name

    async def create_session(self, database, timeout=None) -> str:
        self.create_calls += 1
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_errors:
            raise self.create_errors.pop(0)
        return self._new_session(database)

    async def batch_create_sessions(self, database, count, timeout=None) -> List[str]:
        self.batch_create_calls.append(count)
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.batch_create_errors:
            raise self.batch_create_errors.pop(0)
        return [self._new_session(database) for _ in range(count)]

    async def delete_session(self, name, timeout=None) -> None:
        self.deleted.append(name)
        self.live_sessions.discard(name)

    async def get_session(self, name, timeout=None) -> None:
        self.get_session_calls.append(name)
        if name not in self.live_sessions:
            raise SessionNotFoundError(f"Session not found: {name}")

    async def begin_transaction(self, session, options, timeout=None) -> bytes:
        self.begins.append({"session": session, "options": options})
        if self.begin_errors:
            raise self.begin_errors.pop(0)
        return f"tx-{next(self._transaction_ids)}".encode()

    async def commit(
        self, session, mutations, transaction_id=None, single_use=None, timeout=None
    ) -> CommitResponse:
        self.commits.append(
            {
                "session": session,
                "mutations": list(mutations),
                "transaction_id": transaction_id,
                "single_use": single_use,
            }
        )
        if self.commit_errors:
            raise self.commit_errors.pop(0)
        return CommitResponse(commit_timestamp=COMMIT_TIMESTAMP)

    async def rollback(self, session, transaction_id, timeout=None) -> None:
        self.rollbacks.append({"session": session, "transaction_id": transaction_id})

    def execute_streaming_sql(self, session, request, timeout=None):
        self.queries.append({"session": session, "request": request})
        error = self.query_errors.pop(0) if self.query_errors else None
        return self._stream(list(self.query_rows), error)

    async def _stream(self, rows, error):
        for row in rows:
            yield row
        if error is not None:
            raise error

    async def execute_sql(self, session, request, timeout=None) -> ResultSet:
        self.executed.append({"session": session, "request": request})
        if self.dml_errors:
            raise self.dml_errors.pop(0)
        began = request.transaction is not None and request.transaction.begin is not None
        return ResultSet(
            row_count_exact=self.dml_row_count,
            transaction_id=b"inline-tx" if began else None,
        )

    async def execute_batch_dml(
        self, session, request, timeout=None
    ) -> ExecuteBatchDmlResponse:
        self.batch_dml.append({"session": session, "request": request})
        if self.dml_errors:
            raise self.dml_errors.pop(0)
        succeeded = len(request.statements)
        status_code, message = grpc.StatusCode.OK, ""
        if self.batch_dml_failure is not None:
            index, status_code, message = self.batch_dml_failure
            succeeded = min(index, succeeded)
        result_sets = [
            ResultSet(row_count_exact=self.dml_row_count) for _ in range(succeeded)
        ]
        if result_sets and request.transaction.begin is not None:
            result_sets[0] = result_sets[0].model_copy(
                update={"transaction_id": b"inline-tx"}
            )
        return ExecuteBatchDmlResponse(
            result_sets=result_sets, status_code=status_code, status_message=message
        )

    async def partition_query(
        self, session, request, transaction_id, partition_options, timeout=None
    ) -> List[bytes]:
        self.partitions.append(
            {
                "session": session,
                "request": request,
                "transaction_id": transaction_id,
                "options": partition_options,
            }
        )
        return list(self.partition_tokens)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def setup_logging():
    """Configure logging for tests."""
    logging.basicConfig(level=logging.DEBUG)
    yield


@pytest.fixture
def database():
    return DATABASE


@pytest.fixture
def connection_string():
    return CONNECTION_STRING


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_scheduler(fake_clock):
    return FakeScheduler(fake_clock)


@pytest.fixture
def fake_client():
    return FakeSessionClient()


@pytest.fixture
def session_pool_manager(fake_client, fake_clock, fake_scheduler):
    """Manager whose pools all talk to ``fake_client``. Close it in the test."""

    async def client_factory(key):
        return fake_client

    return SessionPoolManager(client_factory, clock=fake_clock, scheduler=fake_scheduler)


@pytest.fixture
def wait_until():
    """Poll a condition on the event loop until it holds (or fail)."""

    async def _wait_until(predicate, timeout: float = 2.0) -> None:
        async with asyncio.timeout(timeout):
            while not predicate():
                await asyncio.sleep(0.001)

    return _wait_until


@pytest.fixture
def connection(connection_string, session_pool_manager, fake_clock, fake_scheduler):
    """
    Unopened connection backed by ``session_pool_manager``.

    Tests open it themselves and finish with ``await session_pool_manager.close()``.
    """
    return SpannerConnection(
        connection_string,
        session_pool_manager=session_pool_manager,
        clock=fake_clock,
        scheduler=fake_scheduler,
    )
