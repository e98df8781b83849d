"""
Unit tests for ExplicitTransaction.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import grpc
import pytest

from spannerdata.core import SpannerConnection
from spannerdata.transactions import DisposeBehavior, ExplicitTransaction
from spannerdata.utility.exceptions import (
    BatchDmlError,
    InvalidArgumentError,
    InvalidStateError,
    SessionNotFoundError,
)
from spannerdata.v1 import (
    ExecuteSqlRequest,
    Mutation,
    MutationOperation,
    TimestampBound,
    TransactionOptions,
)

QUERY = ExecuteSqlRequest(sql="SELECT Id, Name FROM Singers")
UPDATE = ExecuteSqlRequest(sql="UPDATE Singers SET Name = 'x' WHERE Id = 1")
DELETE = ExecuteSqlRequest(sql="DELETE FROM Albums WHERE SingerId = 1")
INSERT = Mutation(
    operation=MutationOperation.INSERT,
    table="Singers",
    columns=["Id", "Name"],
    values=[[1, "Marc"]],
)


class TestReadWriteTransaction:
    """Test read-write transactions with an explicit begin."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_commit_sends_buffered_work(self, connection, fake_client):
        """Test DML runs immediately and mutations are sent at commit."""
        await connection.open()
        transaction = await connection.begin_transaction()

        assert fake_client.begins[0]["options"] == TransactionOptions.read_write()
        assert connection.get_session_pool_database_statistics().checked_out_count == 1

        await transaction.execute_dml(UPDATE)
        await transaction.execute_dml(UPDATE)
        await transaction.execute_mutations([INSERT])
        assert fake_client.commits == []

        timestamp = await transaction.commit()

        assert timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert transaction.commit_timestamp == timestamp
        assert transaction.is_committed
        assert [e["request"].seqno for e in fake_client.executed] == [1, 2]
        assert all(e["request"].transaction.id == b"tx-1" for e in fake_client.executed)
        assert fake_client.commits[0]["mutations"] == [INSERT]
        assert fake_client.commits[0]["transaction_id"] == b"tx-1"

        await transaction.dispose()
        assert fake_client.rollbacks == []
        assert connection.get_session_pool_database_statistics().idle_count == 1
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_concurrent_dml_gets_distinct_seqnos(self, connection, fake_client):
        """Test DML started together on one transaction is numbered one by one."""
        await connection.open()
        transaction = await connection.begin_transaction()

        counts = await asyncio.gather(
            *(transaction.execute_dml(UPDATE) for _ in range(3))
        )

        assert counts == [1, 1, 1]
        assert [e["request"].seqno for e in fake_client.executed] == [1, 2, 3]
        await transaction.commit()
        await transaction.dispose()
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_batch_dml_is_one_rpc(self, connection, fake_client):
        """Test a batch goes out as one request sharing one seqno."""
        await connection.open()
        fake_client.dml_row_count = 2
        transaction = await connection.begin_transaction()

        await transaction.execute_dml(UPDATE)
        counts = await transaction.execute_batch_dml([UPDATE, DELETE, UPDATE])
        await transaction.execute_dml(UPDATE)

        assert counts == [2, 2, 2]
        assert len(fake_client.batch_dml) == 1
        request = fake_client.batch_dml[0]["request"]
        assert request.seqno == 2
        assert request.transaction.id == b"tx-1"
        assert [s.sql for s in request.statements] == [UPDATE.sql, DELETE.sql, UPDATE.sql]
        assert all(s.transaction is None for s in request.statements)
        assert [e["request"].seqno for e in fake_client.executed] == [1, 3]

        await transaction.commit()
        await transaction.dispose()
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_batch_dml_failure_reports_completed_counts(
        self, connection, fake_client
    ):
        """Test a failing statement stops the batch but leaves the transaction usable."""
        await connection.open()
        fake_client.batch_dml_failure = (
            1,
            grpc.StatusCode.INVALID_ARGUMENT,
            "Column not found",
        )
        transaction = await connection.begin_transaction()

        with pytest.raises(BatchDmlError, match="Column not found") as exc_info:
            await transaction.execute_batch_dml([UPDATE, DELETE, UPDATE])

        assert exc_info.value.row_counts == [1]
        assert exc_info.value.code == grpc.StatusCode.INVALID_ARGUMENT
        await transaction.execute_dml(UPDATE)
        await transaction.commit()
        await transaction.dispose()
        assert fake_client.rollbacks == []
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_empty_batch(self, connection, fake_client):
        await connection.open()
        async with await connection.begin_transaction() as transaction:
            with pytest.raises(InvalidArgumentError):
                await transaction.execute_batch_dml([])
            await transaction.commit()

        assert fake_client.batch_dml == []
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_queries_use_transaction_id(self, connection, fake_client):
        """Test reads in the transaction carry its id."""
        await connection.open()
        async with await connection.begin_transaction() as transaction:
            rows = await transaction.execute_query(QUERY)
            await rows.fetch_all()
            await transaction.commit()

        assert fake_client.queries[0]["request"].transaction.id == b"tx-1"
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_double_commit(self, connection):
        """Test committing twice raises InvalidStateError."""
        await connection.open()
        async with await connection.begin_transaction() as transaction:
            await transaction.commit()
            with pytest.raises(InvalidStateError):
                await transaction.commit()
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_dispose_rolls_back_uncommitted_work(self, connection, fake_client):
        """Test leaving the block without commit rolls the transaction back."""
        await connection.open()
        async with await connection.begin_transaction() as transaction:
            await transaction.execute_dml(UPDATE)

        assert fake_client.rollbacks == [
            {"session": transaction.session.name, "transaction_id": b"tx-1"}
        ]
        assert connection.get_session_pool_database_statistics().idle_count == 1
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_rollback_rules(self, connection, fake_client):
        """Test rollback is idempotent but never follows a commit."""
        await connection.open()
        transaction = await connection.begin_transaction()
        await transaction.rollback()
        await transaction.rollback()
        assert len(fake_client.rollbacks) == 1

        with pytest.raises(InvalidStateError):
            await transaction.execute_dml(UPDATE)
        await transaction.dispose()

        committed = await connection.begin_transaction()
        await committed.commit()
        with pytest.raises(InvalidStateError):
            await committed.rollback()
        await committed.dispose()
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_operations_after_dispose(self, connection):
        """Test a disposed transaction rejects further work."""
        await connection.open()
        transaction = await connection.begin_transaction()
        await transaction.dispose()
        await transaction.dispose()

        with pytest.raises(InvalidStateError):
            await transaction.execute_mutations([INSERT])
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_begin_failure_releases_session(self, connection, fake_client):
        """Test a failed begin gives back (and here deletes) the session."""
        await connection.open()
        fake_client.begin_errors = [SessionNotFoundError("Session not found")]

        with pytest.raises(SessionNotFoundError):
            await connection.begin_transaction()

        stats = connection.get_session_pool_database_statistics()
        assert stats.checked_out_count == 0
        assert len(fake_client.deleted) == 1
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_session_lost_during_commit(self, connection, fake_client):
        """Test a session the server dropped is deleted when disposed."""
        await connection.open()
        fake_client.commit_errors = [SessionNotFoundError("Session not found")]
        transaction = await connection.begin_transaction()

        with pytest.raises(SessionNotFoundError):
            await transaction.commit()
        await transaction.dispose()

        assert not transaction.session.healthy
        assert fake_client.deleted == [transaction.session.name]
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_discard_deletes_session(self, connection, fake_client):
        """Test the DISCARD dispose behavior deletes the session."""
        await connection.open()
        transaction = await connection.begin_transaction()
        transaction.dispose_behavior = DisposeBehavior.DISCARD

        await transaction.dispose(rollback=False)

        assert fake_client.rollbacks == []
        assert fake_client.deleted == [transaction.session.name]
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_read_write_transaction_id_is_not_shareable(self, connection):
        await connection.open()
        async with await connection.begin_transaction() as transaction:
            with pytest.raises(InvalidStateError):
                transaction.transaction_id
        await connection.session_pool_manager.close()


class TestReadOnlyTransaction:
    """Test read-only transactions."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_read_only_rejects_writes(self, connection, fake_client):
        """Test writes fail and commit needs no RPC."""
        await connection.open()
        transaction = await connection.begin_read_only_transaction()
        assert transaction.is_read_only
        assert fake_client.begins[0]["options"] == TransactionOptions.read_only()

        with pytest.raises(InvalidStateError):
            await transaction.execute_dml(UPDATE)
        with pytest.raises(InvalidStateError):
            await transaction.execute_batch_dml([UPDATE])
        with pytest.raises(InvalidStateError):
            await transaction.execute_mutations([INSERT])

        assert await transaction.commit() is None
        await transaction.dispose()

        assert fake_client.commits == []
        assert fake_client.rollbacks == []
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_timestamp_bound_is_sent_with_begin(self, connection, fake_client):
        await connection.open()
        bound = TimestampBound.of_read_timestamp(datetime(2024, 1, 1, tzinfo=timezone.utc))

        async with await connection.begin_read_only_transaction(bound):
            pass

        assert fake_client.begins[0]["options"].read_only_bound == bound
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_single_use_only_bounds_are_rejected(self, connection):
        """Test bounds the server resolves per read cannot begin a transaction."""
        await connection.open()

        with pytest.raises(InvalidArgumentError):
            await connection.begin_read_only_transaction(
                TimestampBound.of_max_staleness(timedelta(seconds=10))
            )
        with pytest.raises(InvalidArgumentError):
            await ExplicitTransaction.begin(
                connection,
                TransactionOptions.read_only(
                    TimestampBound.of_min_read_timestamp(
                        datetime(2024, 1, 1, tzinfo=timezone.utc)
                    )
                ),
            )

        assert connection.get_session_pool_database_statistics().checked_out_count == 0
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_partition_tokens(self, connection, fake_client):
        """Test a read-only transaction splits a query into partitions."""
        await connection.open()
        async with await connection.begin_read_only_transaction() as transaction:
            tokens = await transaction.get_partition_tokens(QUERY, max_partitions=4)

        assert tokens == [b"p1", b"p2"]
        assert fake_client.partitions[0]["transaction_id"] == b"tx-1"
        assert fake_client.partitions[0]["options"].max_partitions == 4
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_partitions_need_read_only(self, connection):
        await connection.open()
        async with await connection.begin_transaction() as transaction:
            with pytest.raises(InvalidStateError):
                await transaction.get_partition_tokens(QUERY)
        await connection.session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_attach_to_shared_transaction(
        self, connection, connection_string, session_pool_manager, fake_client
    ):
        """Test a second connection reads in the first one's transaction."""
        await connection.open()
        original = await connection.begin_read_only_transaction()
        shared_id = original.transaction_id

        other = SpannerConnection(
            connection_string, session_pool_manager=session_pool_manager
        )
        await other.open()
        joined = await other.begin_read_only_transaction(shared_id)

        assert joined.dispose_behavior == DisposeBehavior.DETACH
        assert joined.session is not original.session
        assert joined.session.name == original.session.name
        assert joined.session.detached

        rows = await joined.execute_query(QUERY)
        await rows.fetch_all()
        request = fake_client.queries[-1]
        assert request["session"] == original.session.name
        assert request["request"].transaction.id == b"tx-1"

        await joined.dispose()
        stats = connection.get_session_pool_database_statistics()
        assert stats.checked_out_count == 1
        assert fake_client.deleted == []

        await original.dispose()
        await other.close()
        await session_pool_manager.close()
