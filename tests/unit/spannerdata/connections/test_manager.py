"""
Unit tests for SessionPoolManager.
"""
import asyncio

import pytest

from spannerdata.connections import (
    ClientOptions,
    SessionPool,
    SessionPoolKey,
    SessionPoolManager,
    SessionPoolOptions,
)
from spannerdata.connections import manager as manager_module
from spannerdata.utility.exceptions import ConfigError


@pytest.fixture
def pool_key(database):
    return SessionPoolKey(
        database=database, pool_options=SessionPoolOptions(min_pool_size=0)
    )


class TestSessionPoolManager:
    """Test reference counting and pool sharing."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_equal_keys_share_a_pool(self, session_pool_manager, pool_key, database):
        """Test two callers with equal keys get the same pool."""
        first = await session_pool_manager.acquire_pool(pool_key)
        second = await session_pool_manager.acquire_pool(
            SessionPoolKey(
                database=database, pool_options=SessionPoolOptions(min_pool_size=0)
            )
        )

        assert first is second
        assert session_pool_manager.reference_count(pool_key) == 2
        assert session_pool_manager.pool_count == 1

        session_pool_manager.release_pool(first)
        session_pool_manager.release_pool(second)
        await session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_different_options_get_different_pools(
        self, session_pool_manager, pool_key, database
    ):
        """Test keys differing in any setting never share sessions."""
        other_key = SessionPoolKey(
            database=database,
            client_options=ClientOptions(port=9010),
            pool_options=SessionPoolOptions(min_pool_size=0),
        )

        first = await session_pool_manager.acquire_pool(pool_key)
        second = await session_pool_manager.acquire_pool(other_key)

        assert first is not second
        assert session_pool_manager.pool_count == 2
        await session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_pool_shuts_down_after_last_release(
        self, session_pool_manager, pool_key, fake_client
    ):
        """Test the pool is shut down only when the last reference goes."""
        pool = await session_pool_manager.acquire_pool(pool_key)
        await session_pool_manager.acquire_pool(pool_key)

        session_pool_manager.release_pool(pool)
        await asyncio.sleep(0)
        assert not pool.is_shut_down
        assert session_pool_manager.reference_count(pool_key) == 1

        session_pool_manager.release_pool(pool)
        assert session_pool_manager.pool_count == 0
        assert session_pool_manager.get_database_statistics(pool_key) is None

        await session_pool_manager.close()
        assert pool.is_shut_down
        assert fake_client.closed

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_reacquire_after_release_builds_new_pool(
        self, session_pool_manager, pool_key
    ):
        """Test a key released to zero gets a fresh pool next time."""
        pool = await session_pool_manager.acquire_pool(pool_key)
        session_pool_manager.release_pool(pool)

        again = await session_pool_manager.acquire_pool(pool_key)

        assert again is not pool
        assert not again.is_shut_down
        await session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_statistics(self, session_pool_manager, pool_key):
        """Test statistics are reported for existing pools only."""
        assert session_pool_manager.get_database_statistics(pool_key) is None

        pool = await session_pool_manager.acquire_pool(pool_key)
        session = await pool.acquire_session()

        stats = session_pool_manager.get_database_statistics(pool_key)
        assert stats.database == str(pool_key.database)
        assert stats.checked_out_count == 1
        assert stats.idle_count == 0

        await pool.release_session(session)
        await session_pool_manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_concurrent_first_acquires_create_one_pool(self, fake_client, pool_key):
        """Test concurrent first callers for one key end up with one pool."""
        calls = 0

        async def slow_factory(key):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return fake_client

        manager = SessionPoolManager(slow_factory)
        pools = await asyncio.gather(
            *(manager.acquire_pool(pool_key) for _ in range(10))
        )

        assert calls == 1
        assert all(p is pools[0] for p in pools)
        assert manager.reference_count(pool_key) == 10
        await manager.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_without_client_factory(self, pool_key):
        """Test a manager with no client factory cannot build pools."""
        manager = SessionPoolManager()

        with pytest.raises(ConfigError):
            await manager.acquire_pool(pool_key)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_release_of_unknown_pool_is_ignored(
        self, session_pool_manager, database, fake_client
    ):
        """Test releasing a pool the manager never handed out does nothing."""
        stray = SessionPool(database, fake_client)

        session_pool_manager.release_pool(stray)

        assert not stray.is_shut_down
        assert session_pool_manager.pool_count == 0

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_release_without_event_loop_keeps_reference(
        self, session_pool_manager, pool_key
    ):
        """Test a release from a thread with no event loop leaves the pool registered."""
        pool = await session_pool_manager.acquire_pool(pool_key)

        with pytest.raises(RuntimeError):
            await asyncio.to_thread(session_pool_manager.release_pool, pool)

        assert session_pool_manager.reference_count(pool_key) == 1
        assert session_pool_manager.pool_count == 1

        session_pool_manager.release_pool(pool)
        await session_pool_manager.close()
        assert pool.is_shut_down

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_failing_shutdown_still_closes_client(self, pool_key, fake_client):
        """Test the transport is closed even when shutting the pool down fails."""

        async def factory(key):
            return fake_client

        manager = SessionPoolManager(factory)
        pool = await manager.acquire_pool(pool_key)

        async def broken_shutdown(*args, **kwargs):
            raise RuntimeError("shutdown failed")

        pool.shutdown_pool = broken_shutdown
        await manager.close()

        assert fake_client.closed
        await SessionPool.shutdown_pool(pool)


class TestDefaultManager:
    """Test the process-level default manager."""

    def test_default_is_shared(self, monkeypatch):
        """Test default() returns the same manager every time."""
        monkeypatch.setattr(manager_module, "_default_manager", None)

        assert SessionPoolManager.default() is SessionPoolManager.default()

    def test_set_default(self, monkeypatch, session_pool_manager):
        """Test set_default installs the manager default() returns."""
        monkeypatch.setattr(manager_module, "_default_manager", None)

        SessionPoolManager.set_default(session_pool_manager)

        assert SessionPoolManager.default() is session_pool_manager
