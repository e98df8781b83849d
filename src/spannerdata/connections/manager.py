"""
Registry of shared session pools.

Connections with the same database and the same effective settings share one
SessionPool. The manager counts references so a pool is created on first use
and shut down once the last connection lets go of it.
"""
import asyncio
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from spannerdata.messages import get_logger
from spannerdata.utility.clock import Clock, Scheduler
from spannerdata.utility.exceptions import ConfigError
from spannerdata.v1 import DatabaseName

from .base import SessionClient
from .constants import ClientOptions, SessionPoolOptions
from .pool import DatabaseStatistics, SessionPool


class SessionPoolKey(BaseModel):
    """Database plus every setting that must match for two callers to share a pool."""

    model_config = ConfigDict(frozen=True)

    database: DatabaseName
    client_options: ClientOptions = Field(default_factory=ClientOptions)
    pool_options: SessionPoolOptions = Field(default_factory=SessionPoolOptions)


ClientFactory = Callable[[SessionPoolKey], Awaitable[SessionClient]]


@dataclass
class _PoolEntry:
    pool: SessionPool
    client: SessionClient
    ref_count: int = 1


class SessionPoolManager:
    """
    Reference-counted map from SessionPoolKey to SessionPool.

    The map is guarded by a short threading.Lock that is never held across
    network work. Building a pool (which needs a transport from
    ``client_factory``) happens under a per-key asyncio.Lock instead, with the
    map checked again once the key lock is held, so concurrent first callers
    for one key end up with the same pool.

    Applications normally share ``SessionPoolManager.default()``; tests
    construct their own for isolation.

    Example:
        ```python
        manager = SessionPoolManager(make_client)
        pool = await manager.acquire_pool(key)
        try:
            session = await pool.acquire_session()
            ...
        finally:
            manager.release_pool(pool)
        ```
    """

    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self._client_factory = client_factory
        self._clock = clock
        self._scheduler = scheduler
        self._lock = threading.Lock()
        self._entries: Dict[SessionPoolKey, _PoolEntry] = {}
        self._keys_by_pool: Dict[SessionPool, SessionPoolKey] = {}
        self._init_locks: Dict[SessionPoolKey, asyncio.Lock] = {}
        self._shutdowns: Set[asyncio.Task] = set()
        self.logger = get_logger("spannerdata.manager")

    async def acquire_pool(self, key: SessionPoolKey) -> SessionPool:
        """
        Get the pool for ``key``, creating and starting it on first use.

        Each call must be paired with one ``release_pool``.
        """
        with self._lock:
            pool = self._add_reference_locked(key)
            if pool is not None:
                return pool
            init_lock = self._init_locks.setdefault(key, asyncio.Lock())

        async with init_lock:
            with self._lock:
                pool = self._add_reference_locked(key)
                if pool is not None:
                    return pool

            if self._client_factory is None:
                raise ConfigError(
                    "SessionPoolManager has no client factory; construct it with "
                    "one or install a configured manager with set_default()"
                )
            client = await self._client_factory(key)
            pool = SessionPool(
                key.database,
                client,
                key.pool_options,
                clock=self._clock,
                scheduler=self._scheduler,
            )
            with self._lock:
                self._entries[key] = _PoolEntry(pool=pool, client=client)
                self._keys_by_pool[pool] = key
            pool.start()
            self.logger.debug(f"Created session pool for {key.database}")
            return pool

    def release_pool(self, pool: SessionPool) -> None:
        """
        Drop one reference to ``pool``.

        When the last reference goes, the pool is removed from the map and
        shut down in the background; this call never waits for that. Must be
        called from a running event loop; otherwise RuntimeError is raised and
        the reference is kept.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            key = self._keys_by_pool.get(pool)
            if key is None:
                entry = None
            else:
                entry = self._entries[key]
                entry.ref_count -= 1
                if entry.ref_count > 0:
                    return
                del self._entries[key]
                del self._keys_by_pool[pool]

        if entry is None:
            self.logger.warning(
                f"Ignoring release of unknown session pool for {pool.database}"
            )
            return

        self.logger.debug(f"Last reference to pool for {key.database} released")
        task = loop.create_task(self._shutdown_entry(entry))
        self._shutdowns.add(task)
        task.add_done_callback(self._shutdowns.discard)

    def get_database_statistics(
        self, key: SessionPoolKey
    ) -> Optional[DatabaseStatistics]:
        """Snapshot of the pool for ``key``, or None when no such pool exists."""
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        return entry.pool.statistics

    def reference_count(self, key: SessionPoolKey) -> int:
        with self._lock:
            entry = self._entries.get(key)
            return entry.ref_count if entry else 0

    @property
    def pool_count(self) -> int:
        with self._lock:
            return len(self._entries)

    async def close(self) -> None:
        """Shut down every pool, referenced or not, and wait for it."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            self._keys_by_pool.clear()
        if entries:
            self.logger.info(f"Closing {len(entries)} session pools")
        await asyncio.gather(*(self._shutdown_entry(e) for e in entries))
        if self._shutdowns:
            await asyncio.gather(*list(self._shutdowns), return_exceptions=True)

    async def _shutdown_entry(self, entry: _PoolEntry) -> None:
        try:
            await entry.pool.shutdown_pool()
        except Exception as e:
            self.logger.warning(
                f"Error shutting down pool for {entry.pool.database}: {str(e)}"
            )
        finally:
            try:
                await entry.client.close()
            except Exception as e:
                self.logger.warning(f"Error closing session client: {str(e)}")

    def _add_reference_locked(self, key: SessionPoolKey) -> Optional[SessionPool]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        entry.ref_count += 1
        return entry.pool

    @staticmethod
    def default() -> "SessionPoolManager":
        """
        Return the process-level default manager.

        Created lazily on first access. It has no client factory until one is
        installed with ``set_default``.
        """
        global _default_manager
        if _default_manager is None:
            _default_manager = SessionPoolManager()
        return _default_manager

    @staticmethod
    def set_default(manager: "SessionPoolManager") -> None:
        """Install the manager returned by ``default()``."""
        global _default_manager
        _default_manager = manager


_default_manager: Optional[SessionPoolManager] = None
