"""
Engine connection pool.

Bounded cache of engine connections keyed by a caller-supplied string
(the sandbox id). Lookups for a live key return the same connection;
concurrent lookups for a key that is still opening share one attempt.
When full, the least recently used entry is evicted. A background sweep
drops entries idle for longer than the TTL.

Eviction and the sweep only forget an entry; the connection stays usable
for whoever holds it. release() and close() close connections.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from sandcastle.engine.connection import EngineConnection

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[str], Awaitable[EngineConnection]]


@dataclass
class PoolConfig:
    capacity: int = 10
    ttl_seconds: float = 1800
    sweep_interval: float = 60


@dataclass
class PoolEntry:
    connection: EngineConnection
    created_at: float
    last_used: float


class ConnectionPool:
    """
    LRU + TTL pool of engine connections.
    """

    def __init__(
        self,
        factory: ConnectionFactory,
        config: Optional[PoolConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._factory = factory
        self._config = config or PoolConfig()
        self._clock = clock
        self._entries: Dict[str, PoolEntry] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()
        self._sweeper_task: Optional[asyncio.Task] = None
        self._running = False

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    @property
    def capacity(self) -> int:
        return self._config.capacity

    def start(self) -> None:
        """Start the TTL sweep. Called lazily by get_connection()."""
        if self._running:
            return
        self._running = True
        self._sweeper_task = asyncio.create_task(self._sweeper())

    async def get_connection(self, key: str) -> EngineConnection:
        """
        Return the connection for key, creating it if needed.

        Raises:
            Whatever the factory raises; a failed attempt is not cached.
        """
        self.start()

        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.last_used = self._clock()
                entry.connection.touch()
                return entry.connection

            pending = self._pending.get(key)
            if pending is None:
                self._evict_to_fit(reserve=len(self._pending) + 1)
                pending = asyncio.get_running_loop().create_future()
                self._pending[key] = pending
                owner = True
            else:
                owner = False

        if not owner:
            return await asyncio.shield(pending)

        try:
            connection = await self._factory(key)
        except BaseException as e:
            async with self._lock:
                self._pending.pop(key, None)
            if not pending.done():
                pending.set_exception(e)
                # Mark retrieved so an unobserved failure is not logged
                pending.exception()
            raise

        async with self._lock:
            self._pending.pop(key, None)
            self._evict_to_fit(reserve=1)
            now = self._clock()
            self._entries[key] = PoolEntry(
                connection=connection, created_at=now, last_used=now
            )
        pending.set_result(connection)

        logger.debug("Pool opened connection %s (%d/%d)", key, len(self), self.capacity)
        return connection

    def touch(self, key: str) -> None:
        """Mark key as active (reset its idle timer)."""
        entry = self._entries.get(key)
        if entry is not None:
            entry.last_used = self._clock()
            entry.connection.touch()

    async def release(self, key: str) -> None:
        """Remove key from the pool and close its connection."""
        async with self._lock:
            entry = self._entries.pop(key, None)
        if entry is not None:
            await self._close_all([entry.connection])
            logger.debug("Pool released connection %s", key)

    async def sweep(self) -> List[str]:
        """Forget entries idle longer than the TTL. Returns their keys."""
        now = self._clock()
        async with self._lock:
            expired = [
                key
                for key, entry in self._entries.items()
                if now - entry.last_used > self._config.ttl_seconds
            ]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.info("Pool swept %d idle connection(s): %s", len(expired), expired)
        return expired

    async def close(self) -> None:
        """Stop the sweep and close every pooled connection."""
        self._running = False
        if self._sweeper_task:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None

        async with self._lock:
            connections = [entry.connection for entry in self._entries.values()]
            self._entries.clear()
        await self._close_all(connections)

    def _evict_to_fit(self, reserve: int) -> List[str]:
        """
        Forget least recently used entries until `reserve` new ones fit.

        Caller holds the lock.
        """
        evicted: List[str] = []
        while self._entries and len(self._entries) + reserve > self._config.capacity:
            oldest_key = min(self._entries, key=lambda k: self._entries[k].last_used)
            del self._entries[oldest_key]
            evicted.append(oldest_key)
            logger.info("Pool at capacity, evicted connection %s", oldest_key)
        return evicted

    async def _close_all(self, connections: List[EngineConnection]) -> None:
        for connection in connections:
            try:
                await connection.close()
            except Exception as e:
                logger.warning("Failed to close connection %s: %s", connection.key, e)

    async def _sweeper(self) -> None:
        """Periodically drop idle connections."""
        while self._running:
            await asyncio.sleep(self._config.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Pool sweep failed: %s", e)
