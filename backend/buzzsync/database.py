"""
BuzzSync Backend — Connection Pool Management
===============================================

What:  Declarative base for the ORM models and the ConnectionPoolManager that
       owns the process-wide pool of storage connections.
Why:   The pool is the only shared mutable resource in the data-access core.
       Keeping its lifecycle, bounds, telemetry and failure mapping in one
       class makes the "never more than max connections" guarantee auditable.
How:   Wraps an async SQLAlchemy engine built on AsyncAdaptedQueuePool.
       The manager is created by the application factory, initialised in the
       lifespan handler (or lazily on first acquire), and injected into every
       service through FastAPI dependencies.

Connection Pooling Strategy:
    pool_size:      persistent connections for normal load
    max_overflow:   temporary connections for spikes
    pool_timeout:   bounded wait before PoolExhausted
    idle_timeout:   connections idle longer than this are closed by a
                    background reaper, one connection at a time
    pool_pre_ping:  stale connections are replaced on checkout

    pool_size + max_overflow is the hard ceiling on concurrently executing
    statements. Requests beyond that queue inside the pool until
    pool_timeout elapses.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from sqlalchemy import event, func, select, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import AsyncAdaptedQueuePool
from sqlalchemy.sql.schema import Table

from buzzsync.config import Settings
from buzzsync.exceptions import PoolExhausted, StorageError

logger = logging.getLogger(__name__)

# Keys in a pooled connection's info dict.
IDLE_SINCE = "buzzsync_idle_since"
_KEEP_IDLE_STAMP = "buzzsync_keep_idle_stamp"


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Shares one metadata object between the models, Alembic's autogenerate,
    and the storage report on /health/database.
    """
    pass


# ── Health status values ──────────────────────────────────────────────────
HEALTHY = "healthy"
DEGRADED = "degraded"
UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time pool occupancy. Advisory only; never gates correctness."""

    total: int
    idle: int
    in_use: int
    waiting: int
    max_size: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class HealthReport:
    """Result of a storage round-trip probe. Failures live in `status`/`error`."""

    status: str
    latency_ms: Optional[float]
    pool: PoolStats
    error: Optional[str] = None


class ConnectionPoolManager:
    """
    Owns the bounded pool of connections to relational storage.

    Lifecycle:
        init()      → builds the engine and starts the idle reaper (idempotent)
        acquire()   → checked-out AsyncConnection, or PoolExhausted after pool_timeout
        release()   → returns the connection; any open transaction is rolled back
        shutdown()  → stops the reaper, drains and closes every pooled connection

    Counters:
        `_in_use` and the waiter start times count callers of acquire() only.
        `_open` follows the pool's connect/close events, so it is the number
        of live DBAPI connections, including ones briefly held by the reaper.

    Idle reaping:
        A checkin event stamps each connection with the time it went idle.
        reap_idle() checks out and invalidates only connections whose stamp
        is older than idle_timeout. The pool object itself is never replaced
        while the manager is running.
    """

    def __init__(
        self,
        database_url: str,
        pool_size: int = 10,
        max_overflow: int = 5,
        pool_timeout: float = 5.0,
        idle_timeout: float = 300.0,
        pre_ping: bool = True,
        degraded_latency_ms: float = 250.0,
        echo: bool = False,
    ):
        self._database_url = database_url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._pool_timeout = pool_timeout
        self._idle_timeout = idle_timeout
        self._pre_ping = pre_ping
        self._degraded_latency_ms = degraded_latency_ms
        self._echo = echo

        self._engine: Optional[AsyncEngine] = None
        self._init_lock = asyncio.Lock()
        self._reaper: Optional[asyncio.Task] = None
        self._reap_lock = asyncio.Lock()

        self._in_use = 0
        self._open = 0
        self._wait_starts: List[float] = []
        self._idle_records: Dict[int, Any] = {}

    @classmethod
    def from_settings(cls, cfg: Settings) -> "ConnectionPoolManager":
        """Build a manager from application settings."""
        return cls(
            database_url=cfg.database_url,
            pool_size=cfg.db_pool_size,
            max_overflow=cfg.db_max_overflow,
            pool_timeout=cfg.db_pool_timeout,
            idle_timeout=cfg.db_idle_timeout,
            pre_ping=cfg.db_pool_pre_ping,
            degraded_latency_ms=cfg.health_degraded_latency_ms,
            echo=cfg.log_level == "DEBUG",
        )

    # ── Properties ────────────────────────────────────────────────────────

    @property
    def max_size(self) -> int:
        return self._pool_size + self._max_overflow

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        """The underlying engine. Only valid between init() and shutdown()."""
        if self._engine is None:
            raise RuntimeError("ConnectionPoolManager.init() has not been called")
        return self._engine

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def init(self) -> None:
        """
        Construct the engine and start the idle reaper.

        Safe to call more than once and from concurrent first requests; only
        the first caller builds the engine.
        """
        if self._engine is not None:
            return
        async with self._init_lock:
            if self._engine is not None:
                return
            self._engine = create_async_engine(
                self._database_url,
                poolclass=AsyncAdaptedQueuePool,
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                pool_timeout=self._pool_timeout,
                pool_pre_ping=self._pre_ping,
                echo=self._echo,
            )
            pool_target = self._engine.sync_engine
            event.listen(pool_target, "connect", self._on_connect)
            event.listen(pool_target, "close", self._on_close)
            event.listen(pool_target, "checkin", self._on_checkin)
            event.listen(pool_target, "checkout", self._on_checkout)
            self._reaper = asyncio.create_task(self._reap_forever())
            logger.info(
                "Connection pool initialised (size=%d, overflow=%d, timeout=%.1fs, idle_timeout=%.0fs)",
                self._pool_size,
                self._max_overflow,
                self._pool_timeout,
                self._idle_timeout,
            )

    async def shutdown(self) -> None:
        """Stop the reaper, then drain and close all pooled connections."""
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None

        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._idle_records.clear()
            logger.info("Connection pool shut down")

    # ── Pool events ───────────────────────────────────────────────────────

    def _on_connect(self, dbapi_connection, connection_record) -> None:
        self._open += 1

    def _on_close(self, dbapi_connection, connection_record) -> None:
        self._open = max(0, self._open - 1)
        self._idle_records.pop(id(connection_record), None)

    def _on_checkin(self, dbapi_connection, connection_record) -> None:
        # Invalidated connections come back as empty slots
        if dbapi_connection is None:
            self._idle_records.pop(id(connection_record), None)
            return
        info = connection_record.info
        if not info.pop(_KEEP_IDLE_STAMP, False) or IDLE_SINCE not in info:
            info[IDLE_SINCE] = time.monotonic()
        self._idle_records[id(connection_record)] = connection_record

    def _on_checkout(self, dbapi_connection, connection_record, connection_proxy) -> None:
        self._idle_records.pop(id(connection_record), None)

    # ── Acquire / Release ─────────────────────────────────────────────────

    async def acquire(self) -> AsyncConnection:
        """
        Check a connection out of the pool.

        Raises:
            PoolExhausted: no connection freed up within pool_timeout.
            StorageError:  storage could not be reached at all.
        """
        if self._engine is None:
            await self.init()

        started = time.monotonic()
        self._wait_starts.append(started)
        try:
            conn = self._engine.connect()
            await conn.start()
        except sa_exc.TimeoutError as e:
            logger.warning(
                "Pool exhausted: %d/%d connections in use, %d waiting",
                self._in_use,
                self.max_size,
                len(self._wait_starts) - 1,
            )
            raise PoolExhausted(
                timeout_seconds=self._pool_timeout,
                max_size=self.max_size,
                retry_after=max(1, int(self._pool_timeout)),
            ) from e
        except (sa_exc.SQLAlchemyError, OSError) as e:
            logger.error("Could not open a storage connection: %s", type(e).__name__)
            raise StorageError(
                message="Storage is unreachable. Please try again later.",
                context={"reason": type(e).__name__},
            ) from e
        finally:
            self._wait_starts.remove(started)

        self._in_use += 1
        return conn

    async def release(self, conn: AsyncConnection) -> None:
        """
        Return a connection to the pool.

        Closing a pooled AsyncConnection rolls back any transaction still open
        on it and checks the DBAPI connection back in.
        """
        try:
            await conn.close()
        except sa_exc.SQLAlchemyError:
            logger.error("Failed to return connection cleanly; invalidating it", exc_info=True)
            await conn.invalidate()
        finally:
            self._in_use = max(0, self._in_use - 1)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[AsyncConnection]:
        """
        Acquire/release pair for `async with`.

        Example:
            async with pool.connection() as conn:
                await conn.execute(text("SELECT 1"))
        """
        conn = await self.acquire()
        try:
            yield conn
        finally:
            await self.release(conn)

    # ── Telemetry ─────────────────────────────────────────────────────────

    def stats(self) -> PoolStats:
        idle = 0
        if self._engine is not None:
            idle = max(0, self._open - self._engine.pool.checkedout())
        return PoolStats(
            total=self._open,
            idle=idle,
            in_use=self._in_use,
            waiting=len(self._wait_starts),
            max_size=self.max_size,
        )

    def _stalled_waiters(self) -> int:
        """Callers that have waited for a connection longer than the degraded threshold."""
        threshold = self._degraded_latency_ms / 1000
        now = time.monotonic()
        return sum(1 for started in self._wait_starts if now - started > threshold)

    async def health_check(self) -> HealthReport:
        """
        Execute a trivial round-trip and classify storage health.

        healthy:      round-trip succeeded within health_degraded_latency_ms
        degraded:     reachable but slow, callers stuck waiting for a
                      connection longer than the same threshold, or pool exhausted
        unreachable:  the probe could not reach storage

        Never raises; every failure is captured in the report.
        """
        start = time.perf_counter()
        try:
            async with self.connection() as conn:
                await conn.execute(text("SELECT 1"))
        except PoolExhausted as e:
            return HealthReport(status=DEGRADED, latency_ms=None, pool=self.stats(), error=e.kind)
        except Exception as e:
            logger.warning("Health check: storage unreachable: %s", type(e).__name__)
            return HealthReport(
                status=UNREACHABLE,
                latency_ms=None,
                pool=self.stats(),
                error=type(e).__name__,
            )

        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        stats = self.stats()
        status = HEALTHY
        if latency_ms > self._degraded_latency_ms or self._stalled_waiters():
            status = DEGRADED
        return HealthReport(status=status, latency_ms=latency_ms, pool=stats)

    async def table_counts(self, tables: Iterable[Table]) -> Dict[str, Optional[int]]:
        """
        Row counts per table for the admin storage report.

        A table that cannot be counted (e.g. migrations not applied) reports
        None instead of failing the whole report.
        """
        counts: Dict[str, Optional[int]] = {}
        async with self.connection() as conn:
            for table in tables:
                try:
                    result = await conn.execute(select(func.count()).select_from(table))
                    counts[table.name] = int(result.scalar_one())
                except sa_exc.SQLAlchemyError as e:
                    logger.warning("Could not count table %s: %s", table.name, type(e).__name__)
                    counts[table.name] = None
                    await conn.rollback()
        return counts

    # ── Idle Reaping ──────────────────────────────────────────────────────

    def _expired_idle(self, now: float) -> int:
        return sum(
            1
            for record in self._idle_records.values()
            if now - record.info.get(IDLE_SINCE, now) >= self._idle_timeout
        )

    async def reap_idle(self, now: Optional[float] = None) -> int:
        """
        Close connections that have sat idle in the pool for idle_timeout
        seconds. Returns the number of connections closed.

        Expired connections are checked out through the pool like any other
        caller and invalidated, which leaves an empty slot that reconnects on
        demand. Checked-out connections are never touched, and the bound on
        open connections stays with the pool.
        """
        if self._engine is None or self._reap_lock.locked():
            return 0
        async with self._reap_lock:
            now = time.monotonic() if now is None else now
            closed = 0
            for _ in range(self._expired_idle(now)):
                # Stop before pulling an empty slot, which would reconnect
                if self._engine is None or self._open - self._engine.pool.checkedout() <= 0:
                    break
                conn = self._engine.connect()
                try:
                    await conn.start()
                except sa_exc.TimeoutError:
                    break
                try:
                    idle_since = conn.info.get(IDLE_SINCE)
                    if idle_since is not None and now - idle_since >= self._idle_timeout:
                        await conn.invalidate()
                        closed += 1
                    else:
                        conn.info[_KEEP_IDLE_STAMP] = True
                finally:
                    await conn.close()
            if closed:
                logger.info(
                    "Closed %d connection(s) idle for more than %.0fs",
                    closed,
                    self._idle_timeout,
                )
            return closed

    async def _reap_forever(self) -> None:
        interval = max(1.0, min(self._idle_timeout / 2, 30.0))
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap_idle()
            except sa_exc.SQLAlchemyError:
                logger.error("Idle connection reaping failed", exc_info=True)


def health_to_dict(report: HealthReport) -> Dict[str, Any]:
    """Flatten a HealthReport for response models."""
    return {
        "status": report.status,
        "latency_ms": report.latency_ms,
        "pool": report.pool.to_dict(),
        "error": report.error,
    }
