"""
Connection Pool Configurator

Builds a bounded, thread-safe pool of database connections for a
BackendProfile. The pool is a SQLAlchemy QueuePool; the lifecycle rules that
QueuePool does not provide itself are added with pool event listeners and a
housekeeping timer:

- Max lifetime:    pool_recycle (connections older than this are reopened)
- Validation:      the profile's ping() runs the validation query on checkout
- Idle timeout:    housekeeping closes connections idle for longer, down to
                   min_idle open connections
- Leak detection:  housekeeping logs a warning (with the acquiring stack)
                   for every connection held past the threshold; nothing is
                   reclaimed
- Shutdown:        close() stops housekeeping, disposes idle connections,
                   rejects further acquisition and closes leased connections
                   as they return

Usage:
    pool = build_pool(profile)
    with pool.acquire() as conn:
        conn.execute(text("SELECT 1"))
    pool.close()
"""
import logging
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from prometheus_client import CollectorRegistry
from sqlalchemy import create_engine, event, exc
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import QueuePool
from sqlalchemy.util import queue as sqla_queue

from runeprices.database.config import PoolSettings
from runeprices.database.exceptions import ConnectionUnavailable, PoolInitError
from runeprices.database.profiles import BackendProfile
from runeprices.monitoring.metrics import PoolMetrics

logger = logging.getLogger(__name__)


class IdleReapingQueuePool(QueuePool):
    """QueuePool that can close its idle connections on request"""

    def reap_idle(self, idle_timeout: float, keep: int) -> int:
        """
        Close checked-in connections idle for more than idle_timeout seconds.

        Connections are only closed while more than `keep` are open in
        total (idle plus leased).

        Returns:
            Number of connections closed
        """
        open_count = self.checkedin() + self.checkedout()
        now = time.monotonic()

        idle: List[Any] = []
        while True:
            try:
                idle.append(self._pool.get(False))
            except sqla_queue.Empty:
                break

        reaped = 0
        for record in idle:
            idle_since = record.info.get('idle_since')
            expired = idle_since is not None and now - idle_since > idle_timeout
            if expired and open_count - reaped > keep:
                try:
                    record.close()
                finally:
                    self._dec_overflow()
                reaped += 1
            else:
                self._pool.put(record, False)
        return reaped


@dataclass
class _Lease:
    acquired_at: float
    stack: str
    reported: bool = False


class ConnectionPool:
    """
    Pool of leased SQLAlchemy connections for one backend.

    Callers get a Connection from acquire() and must close it (or use it as
    a context manager) to return it.
    """

    def __init__(
        self,
        profile: BackendProfile,
        engine: Engine,
        settings: PoolSettings,
        metrics: PoolMetrics
    ):
        self.profile = profile
        self.settings = settings
        self.metrics = metrics
        self._engine = engine

        self._lock = threading.Lock()
        # held while connections are reaped or disposed
        self._maintenance_lock = threading.Lock()
        self._leases: Dict[int, _Lease] = {}
        self._housekeeper: Optional[threading.Timer] = None
        self._closed = False

        event.listen(engine, 'checkout', self._on_checkout)
        event.listen(engine, 'checkin', self._on_checkin)

    @property
    def closed(self) -> bool:
        return self._closed

    # ========================================================================
    # LEASING
    # ========================================================================

    def acquire(self) -> Connection:
        """
        Lease a connection, waiting at most settings.acquire_timeout.

        Raises:
            ConnectionUnavailable: Pool exhausted, backend unreachable or
                pool already closed
        """
        if self._closed:
            raise ConnectionUnavailable("Connection pool is shut down")

        try:
            connection = self._engine.connect()
        except exc.TimeoutError as e:
            self.metrics.record_acquire_failure()
            raise ConnectionUnavailable(
                f"No connection available within {self.settings.acquire_timeout}s "
                f"(max_size={self.settings.max_size})"
            ) from e
        except exc.SQLAlchemyError as e:
            self.metrics.record_acquire_failure()
            raise ConnectionUnavailable(f"Could not open a database connection: {e}") from e

        # close() may have run while we were waiting
        if self._closed:
            connection.close()
            raise ConnectionUnavailable("Connection pool is shut down")

        return connection

    def leased_count(self) -> int:
        with self._lock:
            return len(self._leases)

    def status(self) -> Dict[str, Any]:
        """Snapshot of pool occupancy"""
        pool = self._engine.pool
        return {
            'backend': self.profile.kind.value,
            'max_size': self.settings.max_size,
            'open': pool.checkedin() + pool.checkedout(),
            'idle': pool.checkedin(),
            'leased': self.leased_count(),
            'closed': self._closed,
        }

    def close(self):
        """Close idle connections and reject further acquisition (idempotent)"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            leased = len(self._leases)
            housekeeper, self._housekeeper = self._housekeeper, None

        if housekeeper is not None:
            housekeeper.cancel()
        with self._maintenance_lock:
            self._engine.dispose()

        logger.info(f"Connection pool closed ({self.profile.kind.value})")
        if leased:
            logger.warning(f"{leased} connection(s) still leased at shutdown; they will be closed on return")

    # ========================================================================
    # POOL EVENTS
    # ========================================================================

    def _on_checkout(self, dbapi_connection, connection_record, connection_proxy):
        # raising DisconnectionError makes QueuePool replace the connection and retry
        connection_record.info.pop('idle_since', None)

        try:
            self.profile.ping(
                dbapi_connection,
                self.settings.validation_query,
                self.settings.validation_timeout
            )
        except Exception as e:
            self.metrics.record_retired('validation')
            logger.warning(f"Connection failed validation, replacing it: {e}")
            raise exc.DisconnectionError(f"Validation query failed: {e}") from e

        lease = _Lease(time.monotonic(), ''.join(traceback.format_stack()[:-3]))
        with self._lock:
            self._leases[id(connection_record)] = lease
        self.metrics.record_checkout()

    def _on_checkin(self, dbapi_connection, connection_record):
        with self._lock:
            lease = self._leases.pop(id(connection_record), None)
        if lease is not None:
            self.metrics.record_checkin()

        if dbapi_connection is None:
            return
        if self._closed:
            dbapi_connection.close()
            return
        connection_record.info['idle_since'] = time.monotonic()

    # ========================================================================
    # HOUSEKEEPING
    # ========================================================================

    def _schedule_housekeeping(self):
        with self._lock:
            if self._closed:
                return
            timer = threading.Timer(self.settings.housekeeping_interval, self._housekeep)
            timer.daemon = True
            self._housekeeper = timer
        timer.start()

    def _housekeep(self):
        try:
            self._report_leaks()
            self._reap_idle()
        except Exception as e:
            # keep the timer alive; the next run retries
            logger.error(f"Connection pool housekeeping failed: {e}", exc_info=True)
        finally:
            self._schedule_housekeeping()

    def _reap_idle(self):
        with self._maintenance_lock:
            if self._closed:
                return
            reaped = self._engine.pool.reap_idle(self.settings.idle_timeout, self.settings.min_idle)

        if reaped:
            self.metrics.record_retired('idle', reaped)
            logger.debug(f"Closed {reaped} connection(s) idle for more than {self.settings.idle_timeout}s")

    def _report_leaks(self):
        threshold = self.settings.leak_detection_threshold
        now = time.monotonic()

        with self._lock:
            overdue = [
                lease for lease in self._leases.values()
                if not lease.reported and now - lease.acquired_at > threshold
            ]
            for lease in overdue:
                lease.reported = True

        for lease in overdue:
            self.metrics.record_leak()
            logger.warning(
                f"Connection leak detection triggered: connection held for "
                f"{now - lease.acquired_at:.1f}s (threshold {threshold}s) without "
                f"being returned. Acquired at:\n{lease.stack}"
            )

    def _warm_up(self):
        """Open min_idle connections (at least one) and return them to the pool"""
        connections = []
        try:
            for _ in range(max(1, self.settings.min_idle)):
                connections.append(self._engine.connect())
        finally:
            for connection in connections:
                connection.close()


def build_pool(
    profile: BackendProfile,
    settings: Optional[PoolSettings] = None,
    registry: Optional[CollectorRegistry] = None
) -> ConnectionPool:
    """
    Create and warm up the connection pool for a backend profile.

    Args:
        profile: Selected backend profile
        settings: Pool policy (defaults to PoolSettings())
        registry: Prometheus registry for pool metrics (new one if None)

    Returns:
        ConnectionPool holding at least min_idle open connections

    Raises:
        PoolInitError: If the engine cannot be created or no connection
            can be opened
    """
    settings = settings or PoolSettings()
    backend = profile.kind.value

    logger.info(
        f"Creating {backend} connection pool ({profile.describe()}, "
        f"max_size={settings.max_size}, min_idle={settings.min_idle})"
    )

    try:
        engine = create_engine(
            profile.url,
            poolclass=IdleReapingQueuePool,
            pool_size=settings.max_size,
            max_overflow=0,
            pool_timeout=settings.acquire_timeout,
            pool_recycle=int(settings.max_lifetime),
            **profile.engine_options(settings)
        )
    except (exc.SQLAlchemyError, ImportError) as e:
        raise PoolInitError(f"Could not configure {backend} engine: {e}") from e

    pool = ConnectionPool(profile, engine, settings, PoolMetrics(registry, backend=backend))

    try:
        pool._warm_up()
    except Exception as e:
        # driver errors raised before SQLAlchemy can wrap them land here too
        pool.close()
        logger.error(f"Failed to open {backend} connections: {e}")
        raise PoolInitError(f"Could not open {backend} connections: {e}") from e

    pool._schedule_housekeeping()
    logger.info(f"Connection pool ready ({backend})")
    return pool
