"""
Storage Facade

StorageHandle is the one object the rest of the application talks to for
database access. The composition root builds it, calls initialize() once
during startup and passes it to whatever needs connections:

    storage = StorageHandle(load_database_config())
    storage.initialize()          # probe -> profile -> pool -> schema
    with storage.acquire_connection() as conn:
        conn.execute(text("SELECT count(*) FROM items"))
    storage.shutdown()

Code that cannot receive the handle explicitly can use the process-wide
accessor get_storage(), which builds and initializes a single handle on
first use.

Initialization runs at most once per handle, even when several threads
race to be first. Any failure during it is fatal (PoolInitError,
SchemaInitError) and is propagated unchanged.
"""
import logging
import threading
from typing import Callable, Optional

from sqlalchemy.engine import Connection

from runeprices.database.config import DatabaseConfig, PoolSettings, load_database_config
from runeprices.database.exceptions import ConnectionUnavailable
from runeprices.database.pool import ConnectionPool, build_pool
from runeprices.database.prober import probe
from runeprices.database.profiles import BackendProfile, select_profile
from runeprices.database.schema import ensure_schema

logger = logging.getLogger(__name__)


class StorageHandle:
    """
    Long-lived storage access point

    Usage:
        with StorageHandle(config) as storage:
            with storage.acquire_connection() as conn:
                ...
    """

    def __init__(
        self,
        config: Optional[DatabaseConfig] = None,
        settings: Optional[PoolSettings] = None,
        prober: Callable[[str, int, float], bool] = probe,
        pool_factory: Callable[[BackendProfile, PoolSettings], ConnectionPool] = build_pool,
        schema_initializer: Callable[[ConnectionPool], None] = ensure_schema
    ):
        """
        Args:
            config: Backend locations and credentials (defaults if None)
            settings: Pool policy (PoolSettings() if None)
            prober: Primary backend reachability check
            pool_factory: Builds the pool for the selected profile
            schema_initializer: Creates/migrates the schema on the new pool
        """
        self.config = config or DatabaseConfig()
        self.settings = settings or PoolSettings()

        self._prober = prober
        self._pool_factory = pool_factory
        self._schema_initializer = schema_initializer

        self._init_lock = threading.Lock()
        self._profile: Optional[BackendProfile] = None
        self._pool: Optional[ConnectionPool] = None
        self._ready = False
        self._shut_down = False

    @property
    def profile(self) -> Optional[BackendProfile]:
        """Backend chosen during initialize() (None before)"""
        return self._profile

    @property
    def is_ready(self) -> bool:
        return self._ready and not self._shut_down

    def initialize(self) -> 'StorageHandle':
        """
        Probe, build the pool and ensure the schema (once).

        Returns:
            self, so construction and initialization can be chained

        Raises:
            PoolInitError: Pool could not be built
            SchemaInitError: Schema could not be created or migrated
            ConnectionUnavailable: Handle was already shut down
        """
        if self._shut_down:
            raise ConnectionUnavailable("Storage has been shut down")
        if self._ready:
            return self

        with self._init_lock:
            if self._shut_down:
                raise ConnectionUnavailable("Storage has been shut down")
            if self._ready:
                return self

            profile = select_profile(self.config, self._prober)
            pool = self._pool_factory(profile, self.settings)
            try:
                self._schema_initializer(pool)
            except Exception:
                logger.error("Failed to initialize database schema", exc_info=True)
                pool.close()
                raise

            self._profile = profile
            self._pool = pool
            self._ready = True

        logger.info(f"Storage ready ({profile.kind.value}: {profile.describe()})")
        return self

    def acquire_connection(self) -> Connection:
        """
        Lease a pooled connection. Close it (or use 'with') to return it.

        Raises:
            ConnectionUnavailable: Not initialized, shut down, or pool
                exhausted beyond the acquire timeout
        """
        if self._shut_down:
            raise ConnectionUnavailable("Storage has been shut down")
        if not self._ready:
            raise ConnectionUnavailable("Storage is not initialized")
        return self._pool.acquire()

    def pool_status(self) -> dict:
        return self._pool.status() if self._pool else {}

    def shutdown(self):
        """Close the pool; later acquisitions fail. Safe to call repeatedly."""
        with self._init_lock:
            if self._shut_down:
                return
            self._shut_down = True
            pool = self._pool

        if pool is not None:
            pool.close()
        logger.info("Storage shut down")

    def __enter__(self) -> 'StorageHandle':
        return self.initialize()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


# ============================================================================
# PROCESS-WIDE ACCESS
# ============================================================================

_storage: Optional[StorageHandle] = None
_storage_lock = threading.Lock()


def get_storage(config: Optional[DatabaseConfig] = None) -> StorageHandle:
    """
    Get the process-wide storage handle, initializing it on first call.

    Args:
        config: Used only by the call that builds the handle
            (load_database_config() if None)

    Returns:
        Initialized StorageHandle
    """
    global _storage
    if _storage is not None:
        return _storage

    with _storage_lock:
        if _storage is None:
            handle = StorageHandle(config or load_database_config())
            handle.initialize()
            _storage = handle
    return _storage


def shutdown_storage():
    """Shut down and forget the process-wide handle (no-op if none)"""
    global _storage
    with _storage_lock:
        handle, _storage = _storage, None
    if handle is not None:
        handle.shutdown()
