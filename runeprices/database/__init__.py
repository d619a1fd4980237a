"""
Storage Layer

Backend selection (PostgreSQL with a DuckDB fallback), connection pooling
and schema bootstrap for the price tracker.

Components:
- prober.py:   TCP reachability check for the PostgreSQL server
- profiles.py: PrimaryProfile / FallbackProfile and select_profile()
- pool.py:     ConnectionPool and build_pool()
- schema.py:   ensure_schema() (tables + check-then-apply migrations)
- storage.py:  StorageHandle and the process-wide get_storage()
"""
from .config import DatabaseConfig, PoolSettings, load_database_config
from .exceptions import StorageError, PoolInitError, SchemaInitError, ConnectionUnavailable
from .profiles import BackendKind, PrimaryProfile, FallbackProfile, select_profile
from .prober import probe
from .pool import ConnectionPool, build_pool
from .schema import ensure_schema, SCHEMA_TABLES
from .storage import StorageHandle, get_storage, shutdown_storage

__all__ = [
    'DatabaseConfig',
    'PoolSettings',
    'load_database_config',
    'StorageError',
    'PoolInitError',
    'SchemaInitError',
    'ConnectionUnavailable',
    'BackendKind',
    'PrimaryProfile',
    'FallbackProfile',
    'select_profile',
    'probe',
    'ConnectionPool',
    'build_pool',
    'ensure_schema',
    'SCHEMA_TABLES',
    'StorageHandle',
    'get_storage',
    'shutdown_storage',
]
