"""
Backend Profiles

A BackendProfile is one of two immutable variants, chosen once per process
by select_profile() from the prober's answer:

- PrimaryProfile:  PostgreSQL server (psycopg2), statement caching and
                   batched executemany enabled
- FallbackProfile: DuckDB file store under ./data, no statement caching

Each variant owns everything that differs between the backends: the
SQLAlchemy URL, engine options and how a raw DB-API connection is validated.
Nothing outside this module branches on the backend for connection setup.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, Union

from sqlalchemy.engine import URL
from sqlalchemy.util import LRUCache

from runeprices.database.config import DatabaseConfig, PoolSettings
from runeprices.database.prober import probe

logger = logging.getLogger(__name__)

APPLICATION_NAME = 'runeprices'


class BackendKind(Enum):
    """Which backend a profile targets"""
    PRIMARY = "primary"
    FALLBACK = "fallback"


class StatementCache(LRUCache):
    """
    Compiled statement cache bounded by entry count and statement length.

    Statements whose SQL is longer than sql_limit characters are compiled
    on every execution instead of being cached.
    """

    def __init__(self, capacity: int, sql_limit: int):
        super().__init__(capacity)
        self.sql_limit = sql_limit

    def __setitem__(self, key, compiled):
        if len(getattr(compiled, 'string', '') or '') > self.sql_limit:
            return
        super().__setitem__(key, compiled)


@dataclass(frozen=True)
class PrimaryProfile:
    """PostgreSQL server profile"""
    host: str = 'localhost'
    port: int = 5432
    database: str = 'runescape_prices'
    user: str = 'admin'
    password: str = 'elfe'
    statement_cache_size: int = 250
    statement_cache_sql_limit: int = 2048
    rewrite_batched_inserts: bool = True

    kind: ClassVar[BackendKind] = BackendKind.PRIMARY
    statement_caching: ClassVar[bool] = True

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> 'PrimaryProfile':
        return cls(
            host=config.host,
            port=config.port,
            database=config.database,
            user=config.user,
            password=config.password,
        )

    @property
    def url(self) -> URL:
        return URL.create(
            'postgresql+psycopg2',
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )

    def describe(self) -> str:
        return self.url.render_as_string(hide_password=True)

    def engine_options(self, settings: PoolSettings) -> Dict[str, Any]:
        """
        Engine keyword arguments for this backend.

        The compiled statement cache holds statement_cache_size entries and
        skips statements longer than statement_cache_sql_limit characters;
        'values_plus_batch' makes psycopg2 rewrite executemany() calls into
        batched statements.
        """
        return {
            'query_cache_size': 0,
            'execution_options': {
                'compiled_cache': StatementCache(self.statement_cache_size, self.statement_cache_sql_limit),
            },
            'executemany_mode': 'values_plus_batch' if self.rewrite_batched_inserts else 'values_only',
            'connect_args': {
                'connect_timeout': max(1, int(settings.acquire_timeout)),
                'application_name': APPLICATION_NAME,
            },
        }

    def ping(self, dbapi_connection, query: str, timeout: float) -> None:
        """
        Run the validation query with a server-side statement timeout.

        SET LOCAL only lasts until the rollback that ends the probe, so the
        timeout never leaks into the caller's session.
        """
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("SET LOCAL statement_timeout = %s", (int(timeout * 1000),))
            cursor.execute(query)
            cursor.fetchone()
        finally:
            cursor.close()
            dbapi_connection.rollback()


@dataclass(frozen=True)
class FallbackProfile:
    """DuckDB embedded file store profile"""
    data_dir: str = './data'
    database: str = 'runescape_prices'
    user: str = 'sa'
    password: str = ''

    kind: ClassVar[BackendKind] = BackendKind.FALLBACK
    statement_caching: ClassVar[bool] = False

    @classmethod
    def create(cls, data_dir: str = './data', database: str = 'runescape_prices') -> 'FallbackProfile':
        """
        Build the fallback profile, creating the data directory if needed.

        A directory that cannot be created is logged, not raised: the pool
        build that follows will report the real failure.
        """
        path = Path(data_dir)
        if not path.exists():
            try:
                path.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created data directory for DuckDB: {path.resolve()}")
            except OSError as e:
                logger.error(f"Failed to create data directory for DuckDB: {path.resolve()} ({e})")

        return cls(data_dir=str(data_dir), database=database)

    @property
    def database_path(self) -> Path:
        return Path(self.data_dir) / f"{self.database}.duckdb"

    @property
    def url(self) -> URL:
        return URL.create('duckdb', database=str(self.database_path))

    def describe(self) -> str:
        return self.url.render_as_string(hide_password=True)

    def engine_options(self, settings: PoolSettings) -> Dict[str, Any]:
        return {'query_cache_size': 0}

    def ping(self, dbapi_connection, query: str, timeout: float) -> None:
        # in-process database, nothing can stall on the network
        cursor = dbapi_connection.cursor()
        cursor.execute(query)
        cursor.fetchone()


BackendProfile = Union[PrimaryProfile, FallbackProfile]


def select_profile(
    config: DatabaseConfig,
    prober: Callable[[str, int, float], bool] = probe
) -> BackendProfile:
    """
    Pick the backend for this process.

    Args:
        config: Database configuration
        prober: Reachability check, called once with (host, port, timeout)

    Returns:
        PrimaryProfile if the PostgreSQL port answers, FallbackProfile otherwise
    """
    if prober(config.host, config.port, config.probe_timeout):
        profile = PrimaryProfile.from_config(config)
        logger.info(f"Using PostgreSQL database ({profile.describe()})")
        return profile

    logger.info("PostgreSQL not available, falling back to DuckDB database")
    return FallbackProfile.create(config.data_dir, config.database)
