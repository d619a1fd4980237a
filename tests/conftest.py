"""
Pytest Configuration and Shared Fixtures
Provides reusable storage fixtures for the entire test suite.

Everything runs against the DuckDB fallback backend in a temporary
directory; the PostgreSQL path is exercised with fakes.
"""
import socket
import pytest
from pathlib import Path
import sys

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from runeprices.database.config import DatabaseConfig, PoolSettings
from runeprices.database.exceptions import ConnectionUnavailable
from runeprices.database.pool import build_pool
from runeprices.database.profiles import FallbackProfile
from runeprices.database.storage import StorageHandle, shutdown_storage


@pytest.fixture
def data_dir(tmp_path):
    """Data directory for the DuckDB file (not created yet)"""
    return tmp_path / 'data'


@pytest.fixture
def closed_port():
    """A local TCP port with nothing listening on it"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def fast_settings():
    """Pool policy with short timeouts so exhaustion tests finish quickly"""
    return PoolSettings(
        max_size=3,
        min_idle=2,
        idle_timeout=30.0,
        max_lifetime=1800.0,
        acquire_timeout=0.5,
        validation_timeout=1.0,
        leak_detection_threshold=60.0
    )


@pytest.fixture
def fallback_profile(data_dir):
    return FallbackProfile.create(str(data_dir))


@pytest.fixture
def pool(fallback_profile, fast_settings):
    """Warm DuckDB pool without schema"""
    pool = build_pool(fallback_profile, fast_settings)
    yield pool
    pool.close()


@pytest.fixture
def fallback_config(data_dir, closed_port):
    """Config whose primary backend is unreachable"""
    return DatabaseConfig(
        host='127.0.0.1',
        port=closed_port,
        data_dir=str(data_dir),
        probe_timeout=0.5
    )


@pytest.fixture
def storage(fallback_config, fast_settings):
    """Initialized storage handle on the DuckDB fallback"""
    handle = StorageHandle(
        fallback_config,
        fast_settings,
        prober=lambda host, port, timeout: False
    )
    handle.initialize()
    yield handle
    handle.shutdown()


@pytest.fixture(autouse=True)
def reset_process_storage():
    """Never leak the process-wide handle between tests"""
    yield
    shutdown_storage()


# ============================================================================
# FAKES (primary backend without a PostgreSQL server)
# ============================================================================

class FakeResult:
    def scalar(self):
        return 1


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, statement, parameters=None):
        return FakeResult()

    def close(self):
        self.pool.returned += 1

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class FakePool:
    """Stands in for ConnectionPool when the profile points at PostgreSQL"""

    def __init__(self, profile, settings):
        self.profile = profile
        self.settings = settings
        self.closed = False
        self.leased = 0
        self.returned = 0

    def acquire(self):
        if self.closed:
            raise ConnectionUnavailable("Connection pool is shut down")
        self.leased += 1
        return FakeConnection(self)

    def status(self):
        return {'backend': self.profile.kind.value, 'closed': self.closed}

    def close(self):
        self.closed = True


@pytest.fixture
def fake_pool_factory():
    """Pool factory that records every pool it builds"""
    built = []

    def factory(profile, settings):
        pool = FakePool(profile, settings)
        built.append(pool)
        return pool

    factory.built = built
    return factory
