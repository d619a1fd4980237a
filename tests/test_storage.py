"""
Test Suite for the Storage Facade
Tests one-time initialization, backend selection, shutdown and the
process-wide accessor.
"""
import threading

import pytest
from sqlalchemy import text

import runeprices.database.storage as storage_module
from runeprices.database.exceptions import (
    ConnectionUnavailable, PoolInitError, SchemaInitError
)
from runeprices.database.pool import build_pool
from runeprices.database.profiles import BackendKind, FallbackProfile
from runeprices.database.schema import ensure_schema
from runeprices.database.storage import StorageHandle, get_storage, shutdown_storage


def run_concurrently(target, count=8):
    """Start count threads behind a barrier; return (results, errors)"""
    barrier = threading.Barrier(count)
    results, errors = [], []

    def worker():
        barrier.wait()
        try:
            results.append(target())
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


class TestInitialize:
    """Test storage initialization"""

    def test_fallback_when_primary_unreachable(self, storage, data_dir):
        assert storage.is_ready
        assert storage.profile.kind is BackendKind.FALLBACK
        assert data_dir.is_dir()
        assert (data_dir / 'runescape_prices.duckdb').exists()

    def test_real_probe_against_closed_port(self, fallback_config, fast_settings):
        with StorageHandle(fallback_config, fast_settings) as handle:
            assert handle.profile.kind is BackendKind.FALLBACK

    def test_primary_when_reachable(self, fallback_config, fake_pool_factory):
        initialized = []
        handle = StorageHandle(
            fallback_config,
            prober=lambda host, port, timeout: True,
            pool_factory=fake_pool_factory,
            schema_initializer=initialized.append
        )

        handle.initialize()

        assert handle.profile.kind is BackendKind.PRIMARY
        assert handle.profile.statement_caching is True
        assert initialized == fake_pool_factory.built
        with handle.acquire_connection() as conn:
            assert conn.execute(text('SELECT 1')).scalar() == 1
        handle.shutdown()
        assert fake_pool_factory.built[0].closed

    def test_concurrent_initialize_runs_once(self, fallback_config, fast_settings):
        probes, pools, schemas = [], [], []

        def prober(host, port, timeout):
            probes.append(host)
            return False

        def pool_factory(profile, settings):
            pools.append(profile)
            return build_pool(profile, settings)

        def schema_initializer(pool):
            schemas.append(pool)
            ensure_schema(pool)

        handle = StorageHandle(
            fallback_config, fast_settings,
            prober=prober, pool_factory=pool_factory, schema_initializer=schema_initializer
        )
        try:
            results, errors = run_concurrently(handle.initialize)

            assert errors == []
            assert len(probes) == 1
            assert len(pools) == 1
            assert len(schemas) == 1
            assert all(result is handle for result in results)
        finally:
            handle.shutdown()

    def test_initialize_twice_is_noop(self, storage):
        profile = storage.profile

        storage.initialize()

        assert storage.profile is profile

    def test_pool_failure_propagates(self, fallback_config):
        def failing_factory(profile, settings):
            raise PoolInitError("cannot open connections")

        handle = StorageHandle(
            fallback_config,
            prober=lambda host, port, timeout: False,
            pool_factory=failing_factory
        )

        with pytest.raises(PoolInitError):
            handle.initialize()
        assert not handle.is_ready

    def test_schema_failure_closes_pool(self, fallback_config, fake_pool_factory):
        def failing_schema(pool):
            raise SchemaInitError("Table items failed: permission denied")

        handle = StorageHandle(
            fallback_config,
            prober=lambda host, port, timeout: True,
            pool_factory=fake_pool_factory,
            schema_initializer=failing_schema
        )

        with pytest.raises(SchemaInitError):
            handle.initialize()

        assert not handle.is_ready
        assert fake_pool_factory.built[0].closed
        with pytest.raises(ConnectionUnavailable):
            handle.acquire_connection()


class TestAcquireConnection:
    """Test leasing through the facade"""

    def test_before_initialize_raises(self, fallback_config):
        handle = StorageHandle(fallback_config)

        with pytest.raises(ConnectionUnavailable):
            handle.acquire_connection()

    def test_connection_sees_schema(self, storage):
        with storage.acquire_connection() as conn:
            assert conn.execute(text('SELECT count(*) FROM items')).scalar() == 0

    def test_exhaustion_raises_after_timeout(self, storage):
        held = [storage.acquire_connection() for _ in range(3)]

        with pytest.raises(ConnectionUnavailable):
            storage.acquire_connection()

        for conn in held:
            conn.close()

    def test_pool_status(self, storage):
        with storage.acquire_connection():
            status = storage.pool_status()

        assert status['backend'] == 'fallback'
        assert status['leased'] == 1


class TestShutdown:
    """Test storage shutdown"""

    def test_acquire_after_shutdown_raises(self, storage):
        storage.shutdown()

        assert not storage.is_ready
        with pytest.raises(ConnectionUnavailable):
            storage.acquire_connection()

    def test_shutdown_is_idempotent(self, storage):
        storage.shutdown()
        storage.shutdown()

        assert storage.pool_status()['closed'] is True

    def test_initialize_after_shutdown_raises(self, fallback_config):
        handle = StorageHandle(fallback_config)
        handle.shutdown()

        with pytest.raises(ConnectionUnavailable):
            handle.initialize()

    def test_initialize_after_shutdown_of_ready_handle_raises(self, storage):
        storage.shutdown()

        with pytest.raises(ConnectionUnavailable):
            storage.initialize()
        assert not storage.is_ready

    def test_context_manager(self, fallback_config, fast_settings):
        with StorageHandle(fallback_config, fast_settings, prober=lambda h, p, t: False) as handle:
            assert handle.is_ready

        assert not handle.is_ready

    def test_data_survives_restart(self, fallback_config, fast_settings):
        with StorageHandle(fallback_config, fast_settings, prober=lambda h, p, t: False) as handle:
            with handle.acquire_connection() as conn:
                conn.execute(text("INSERT INTO items (id, name) VALUES (4151, 'Abyssal whip')"))
                conn.commit()

        with StorageHandle(fallback_config, fast_settings, prober=lambda h, p, t: False) as handle:
            with handle.acquire_connection() as conn:
                name = conn.execute(text('SELECT name FROM items WHERE id = 4151')).scalar()

        assert name == 'Abyssal whip'


class TestProcessStorage:
    """Test the process-wide accessor"""

    @pytest.fixture
    def counted_selection(self, monkeypatch, data_dir):
        selections = []

        def select(config, prober):
            selections.append(config)
            return FallbackProfile.create(str(data_dir))

        monkeypatch.setattr(storage_module, 'select_profile', select)
        return selections

    def test_concurrent_callers_share_one_handle(self, fallback_config, counted_selection):
        results, errors = run_concurrently(lambda: get_storage(fallback_config))

        assert errors == []
        assert len(counted_selection) == 1
        assert all(result is results[0] for result in results)
        assert results[0].is_ready

    def test_shutdown_storage_forgets_handle(self, fallback_config, counted_selection):
        first = get_storage(fallback_config)
        shutdown_storage()

        assert not first.is_ready

        second = get_storage(fallback_config)
        assert second is not first
        assert second.is_ready

    def test_shutdown_storage_without_handle(self):
        shutdown_storage()
