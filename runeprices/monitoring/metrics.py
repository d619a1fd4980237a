"""
Prometheus Metrics for the Connection Pool
Tracks lease activity, acquisition timeouts, retired connections and leaks.
"""
from typing import Optional
from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest


class PoolMetrics:
    """
    Prometheus collectors for one connection pool

    Tracks:
    - Checkouts and connections currently leased
    - Acquisition timeouts (pool exhausted)
    - Connections retired (idle timeout, failed validation)
    - Probable leaks (held past the leak detection threshold)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, backend: str = 'unknown'):
        """
        Initialize pool metrics

        Args:
            registry: Prometheus registry (creates new if None)
            backend: Backend kind, attached as a label
        """
        self.registry = registry or CollectorRegistry()
        self.backend = backend

        self.checkouts_total = Counter(
            'runeprices_pool_checkouts_total',
            'Total number of connections leased from the pool',
            ['backend'],
            registry=self.registry
        )

        self.acquire_timeouts_total = Counter(
            'runeprices_pool_acquire_timeouts_total',
            'Total number of acquisitions that timed out or failed',
            ['backend'],
            registry=self.registry
        )

        self.leaks_total = Counter(
            'runeprices_pool_leaks_total',
            'Total number of connections held past the leak detection threshold',
            ['backend'],
            registry=self.registry
        )

        self.retired_total = Counter(
            'runeprices_pool_connections_retired_total',
            'Total number of pooled connections closed for being idle or failing validation',
            ['backend', 'reason'],
            registry=self.registry
        )

        self.in_use = Gauge(
            'runeprices_pool_connections_in_use',
            'Connections currently leased',
            ['backend'],
            registry=self.registry
        )

    def record_checkout(self):
        self.checkouts_total.labels(backend=self.backend).inc()
        self.in_use.labels(backend=self.backend).inc()

    def record_checkin(self):
        self.in_use.labels(backend=self.backend).dec()

    def record_acquire_failure(self):
        self.acquire_timeouts_total.labels(backend=self.backend).inc()

    def record_leak(self):
        self.leaks_total.labels(backend=self.backend).inc()

    def record_retired(self, reason: str, count: int = 1):
        self.retired_total.labels(backend=self.backend, reason=reason).inc(count)

    def sample(self, name: str, **labels) -> float:
        """Current value of a sample (0.0 if never recorded)"""
        labels.setdefault('backend', self.backend)
        value = self.registry.get_sample_value(name, labels)
        return value if value is not None else 0.0

    def export(self) -> bytes:
        """Metrics in Prometheus text format"""
        return generate_latest(self.registry)
