"""
Monitoring Module
Prometheus pool metrics and health checks for the storage layer.
"""
from .metrics import PoolMetrics
from .health_check import HealthChecker, HealthStatus, ComponentHealth, SystemHealth

__all__ = [
    'PoolMetrics',
    'HealthChecker',
    'HealthStatus',
    'ComponentHealth',
    'SystemHealth'
]
