"""
Health Check System
Reports storage health for status endpoints and the init CLI.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import logging

from sqlalchemy import exc, text

from runeprices.database.exceptions import StorageError
from runeprices.database.profiles import BackendKind

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Health status enum"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    """Health status for a single component"""
    name: str
    status: HealthStatus
    last_check: datetime
    message: Optional[str] = None
    latency_ms: Optional[float] = None
    metadata: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'status': self.status.value,
            'last_check': self.last_check.isoformat(),
            'message': self.message,
            'latency_ms': self.latency_ms,
            'metadata': self.metadata
        }


@dataclass
class SystemHealth:
    """Overall health"""
    status: HealthStatus
    components: List[ComponentHealth]
    timestamp: datetime
    uptime_seconds: float = 0.0

    def to_dict(self) -> Dict:
        return {
            'status': self.status.value,
            'timestamp': self.timestamp.isoformat(),
            'uptime_seconds': self.uptime_seconds,
            'components': [c.to_dict() for c in self.components]
        }


CheckFunction = Callable[[], Tuple[HealthStatus, str, Dict]]


class HealthChecker:
    """
    Health Checker

    Built-in check:
    - Storage: lease a connection, run SELECT 1, report backend and pool occupancy

    Other components register their own checks with register_check().
    """

    def __init__(self, latency_threshold_ms: float = 500.0):
        """
        Args:
            latency_threshold_ms: Round trip above this is reported as DEGRADED
        """
        self.latency_threshold_ms = latency_threshold_ms
        self.start_time = datetime.utcnow()
        self.last_check_time: Optional[datetime] = None

        self.component_health: Dict[str, ComponentHealth] = {}
        self.check_functions: Dict[str, CheckFunction] = {}

    def register_check(self, component: str, check_func: CheckFunction):
        """
        Register a health check function

        Args:
            component: Component name
            check_func: Function that returns (status, message, metadata)
        """
        self.check_functions[component] = check_func
        logger.info(f"Registered health check for: {component}")

    def check_storage(self, storage) -> ComponentHealth:
        """
        Check storage health

        Running on the fallback backend is DEGRADED: the application works,
        but data lands in the local DuckDB file instead of PostgreSQL.

        Args:
            storage: StorageHandle instance

        Returns:
            ComponentHealth for the database
        """
        start_time = time.time()
        profile = storage.profile
        metadata = {
            'backend': profile.kind.value if profile else None,
            'pool': storage.pool_status(),
        }

        try:
            with storage.acquire_connection() as conn:
                conn.execute(text('SELECT 1')).scalar()
        except (StorageError, exc.SQLAlchemyError) as e:
            logger.error(f"Storage health check failed: {e}")
            return ComponentHealth(
                name='database',
                status=HealthStatus.UNHEALTHY,
                last_check=datetime.utcnow(),
                message=f'Error: {str(e)}',
                metadata=metadata
            )

        latency_ms = (time.time() - start_time) * 1000

        if latency_ms > self.latency_threshold_ms:
            status = HealthStatus.DEGRADED
            message = f'High latency: {latency_ms:.0f}ms'
        elif profile is not None and profile.kind is BackendKind.FALLBACK:
            status = HealthStatus.DEGRADED
            message = 'Running on embedded fallback database'
        else:
            status = HealthStatus.HEALTHY
            message = 'Connected'

        return ComponentHealth(
            name='database',
            status=status,
            last_check=datetime.utcnow(),
            message=message,
            latency_ms=latency_ms,
            metadata=metadata
        )

    def check_all(self, storage=None) -> SystemHealth:
        """
        Run all health checks

        Args:
            storage: StorageHandle to check (skipped if None)

        Returns:
            SystemHealth with all component statuses
        """
        component_health_list = []

        if storage is not None:
            health = self.check_storage(storage)
            component_health_list.append(health)
            self.component_health['database'] = health

        for component_name, check_func in self.check_functions.items():
            try:
                status, message, metadata = check_func()
            except Exception as e:
                logger.error(f"Custom health check failed for {component_name}: {e}")
                status, message, metadata = HealthStatus.UNKNOWN, f'Error: {str(e)}', {}

            health = ComponentHealth(
                name=component_name,
                status=status,
                last_check=datetime.utcnow(),
                message=message,
                metadata=metadata
            )
            component_health_list.append(health)
            self.component_health[component_name] = health

        self.last_check_time = datetime.utcnow()

        return SystemHealth(
            status=self._determine_overall_status(component_health_list),
            components=component_health_list,
            timestamp=self.last_check_time,
            uptime_seconds=(self.last_check_time - self.start_time).total_seconds()
        )

    def _determine_overall_status(self, components: List[ComponentHealth]) -> HealthStatus:
        """Worst component status wins"""
        if not components:
            return HealthStatus.UNKNOWN

        if any(c.status == HealthStatus.UNHEALTHY for c in components):
            return HealthStatus.UNHEALTHY

        if any(c.status in (HealthStatus.DEGRADED, HealthStatus.UNKNOWN) for c in components):
            return HealthStatus.DEGRADED

        return HealthStatus.HEALTHY

    def get_component_health(self, component: str) -> Optional[ComponentHealth]:
        return self.component_health.get(component)
