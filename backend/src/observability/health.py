"""Health checks for the database and the Redis event bus."""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from events.bus import EventBusPort

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


@dataclass
class ComponentHealth:
    """Health status for a single component."""
    status: HealthStatus
    message: Optional[str] = None
    latency_ms: Optional[float] = None


def check_database_health(db: Session) -> ComponentHealth:
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000
        return ComponentHealth(
            status=HealthStatus.HEALTHY,
            message="Database connection OK",
            latency_ms=round(latency_ms, 2)
        )
    except Exception as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        return ComponentHealth(status=HealthStatus.UNHEALTHY, message=f"Database error: {e}")


def check_bus_health(bus: EventBusPort) -> ComponentHealth:
    start = time.time()
    ok = bus.ping()
    latency_ms = (time.time() - start) * 1000
    if ok:
        return ComponentHealth(
            status=HealthStatus.HEALTHY,
            message="Event bus connection OK",
            latency_ms=round(latency_ms, 2)
        )
    return ComponentHealth(status=HealthStatus.UNHEALTHY, message="Event bus ping failed")


def get_overall_health(components: Dict[str, ComponentHealth]) -> HealthStatus:
    """Healthy if every component is, unhealthy if any is, else degraded."""
    if all(c.status == HealthStatus.HEALTHY for c in components.values()):
        return HealthStatus.HEALTHY
    if any(c.status == HealthStatus.UNHEALTHY for c in components.values()):
        return HealthStatus.UNHEALTHY
    return HealthStatus.DEGRADED
