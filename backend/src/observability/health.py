"""Health check utilities for the wholesale matcher.

The database is required for every operation; the Celery broker only for
queueing matching tasks, so a broker outage degrades the service instead of
taking it down.
"""

import time
from enum import Enum
from typing import Dict, Optional
from dataclasses import dataclass

import redis
from sqlalchemy import text
from sqlalchemy.orm import Session

from config import settings
from .logging_config import get_logger

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Health check status enum."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


@dataclass
class ComponentHealth:
    """Health status for a single component."""
    status: HealthStatus
    message: Optional[str] = None
    latency_ms: Optional[float] = None
    required: bool = True


def check_database_health(db: Session) -> ComponentHealth:
    """Check database connectivity with a trivial query."""
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000
        return ComponentHealth(
            status=HealthStatus.HEALTHY,
            message="Database connection OK",
            latency_ms=round(latency_ms, 2),
        )
    except Exception as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        return ComponentHealth(
            status=HealthStatus.UNHEALTHY,
            message=f"Database error: {str(e)}",
        )


def check_broker_health() -> ComponentHealth:
    """Ping the Celery broker; skipped when tasks run eagerly."""
    if settings.CELERY_TASK_ALWAYS_EAGER or not settings.CELERY_BROKER_URL.startswith("redis"):
        return ComponentHealth(
            status=HealthStatus.HEALTHY,
            message="Broker not used",
            required=False,
        )
    try:
        client = redis.from_url(settings.CELERY_BROKER_URL, socket_connect_timeout=2)
        start = time.time()
        client.ping()
        latency_ms = (time.time() - start) * 1000
        return ComponentHealth(
            status=HealthStatus.HEALTHY,
            message="Broker connection OK",
            latency_ms=round(latency_ms, 2),
            required=False,
        )
    except Exception as e:
        logger.error(f"Broker health check failed: {e}", exc_info=True)
        return ComponentHealth(
            status=HealthStatus.UNHEALTHY,
            message=f"Broker error: {str(e)}",
            required=False,
        )


def get_overall_health(components: Dict[str, ComponentHealth]) -> HealthStatus:
    """Determine overall health from component statuses.

    Unhealthy required components make the service unhealthy; unhealthy
    optional components only degrade it.
    """
    unhealthy = [c for c in components.values() if c.status != HealthStatus.HEALTHY]
    if not unhealthy:
        return HealthStatus.HEALTHY
    if any(c.required for c in unhealthy):
        return HealthStatus.UNHEALTHY
    return HealthStatus.DEGRADED
