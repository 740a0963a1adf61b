"""
Health check module for the TILEGUARD API.

Reports tile engine health for liveness/readiness checks and load balancer
checks. Reads the recovery service's snapshot; never mutates it.
"""
import logging
from typing import Dict, Any, Optional
from datetime import datetime, timezone
from dataclasses import dataclass

from api.state import AppState
from src.tiles.health import HealthStatus

logger = logging.getLogger(__name__)


@dataclass
class ComponentHealth:
    """Health status of a single component."""
    name: str
    status: HealthStatus
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_tile_engine_health(app_state: AppState) -> ComponentHealth:
    """
    Check tile recovery engine status.

    Returns:
        ComponentHealth derived from the service health snapshot
    """
    health = app_state.service.get_service_health()
    status = health.status

    if status is HealthStatus.HEALTHY:
        message = "All tile layers loading normally"
    elif status is HealthStatus.DEGRADED:
        message = "Some tile layers are recovering"
    else:
        message = f"{health.exhausted_resources} tile layer(s) exhausted their retry budget"

    return ComponentHealth(
        name="tile_engine",
        status=status,
        message=message,
        details=health.to_dict(),
    )


def check_recovery_service(app_state: AppState) -> ComponentHealth:
    """Check that the recovery service has been started."""
    if app_state.service.started:
        return ComponentHealth(
            name="recovery_service",
            status=HealthStatus.HEALTHY,
            message="Recovery service running",
        )
    return ComponentHealth(
        name="recovery_service",
        status=HealthStatus.UNHEALTHY,
        message="Recovery service not started",
    )


def perform_full_health_check(app_state: AppState) -> Dict[str, Any]:
    """
    Perform health check of all components.

    Returns:
        Dict with overall status and component details
    """
    components = [check_recovery_service(app_state), check_tile_engine_health(app_state)]

    unhealthy_count = sum(1 for c in components if c.status == HealthStatus.UNHEALTHY)
    degraded_count = sum(1 for c in components if c.status == HealthStatus.DEGRADED)

    if unhealthy_count > 0:
        overall_status = HealthStatus.UNHEALTHY
    elif degraded_count > 0:
        overall_status = HealthStatus.DEGRADED
    else:
        overall_status = HealthStatus.HEALTHY

    return {
        "status": overall_status.value,
        "timestamp": _timestamp(),
        "uptime_seconds": round(app_state.uptime_seconds, 2),
        "components": {
            c.name: {
                "status": c.status.value,
                "message": c.message,
                **({"details": c.details} if c.details else {}),
            }
            for c in components
        },
    }


def perform_liveness_check() -> Dict[str, Any]:
    """
    Simple liveness check for Kubernetes.

    Returns:
        Dict with basic status
    """
    return {
        "status": "alive",
        "timestamp": _timestamp(),
    }
