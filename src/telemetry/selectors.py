"""Common selectors for ``TelemetryStore.subscribe``.

Selectors are pure functions of ``TelemetryState``. Those returning fresh
containers (tuples, dicts) compare structurally under the default equality.
"""

from collections.abc import Callable
from typing import TypedDict

from src.telemetry.models import (
    Alert,
    ContainerInfo,
    DockerMetrics,
    ServiceHealth,
    ServiceMetrics,
    ServiceStatus,
    SystemMetrics,
    TelemetryState,
)


class ConnectionStatus(TypedDict):
    is_connected: bool
    error: str | None


class HealthSummary(TypedDict):
    status: ServiceStatus
    total: int
    healthy: int
    unhealthy: int
    degraded: int
    stopped: int


def select_system(state: TelemetryState) -> SystemMetrics | None:
    return state.system


def select_docker(state: TelemetryState) -> DockerMetrics | None:
    return state.docker


def select_containers(state: TelemetryState) -> tuple[ContainerInfo, ...]:
    return state.containers


def select_services_health(state: TelemetryState) -> tuple[ServiceHealth, ...]:
    return state.services_health


def select_alerts(state: TelemetryState) -> tuple[Alert, ...]:
    return state.alerts


def select_unacknowledged_alerts(state: TelemetryState) -> tuple[Alert, ...]:
    return tuple(a for a in state.alerts if not a.acknowledged)


def select_connection_status(state: TelemetryState) -> ConnectionStatus:
    return ConnectionStatus(is_connected=state.is_connected, error=state.connection_error)


def select_service(name: str) -> Callable[[TelemetryState], ServiceMetrics | None]:
    """Selector factory for one service's metrics record (e.g. ``"redis"``)."""

    def selector(state: TelemetryState) -> ServiceMetrics | None:
        return state.services.get(name)

    return selector


def select_health_summary(state: TelemetryState) -> HealthSummary:
    """Roll service health up to one overall status.

    All healthy -> healthy; any unhealthy -> unhealthy; nothing known or
    everything stopped -> stopped; otherwise degraded.
    """
    counts: dict[ServiceStatus, int] = {"healthy": 0, "unhealthy": 0, "degraded": 0, "stopped": 0}
    for health in state.services_health:
        counts[health.status] += 1
    total = len(state.services_health)

    overall: ServiceStatus
    if total and counts["healthy"] == total:
        overall = "healthy"
    elif counts["unhealthy"]:
        overall = "unhealthy"
    elif counts["stopped"] == total:
        overall = "stopped"
    else:
        overall = "degraded"

    return HealthSummary(
        status=overall,
        total=total,
        healthy=counts["healthy"],
        unhealthy=counts["unhealthy"],
        degraded=counts["degraded"],
        stopped=counts["stopped"],
    )
