"""Service health derivation from the container list."""

import re
from collections.abc import Iterable
from datetime import datetime

from src.telemetry.models import ContainerCounts, ContainerInfo, ServiceHealth, ServiceStatus

DEFAULT_CONTAINER_PREFIX = r"^nself[_-]"


def service_name_for(container_name: str, prefix_pattern: str = DEFAULT_CONTAINER_PREFIX) -> str:
    """Strip the project namespace prefix from a container name."""
    return re.sub(prefix_pattern, "", container_name, count=1, flags=re.IGNORECASE)


def derive_status(container: ContainerInfo) -> ServiceStatus:
    """Map a container's health check and run state to a service status.

    Priority: an explicit health check result wins; otherwise a running
    container without a passing check is ``degraded``.
    """
    if container.health == "healthy":
        return "healthy"
    if container.health == "unhealthy":
        return "unhealthy"
    if container.run_state == "running":
        return "degraded"
    return "stopped"


def derive_services_health(
    containers: Iterable[ContainerInfo],
    checked_at: datetime,
    prefix_pattern: str = DEFAULT_CONTAINER_PREFIX,
) -> tuple[ServiceHealth, ...]:
    """Build the complete health sequence in one pass.

    The result replaces the previous sequence entirely, so services whose
    container disappeared are dropped. Duplicate names collapse to one entry
    (last container wins, first position kept).
    """
    by_name: dict[str, ServiceHealth] = {}
    for container in containers:
        name = service_name_for(container.name, prefix_pattern)
        by_name[name] = ServiceHealth(
            name=name,
            status=derive_status(container),
            last_checked_at=checked_at,
            message=container.status,
        )
    return tuple(by_name.values())


def count_containers(containers: Iterable[ContainerInfo]) -> ContainerCounts:
    """Tally run state and health check results."""
    total = running = stopped = healthy = unhealthy = 0
    for container in containers:
        total += 1
        if container.run_state == "running":
            running += 1
        elif container.run_state == "stopped":
            stopped += 1
        if container.health == "healthy":
            healthy += 1
        elif container.health == "unhealthy":
            unhealthy += 1
    return ContainerCounts(total=total, running=running, stopped=stopped, healthy=healthy, unhealthy=unhealthy)
