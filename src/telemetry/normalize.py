"""Convert raw ingestion payload slices into telemetry models.

Each function raises ``TypeError`` / ``ValueError`` (pydantic's
``ValidationError`` is a ``ValueError``) / ``KeyError`` on a malformed slice.
The store catches these per slice and keeps the previous value.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from src.telemetry.health import count_containers
from src.telemetry.models import (
    SERVICE_METRICS_MODELS,
    ContainerCounts,
    ContainerInfo,
    ContainerMemory,
    DockerMetrics,
    NetworkStats,
    PortMapping,
    RunState,
    ServiceMetrics,
    SystemMetrics,
    UsageStats,
)

GIB = 1024**3

_STOPPED_STATES = {"stopped", "exited", "dead", "created"}

# Name substring -> service type, checked in order.
_SERVICE_TYPES: list[tuple[str, str]] = [
    ("postgres", "postgres"),
    ("hasura", "hasura"),
    ("redis", "redis"),
    ("auth", "auth"),
    ("nginx", "nginx"),
    ("minio", "storage"),
]
_REQUIRED_SERVICES = ("postgres", "hasura", "auth", "nginx")
_OPTIONAL_SERVICES = ("redis", "minio", "mailpit")


def _mapping(raw: Any, slice_name: str) -> Mapping[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        msg = f"{slice_name} must be an object, got {type(raw).__name__}"
        raise TypeError(msg)
    return raw


def _usage(raw: Any, slice_name: str) -> UsageStats:
    data = _mapping(raw, slice_name)
    return UsageStats(
        used=float(data.get("used", 0)),
        total=float(data.get("total", 0)),
        percent=float(data.get("percent", data.get("percentage", 0))),
    )


def _network(raw: Any) -> NetworkStats:
    data = _mapping(raw, "network")
    return NetworkStats(
        rx=float(data.get("rx", 0)),
        tx=float(data.get("tx", 0)),
        max_speed=float(data.get("maxSpeed", data.get("max_speed", 1000))),
    )


def run_state_for(status: str) -> RunState:
    status = status.lower()
    if status == "running":
        return "running"
    if status in _STOPPED_STATES:
        return "stopped"
    return "restarting"


def classify_container(name: str) -> tuple[str, str]:
    """Infer (service_type, category) from a container name."""
    lowered = name.lower()
    service_type = next((stype for needle, stype in _SERVICE_TYPES if needle in lowered), "other")
    if any(needle in lowered for needle in _REQUIRED_SERVICES):
        category = "required"
    elif any(needle in lowered for needle in _OPTIONAL_SERVICES):
        category = "optional"
    else:
        category = "user"
    return service_type, category


def _container_memory(raw: Any) -> ContainerMemory:
    data = _mapping(raw, "container memory")
    if "usageBytes" in data or "limitBytes" in data:
        usage = int(data.get("usageBytes", 0))
        limit = int(data.get("limitBytes", 0))
    else:
        # Orchestrator reports GB floats
        usage = int(float(data.get("used", 0)) * GIB)
        limit = int(float(data.get("limit", 0)) * GIB)
    return ContainerMemory(
        usage_bytes=usage,
        limit_bytes=limit,
        percent=float(data.get("percentage", data.get("percent", 0))),
    )


def normalize_container(raw: Any) -> ContainerInfo:
    data = _mapping(raw, "container")
    name = str(data["name"])
    status = str(data.get("status", ""))
    service_type, category = classify_container(name)
    return ContainerInfo(
        id=str(data.get("id") or name),
        name=name,
        image=str(data.get("image") or "unknown"),
        run_state=run_state_for(status),
        status=status,
        health=data.get("health") or "none",
        cpu_percent=float(data.get("cpu", data.get("cpuPercent", 0)) or 0),
        memory=_container_memory(data.get("memory")),
        ports=tuple(PortMapping.model_validate(p) for p in data.get("ports") or ()),
        created_at=str(data.get("created") or data.get("createdAt") or ""),
        uptime=str(data.get("uptime") or ""),
        restart_count=int(data.get("restartCount", 0) or 0),
        service_type=service_type,
        category=category,
    )


def normalize_containers(raw: Any) -> tuple[ContainerInfo, ...]:
    if not isinstance(raw, list | tuple):
        msg = f"containers must be a list, got {type(raw).__name__}"
        raise TypeError(msg)
    return tuple(normalize_container(item) for item in raw)


def normalize_system(raw: Any) -> SystemMetrics:
    """Normalize an explicit ``system`` slice."""
    data = _mapping(raw, "system")
    return SystemMetrics(
        cpu_percent=float(data.get("cpuPercent", data.get("cpu", 0))),
        memory=_usage(data.get("memory"), "memory"),
        disk=_usage(data.get("disk", data.get("storage")), "disk"),
        network=_network(data.get("network")),
        uptime_seconds=float(data.get("uptimeSeconds", data.get("uptime", 0))),
    )


def system_from_aggregates(raw: Any) -> SystemMetrics:
    """Build system metrics from the poller's aggregate ``metrics`` slice."""
    data = _mapping(raw, "metrics")
    return SystemMetrics(
        cpu_percent=float(data.get("totalCpu", 0)),
        memory=_usage(data.get("totalMemory"), "totalMemory"),
        disk=_usage(data.get("totalDisk", data.get("totalStorage")), "totalDisk"),
        network=_network(data.get("totalNetwork")),
        uptime_seconds=float(data.get("uptime", 0)),
    )


def normalize_docker(
    system_raw: Any,
    metrics_raw: Any,
    containers: Iterable[ContainerInfo],
) -> DockerMetrics:
    """Combine docker daemon counts, aggregate metrics and container health."""
    system = _mapping(system_raw, "docker.system")
    metrics = _mapping(metrics_raw, "metrics")
    counts = _mapping(system.get("containers"), "docker.system.containers")
    tally = count_containers(containers)
    return DockerMetrics(
        cpu_percent=float(metrics.get("totalCpu", 0)),
        memory=_usage(metrics.get("totalMemory"), "totalMemory"),
        storage=_usage(metrics.get("totalStorage", metrics.get("totalDisk")), "totalStorage"),
        network=_network(metrics.get("totalNetwork")),
        containers=ContainerCounts(
            total=int(counts.get("total", tally.total)),
            running=int(counts.get("running", tally.running)),
            stopped=int(counts.get("stopped", tally.stopped)),
            healthy=tally.healthy,
            unhealthy=tally.unhealthy,
        ),
    )


def normalize_service(name: str, raw: Any) -> ServiceMetrics:
    model = SERVICE_METRICS_MODELS.get(name, ServiceMetrics)
    return model.model_validate(_mapping(raw, f"services.{name}"))
