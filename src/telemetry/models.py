"""Frozen pydantic models for the telemetry store state.

Every model is immutable. The store never edits a handed-out instance; it
builds replacements with ``model_copy(update=...)`` and swaps the top-level
``TelemetryState`` reference.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RunState = Literal["running", "stopped", "restarting"]
ContainerHealth = Literal["healthy", "unhealthy", "starting", "none"]
ContainerCategory = Literal["required", "optional", "user"]
ServiceStatus = Literal["healthy", "unhealthy", "degraded", "stopped"]
ServiceMetricsStatus = Literal["healthy", "unhealthy", "stopped"]
Severity = Literal["critical", "warning", "info"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# System / docker aggregates
# ---------------------------------------------------------------------------


class UsageStats(_Frozen):
    used: float = 0.0
    total: float = 0.0
    percent: float = 0.0


class NetworkStats(_Frozen):
    rx: float = 0.0
    tx: float = 0.0
    max_speed: float = 1000.0


class SystemMetrics(_Frozen):
    cpu_percent: float = 0.0
    memory: UsageStats = UsageStats()
    disk: UsageStats = UsageStats()
    network: NetworkStats = NetworkStats()
    uptime_seconds: float = 0.0


class ContainerCounts(_Frozen):
    total: int = 0
    running: int = 0
    stopped: int = 0
    healthy: int = 0
    unhealthy: int = 0


class DockerMetrics(_Frozen):
    cpu_percent: float = 0.0
    memory: UsageStats = UsageStats()
    storage: UsageStats = UsageStats()
    network: NetworkStats = NetworkStats()
    containers: ContainerCounts = ContainerCounts()


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


class ContainerMemory(_Frozen):
    usage_bytes: int = 0
    limit_bytes: int = 0
    percent: float = 0.0


class PortMapping(_Frozen):
    private: int
    public: int | None = None
    type: str = "tcp"


class ContainerInfo(_Frozen):
    id: str
    name: str
    image: str = "unknown"
    run_state: RunState
    status: str = ""  # raw status text reported by the orchestrator
    health: ContainerHealth = "none"
    cpu_percent: float = 0.0
    memory: ContainerMemory = ContainerMemory()
    ports: tuple[PortMapping, ...] = ()
    created_at: str = ""
    uptime: str = ""
    restart_count: int = 0
    service_type: str = "other"
    category: ContainerCategory = "user"


# ---------------------------------------------------------------------------
# Per-service metrics (payload keys are camelCase)
# ---------------------------------------------------------------------------


class _ServiceRecord(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class ServiceMetrics(_ServiceRecord):
    """Generic per-service record. Unknown fields are kept as-is."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True, extra="allow")

    status: ServiceMetricsStatus = "stopped"


class PostgresConnections(_ServiceRecord):
    active: int = 0
    idle: int = 0
    max: int = 0


class PostgresQueryStats(_ServiceRecord):
    total_queries: int = 0
    slow_queries: int = 0
    average_time: float = 0.0


class PostgresReplication(_ServiceRecord):
    lag: float = 0.0
    status: str = ""


class PostgresMetrics(ServiceMetrics):
    connections: PostgresConnections = PostgresConnections()
    database_size: str = ""
    table_count: int = 0
    query_stats: PostgresQueryStats = PostgresQueryStats()
    replication: PostgresReplication | None = None


class HasuraMetadata(_ServiceRecord):
    tables: int = 0
    relationships: int = 0
    permissions: int = 0
    actions: int = 0
    event_triggers: int = 0


class HasuraPerformance(_ServiceRecord):
    request_rate: float = 0.0
    error_rate: float = 0.0
    p95_response_time: float = 0.0
    active_subscriptions: int = 0


class HasuraMetrics(ServiceMetrics):
    metadata: HasuraMetadata = HasuraMetadata()
    performance: HasuraPerformance = HasuraPerformance()
    inconsistent_objects: tuple[Any, ...] = ()


class RedisMemory(_ServiceRecord):
    used: float = 0.0
    peak: float = 0.0
    fragmentation: float = 0.0


class RedisKeyspace(_ServiceRecord):
    keys: int = 0
    expires: int = 0


class RedisMetrics(ServiceMetrics):
    memory: RedisMemory = RedisMemory()
    clients: int = 0
    ops_per_second: float = 0.0
    hit_rate: float = 0.0
    evicted_keys: int = 0
    keyspace_info: dict[str, RedisKeyspace] = Field(default_factory=dict)


SERVICE_METRICS_MODELS: dict[str, type[ServiceMetrics]] = {
    "postgres": PostgresMetrics,
    "hasura": HasuraMetrics,
    "redis": RedisMetrics,
}


# ---------------------------------------------------------------------------
# Derived state
# ---------------------------------------------------------------------------


class ServiceHealth(_Frozen):
    name: str
    status: ServiceStatus
    last_checked_at: datetime
    message: str = ""


class Alert(_Frozen):
    id: str
    severity: Severity
    service: str
    message: str
    created_at: datetime
    acknowledged: bool = False


class TelemetryState(_Frozen):
    """Complete store state. Replaced wholesale on every mutation."""

    system: SystemMetrics | None = None
    docker: DockerMetrics | None = None
    containers: tuple[ContainerInfo, ...] = ()
    # Treated as read-only: mutations always build a new dict.
    services: dict[str, ServiceMetrics] = Field(default_factory=dict)

    services_health: tuple[ServiceHealth, ...] = ()
    alerts: tuple[Alert, ...] = ()

    last_update: datetime | None = None
    is_connected: bool = False
    connection_error: str | None = None

    api_calls_count: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
