"""Central telemetry store: latest infrastructure snapshot plus derived health and alerts.

One ``TelemetryStore`` is built at process start and passed to consumers.
State is a frozen ``TelemetryState``; every mutation computes a complete new
state, swaps the single reference, then notifies subscribers. Consumers
never see a half-applied update and previously returned states never change.

Subscriptions are selector-scoped: a callback runs only when its selector's
output differs from the value it last saw.
"""

import contextlib
import logging
import operator
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from src.config import get_settings
from src.observability.metrics import (
    ALERTS_TOTAL,
    INGEST_EVENTS_TOTAL,
    INGEST_SLICES_REJECTED,
    SERVICE_HEALTHY,
    STORE_SUBSCRIBERS,
    STREAM_CONNECTED,
)
from src.telemetry.health import DEFAULT_CONTAINER_PREFIX, count_containers, derive_services_health
from src.telemetry.models import (
    Alert,
    ContainerInfo,
    DockerMetrics,
    ServiceHealth,
    ServiceMetrics,
    Severity,
    SystemMetrics,
    TelemetryState,
)
from src.telemetry.normalize import (
    normalize_containers,
    normalize_docker,
    normalize_service,
    normalize_system,
    system_from_aggregates,
)

logger = logging.getLogger(__name__)

DEFAULT_ALERT_LIMIT = 100

Selector = Callable[[TelemetryState], Any]
Listener = Callable[[Any, Any], None]
Equality = Callable[[Any, Any], bool]

_MALFORMED = (TypeError, ValueError, KeyError, AttributeError)


@dataclass
class _Subscription:
    selector: Selector
    callback: Listener
    equality: Equality
    last: Any
    active: bool = True


def _utcnow() -> datetime:
    return datetime.now(UTC)


def parse_last_update(value: Any) -> datetime | None:
    """Parse a payload ``lastUpdate`` (ISO string or epoch milliseconds)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, int | float):
            return datetime.fromtimestamp(value / 1000, tz=UTC)
        if isinstance(value, str):
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    except (ValueError, OverflowError, OSError):
        logger.warning("Ignoring unparseable lastUpdate: %r", value)
    return None


class TelemetryStore:
    """Single-writer reactive store for metrics, service health and alerts."""

    def __init__(
        self,
        *,
        container_prefix: str = DEFAULT_CONTAINER_PREFIX,
        alert_limit: int = DEFAULT_ALERT_LIMIT,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if alert_limit < 1:
            msg = "alert_limit must be positive"
            raise ValueError(msg)
        self._container_prefix = container_prefix
        self._alert_limit = alert_limit
        self._clock = clock
        self._state = TelemetryState()
        self._subscriptions: list[_Subscription] = []

    @property
    def state(self) -> TelemetryState:
        return self._state

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        selector: Selector,
        callback: Listener,
        equality: Equality | None = None,
    ) -> Callable[[], None]:
        """Register ``callback(new, old)`` for changes in ``selector(state)``.

        ``equality`` decides whether two selector outputs are the same;
        defaults to ``==``. Pass ``operator.is_`` for reference checks.
        Returns an idempotent unsubscribe function.
        """
        sub = _Subscription(
            selector=selector,
            callback=callback,
            equality=equality or operator.eq,
            last=selector(self._state),
        )
        self._subscriptions.append(sub)
        STORE_SUBSCRIBERS.set(len(self._subscriptions))

        def unsubscribe() -> None:
            if not sub.active:
                return
            sub.active = False
            self._subscriptions.remove(sub)
            STORE_SUBSCRIBERS.set(len(self._subscriptions))

        return unsubscribe

    def _notify(self) -> None:
        # Snapshot: subscriptions added during this round wait for the next one.
        for sub in list(self._subscriptions):
            if not sub.active:
                continue
            # Read the live state so a re-entrant mutation from an earlier
            # callback is not followed by a stale value here.
            try:
                new = sub.selector(self._state)
                if sub.equality(sub.last, new):
                    continue
            except Exception:
                logger.exception("Store selector failed")
                continue
            old, sub.last = sub.last, new
            try:
                sub.callback(new, old)
            except Exception:
                logger.exception("Store subscriber callback failed")

    def _commit(self, **update: Any) -> None:
        if not update:
            return
        old = self._state
        self._state = old.model_copy(update=update)
        if "services_health" in update:
            _export_health(old.services_health, self._state.services_health)
        self._notify()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(self, raw_event: Mapping[str, Any]) -> None:
        """Apply one ingestion payload atomically. Never raises.

        Present slices replace their part of state; absent or malformed
        slices keep the prior value.
        """
        try:
            update = self._ingest_update(raw_event)
        except Exception:
            # Unexpected failure: leave state untouched rather than crash the consumer.
            INGEST_EVENTS_TOTAL.labels(outcome="error").inc()
            logger.exception("Failed to apply ingestion payload")
            return
        self._commit(**update)

    def _ingest_update(self, raw_event: Mapping[str, Any]) -> dict[str, Any]:
        old = self._state
        updated_at = parse_last_update(raw_event.get("lastUpdate")) or self._clock()
        update: dict[str, Any] = {}
        rejected = False

        def apply(slice_name: str, build: Callable[[], Any]) -> Any:
            nonlocal rejected
            try:
                return build()
            except _MALFORMED as exc:
                rejected = True
                INGEST_SLICES_REJECTED.labels(slice=slice_name).inc()
                logger.warning("Ignoring malformed %s slice: %s", slice_name, exc)
                return None

        metrics_raw = raw_event.get("metrics")
        docker_raw = raw_event.get("docker")
        if docker_raw is not None and not isinstance(docker_raw, Mapping):
            rejected = True
            INGEST_SLICES_REJECTED.labels(slice="docker").inc()
            logger.warning("Ignoring malformed docker slice: %r", type(docker_raw).__name__)
            docker_raw = None

        containers = old.containers
        if docker_raw and "containers" in docker_raw:
            new_containers = apply("containers", lambda: normalize_containers(docker_raw["containers"]))
            if new_containers is not None:
                containers = new_containers
                update.update(self._container_update(new_containers, updated_at, old.docker))

        if docker_raw and docker_raw.get("system") is not None:
            docker = apply("docker.system", lambda: normalize_docker(docker_raw["system"], metrics_raw, containers))
            if docker is not None:
                update["docker"] = docker

        if raw_event.get("system") is not None:
            system = apply("system", lambda: normalize_system(raw_event["system"]))
        elif metrics_raw is not None:
            system = apply("metrics", lambda: system_from_aggregates(metrics_raw))
        else:
            system = None
        if system is not None:
            update["system"] = system

        services_raw = raw_event.get("services")
        if services_raw is not None:
            if isinstance(services_raw, Mapping):
                services = dict(old.services)
                for name, value in services_raw.items():
                    if value is None:
                        continue
                    record = apply(f"services.{name}", lambda n=name, v=value: normalize_service(n, v))
                    if record is not None:
                        services[name] = record
                update["services"] = services
            else:
                rejected = True
                INGEST_SLICES_REJECTED.labels(slice="services").inc()
                logger.warning("Ignoring malformed services slice: %r", type(services_raw).__name__)

        update["last_update"] = updated_at
        error = raw_event.get("error")
        if isinstance(error, str) and error:
            update.update(self._connection_update(False, error))
        else:
            update.update(self._connection_update(True, None))

        INGEST_EVENTS_TOTAL.labels(outcome="partial" if rejected else "applied").inc()
        return update

    # ------------------------------------------------------------------
    # Narrow setters
    # ------------------------------------------------------------------

    def _container_update(
        self,
        containers: tuple[ContainerInfo, ...],
        checked_at: datetime,
        docker: DockerMetrics | None,
    ) -> dict[str, Any]:
        update: dict[str, Any] = {
            "containers": containers,
            "services_health": derive_services_health(containers, checked_at, self._container_prefix),
        }
        if docker is not None:
            tally = count_containers(containers)
            counts = docker.containers.model_copy(update={"healthy": tally.healthy, "unhealthy": tally.unhealthy})
            update["docker"] = docker.model_copy(update={"containers": counts})
        return update

    def update_containers(self, containers: list[ContainerInfo] | tuple[ContainerInfo, ...]) -> None:
        """Replace the container list and recompute service health."""
        now = self._clock()
        self._commit(last_update=now, **self._container_update(tuple(containers), now, self._state.docker))

    def update_system(self, metrics: SystemMetrics) -> None:
        self._commit(system=metrics, last_update=self._clock())

    def update_docker(self, metrics: DockerMetrics) -> None:
        self._commit(docker=metrics, last_update=self._clock())

    def update_service(self, name: str, metrics: ServiceMetrics) -> None:
        self.update_services({name: metrics})

    def update_services(self, metrics: Mapping[str, ServiceMetrics]) -> None:
        """Replace the records for the given services; others are kept."""
        self._commit(services={**self._state.services, **metrics}, last_update=self._clock())

    def batch_update(
        self,
        *,
        system: SystemMetrics | None = None,
        docker: DockerMetrics | None = None,
        containers: list[ContainerInfo] | tuple[ContainerInfo, ...] | None = None,
        services: Mapping[str, ServiceMetrics] | None = None,
    ) -> None:
        """Apply several slices in a single swap. ``None`` means unchanged."""
        now = self._clock()
        update: dict[str, Any] = {"last_update": now}
        if docker is not None:
            update["docker"] = docker
        if containers is not None:
            update.update(self._container_update(tuple(containers), now, docker or self._state.docker))
        if system is not None:
            update["system"] = system
        if services is not None:
            update["services"] = {**self._state.services, **services}
        self._commit(**update)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _new_alert(self, severity: Severity, service: str, message: str) -> Alert:
        now = self._clock()
        return Alert(
            id=f"alert-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:9]}",
            severity=severity,
            service=service,
            message=message,
            created_at=now,
            acknowledged=False,
        )

    def _prepend_alert(self, alert: Alert) -> tuple[Alert, ...]:
        ALERTS_TOTAL.labels(severity=alert.severity, service=alert.service).inc()
        return (alert, *self._state.alerts)[: self._alert_limit]

    def add_alert(self, severity: Severity, service: str, message: str) -> Alert:
        """Create an unacknowledged alert at the head of the list (oldest dropped past the cap)."""
        alert = self._new_alert(severity, service, message)
        self._commit(alerts=self._prepend_alert(alert))
        return alert

    def acknowledge_alert(self, alert_id: str) -> bool:
        """Mark an alert acknowledged. Returns False if no alert has that id."""
        alerts = self._state.alerts
        for index, alert in enumerate(alerts):
            if alert.id != alert_id:
                continue
            if not alert.acknowledged:
                acked = alert.model_copy(update={"acknowledged": True})
                self._commit(alerts=(*alerts[:index], acked, *alerts[index + 1 :]))
            return True
        return False

    def clear_alerts(self, service: str | None = None) -> None:
        """Remove all alerts, or only those raised for ``service``."""
        if service is None:
            kept: tuple[Alert, ...] = ()
        else:
            kept = tuple(a for a in self._state.alerts if a.service != service)
        if len(kept) != len(self._state.alerts):
            self._commit(alerts=kept)

    # ------------------------------------------------------------------
    # Connection state
    # ------------------------------------------------------------------

    def _connection_update(self, connected: bool, error: str | None) -> dict[str, Any]:
        old = self._state
        update: dict[str, Any] = {"is_connected": connected, "connection_error": None if connected else error}
        # A repeated report of the same failure while already down is not a new loss.
        already_reported = not old.is_connected and old.connection_error == error
        if not connected and error and not already_reported:
            logger.warning("Metrics connection lost: %s", error)
            update["alerts"] = self._prepend_alert(self._new_alert("critical", "system", f"Connection lost: {error}"))
        STREAM_CONNECTED.set(1 if connected else 0)
        return update

    def set_connection_state(self, connected: bool, error: str | None = None) -> None:
        """Record connectivity. Losing the connection with an error raises a critical ``system`` alert."""
        self._commit(**self._connection_update(connected, error or None))

    # ------------------------------------------------------------------
    # Performance counters
    # ------------------------------------------------------------------

    def track_api_call(self) -> None:
        self._commit(api_calls_count=self._state.api_calls_count + 1)

    def track_cache_hit(self) -> None:
        self._commit(cache_hits=self._state.cache_hits + 1)

    def track_cache_miss(self) -> None:
        self._commit(cache_misses=self._state.cache_misses + 1)

    def reset(self) -> None:
        """Return to the initial empty state. Subscriptions are kept and notified."""
        old = self._state
        self._state = TelemetryState()
        _export_health(old.services_health, ())
        STREAM_CONNECTED.set(0)
        self._notify()


def _export_health(old: tuple[ServiceHealth, ...], new: tuple[ServiceHealth, ...]) -> None:
    current = {h.name for h in new}
    for gone in {h.name for h in old} - current:
        with contextlib.suppress(KeyError):
            SERVICE_HEALTHY.remove(gone)
    for health in new:
        SERVICE_HEALTHY.labels(service=health.name).set(1.0 if health.status == "healthy" else 0.0)


def create_store() -> TelemetryStore:
    """Build a store configured from settings."""
    settings = get_settings()
    return TelemetryStore(container_prefix=settings.container_name_prefix, alert_limit=settings.alert_limit)
