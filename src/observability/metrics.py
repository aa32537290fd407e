"""Prometheus metric definitions for the telemetry core's self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

ACTIVITY_QUERY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)

# ---------------------------------------------------------------------------
# HTTP API metrics
# ---------------------------------------------------------------------------

REQUEST_DURATION = Histogram(
    "ops_telemetry_request_duration_seconds",
    "Activity feed HTTP request latency in seconds",
    labelnames=["endpoint"],
    buckets=ACTIVITY_QUERY_BUCKETS,
)

REQUESTS_TOTAL = Counter(
    "ops_telemetry_requests_total",
    "Total activity feed HTTP requests by outcome",
    labelnames=["endpoint", "status"],
)

# ---------------------------------------------------------------------------
# Telemetry store metrics
# ---------------------------------------------------------------------------

INGEST_EVENTS_TOTAL = Counter(
    "ops_telemetry_ingest_events_total",
    "Total number of ingestion payloads applied to the store",
    labelnames=["outcome"],
)

INGEST_SLICES_REJECTED = Counter(
    "ops_telemetry_ingest_slices_rejected_total",
    "Payload slices ignored because they were malformed",
    labelnames=["slice"],
)

STORE_SUBSCRIBERS = Gauge(
    "ops_telemetry_store_subscribers",
    "Number of active store subscriptions",
)

STREAM_CONNECTED = Gauge(
    "ops_telemetry_stream_connected",
    "Whether the metrics ingestion stream is connected (1=connected, 0=disconnected)",
)

SERVICE_HEALTHY = Gauge(
    "ops_telemetry_service_healthy",
    "Whether a service's container is healthy (1=healthy, 0=otherwise)",
    labelnames=["service"],
)

ALERTS_TOTAL = Counter(
    "ops_telemetry_alerts_total",
    "Total number of alerts raised",
    labelnames=["severity", "service"],
)

# ---------------------------------------------------------------------------
# Activity aggregator metrics
# ---------------------------------------------------------------------------

ACTIVITY_QUERY_DURATION = Histogram(
    "ops_telemetry_activity_query_duration_seconds",
    "Duration of activity aggregator queries in seconds",
    labelnames=["operation"],
    buckets=ACTIVITY_QUERY_BUCKETS,
)

ACTIVITY_LOGGED_TOTAL = Counter(
    "ops_telemetry_activity_logged_total",
    "Total number of activity entries appended to the audit log",
    labelnames=["action"],
)

# ---------------------------------------------------------------------------
# Error reporting metrics
# ---------------------------------------------------------------------------

ERROR_REPORTS_TOTAL = Counter(
    "ops_telemetry_error_reports_total",
    "Error reports by outcome (sent, failed, rate_limited, local, disabled)",
    labelnames=["outcome"],
)

# ---------------------------------------------------------------------------
# Info
# ---------------------------------------------------------------------------

APP_INFO = Info(
    "ops_telemetry",
    "Ops telemetry core build information",
)
