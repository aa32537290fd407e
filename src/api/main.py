"""FastAPI surface over the telemetry store and the activity feed.

The store, audit log, aggregator and error reporter are built once at
startup and shared across requests. The metrics stream consumer runs as a
background task for the lifetime of the app.
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from src.activity.audit_log import is_audit_log_configured, open_audit_log
from src.activity.feed import ActivityAggregator
from src.activity.models import Activity, ActivityFeedOptions, ActivityFeedPage, ActivityFilter, ActivityStats
from src.config import get_settings
from src.errors.reporter import ErrorContext, ErrorReporter, create_error_reporter
from src.observability.metrics import APP_INFO, REQUEST_DURATION, REQUESTS_TOTAL
from src.telemetry.models import Alert, ServiceHealth
from src.telemetry.selectors import select_health_summary, select_unacknowledged_alerts
from src.telemetry.store import TelemetryStore, create_store
from src.telemetry.stream import run_from_settings

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    is_connected: bool
    connection_error: str | None = None
    last_update: datetime | None = None
    services: list[ServiceHealth]
    unacknowledged_alerts: int
    audit_log: bool


class AcknowledgeResponse(BaseModel):
    id: str
    acknowledged: bool


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build shared components at startup, stop the stream and close the log on shutdown."""
    settings = get_settings()
    APP_INFO.info({"version": VERSION})

    store = create_store()
    app.state.store = store
    app.state.reporter = create_error_reporter()

    audit_log = open_audit_log() if is_audit_log_configured() else None
    app.state.audit_log = audit_log
    app.state.aggregator = (
        ActivityAggregator(audit_log, scan_limit=settings.activity_scan_limit) if audit_log is not None else None
    )
    if audit_log is None:
        logger.info("Audit log not configured; activity endpoints disabled")

    stop = asyncio.Event()
    stream_task = asyncio.create_task(run_from_settings(store, stop))
    yield
    stop.set()
    _ = stream_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await stream_task
    if audit_log is not None:
        audit_log.close()
    logger.info("Shutting down telemetry API")


app = FastAPI(title="Ops Telemetry", lifespan=lifespan)


def _store(request: Request) -> TelemetryStore:
    store: TelemetryStore = request.app.state.store
    return store


def _aggregator(request: Request) -> ActivityAggregator:
    aggregator: ActivityAggregator | None = request.app.state.aggregator
    if aggregator is None:
        raise HTTPException(status_code=503, detail="Audit log not configured (set AUDIT_DB_PATH)")
    return aggregator


@app.exception_handler(Exception)
async def report_unhandled(request: Request, exc: Exception) -> JSONResponse:
    """Forward unhandled errors to the error reporter and answer 500."""
    reporter: ErrorReporter = request.app.state.reporter
    context = ErrorContext(url=str(request.url))
    if request.headers.get("user-agent"):
        context["user_agent"] = request.headers["user-agent"]
    _ = await reporter.report_error(exc, context)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ---------------------------------------------------------------------------
# Telemetry endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Overall service health derived from the latest container snapshot."""
    state = _store(request).state
    summary = select_health_summary(state)
    return HealthResponse(
        status=summary["status"],
        is_connected=state.is_connected,
        connection_error=state.connection_error,
        last_update=state.last_update,
        services=list(state.services_health),
        unacknowledged_alerts=len(select_unacknowledged_alerts(state)),
        audit_log=request.app.state.aggregator is not None,
    )


@app.get("/alerts", response_model=list[Alert])
async def list_alerts(request: Request, unacknowledged: bool = False) -> list[Alert]:
    state = _store(request).state
    alerts = select_unacknowledged_alerts(state) if unacknowledged else state.alerts
    return list(alerts)


@app.post("/alerts/{alert_id}/acknowledge", response_model=AcknowledgeResponse)
async def acknowledge_alert(request: Request, alert_id: str) -> AcknowledgeResponse:
    if not _store(request).acknowledge_alert(alert_id):
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
    return AcknowledgeResponse(id=alert_id, acknowledged=True)


@app.delete("/alerts", status_code=204)
async def clear_alerts(request: Request, service: str | None = None) -> Response:
    _store(request).clear_alerts(service)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Activity endpoints
# ---------------------------------------------------------------------------


@app.get("/activity")
async def activity_feed(
    request: Request,
    limit: Annotated[int, Query(ge=0, le=500)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
    cursor: str | None = None,
    action: Annotated[list[str] | None, Query()] = None,
    resource_type: Annotated[list[str] | None, Query()] = None,
    actor_id: str | None = None,
    actor_type: str | None = None,
    resource_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    search: str | None = None,
    include_changes: bool = True,
) -> ActivityFeedPage:
    """One page of the activity feed, newest first."""
    aggregator = _aggregator(request)
    options = ActivityFeedOptions(
        limit=limit,
        offset=offset,
        cursor=cursor,
        include_changes=include_changes,
        filter=ActivityFilter(
            action=action,
            resource_type=resource_type,
            actor_id=actor_id,
            actor_type=actor_type,
            resource_id=resource_id,
            start_date=start_date,
            end_date=end_date,
            search=search,
        ),
    )
    start = time.monotonic()
    try:
        page = await aggregator.get_activity_feed(options)
    except ValueError as exc:
        REQUESTS_TOTAL.labels(endpoint="/activity", status="error").inc()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    REQUEST_DURATION.labels(endpoint="/activity").observe(time.monotonic() - start)
    REQUESTS_TOTAL.labels(endpoint="/activity", status="success").inc()
    return page


@app.get("/activity/search")
async def activity_search(request: Request, q: Annotated[str, Query(min_length=1)]) -> list[Activity]:
    return await _aggregator(request).search_activity(q)


@app.get("/activity/stats")
async def activity_stats(request: Request) -> ActivityStats:
    return await _aggregator(request).get_activity_stats()


@app.get("/activity/{activity_id}")
async def activity_detail(request: Request, activity_id: str) -> Activity:
    activity = await _aggregator(request).get_activity_by_id(activity_id)
    if activity is None:
        raise HTTPException(status_code=404, detail=f"Activity {activity_id} not found")
    return activity
