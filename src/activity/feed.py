"""Activity aggregator, the read-side view of the audit log.

Audit log entries are normalized 1:1 into ``Activity`` records, then
filtered, searched, paginated and summarized. The aggregator holds no state
of its own; every call re-reads the newest ``scan_limit`` entries.

Pagination is weakly consistent: each page is cut from a fresh read, so an
append landing between two page requests shifts the seam and the next page
may repeat or skip one item. The log has no transactional cursor, and this
is accepted rather than guarded against.
"""

import asyncio
import base64
import binascii
import csv
import io
import json
import logging
from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from src.activity.audit_log import AuditLogStore, open_audit_log
from src.activity.logger import log_activity
from src.activity.models import (
    Activity,
    ActivityActor,
    ActivityChange,
    ActivityFeedOptions,
    ActivityFeedPage,
    ActivityFilter,
    ActivityResource,
    ActivityStats,
    ActorCount,
    AuditLogItem,
    TimelineEntry,
)
from src.config import get_settings
from src.observability.metrics import ACTIVITY_QUERY_DURATION

logger = logging.getLogger(__name__)

DEFAULT_SCAN_LIMIT = 1000
TOP_ACTORS_LIMIT = 5
TIMELINE_DAYS = 7

_CURSOR_PREFIX = "o:"

CSV_HEADERS = [
    "ID",
    "Timestamp",
    "Actor ID",
    "Actor Name",
    "Actor Type",
    "Action",
    "Resource ID",
    "Resource Name",
    "Resource Type",
    "IP Address",
]


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _actor_from(raw: Any, user_id: str | None) -> ActivityActor:
    if isinstance(raw, dict):
        actor_id = str(raw.get("id") or user_id or "system")
        return ActivityActor(
            id=actor_id,
            type=str(raw.get("type") or "user"),
            name=str(raw.get("name") or actor_id),
        )
    if user_id:
        return ActivityActor(id=user_id, type="user", name=user_id)
    return ActivityActor(id="system", type="system", name="System")


def to_activity(item: AuditLogItem) -> Activity:
    """Normalize one audit log entry. Deterministic: same entry, same Activity."""
    details = item["details"]
    resource_id = str(details.get("resourceId") or "")
    activity = Activity(
        id=f"audit-{item['id']}",
        actor=_actor_from(details.get("actor"), item["user_id"]),
        action=item["action"],
        resource=ActivityResource(
            id=resource_id,
            type=str(details.get("resourceType") or "system"),
            name=str(details.get("resourceName") or resource_id or item["action"]),
        ),
        timestamp=item["timestamp"],
    )

    raw_metadata = details.get("metadata")
    metadata: dict[str, Any] = dict(raw_metadata) if isinstance(raw_metadata, dict) else {}
    if not item["success"]:
        metadata["success"] = False
    if metadata:
        activity["metadata"] = metadata
        changes = metadata.get("changes")
        if isinstance(changes, list):
            activity["changes"] = [
                ActivityChange(field=str(c.get("field", "")), old_value=c.get("old_value"), new_value=c.get("new_value"))
                for c in changes
                if isinstance(c, dict)
            ]

    if details.get("ipAddress"):
        activity["ip_address"] = str(details["ipAddress"])
    if details.get("userAgent"):
        activity["user_agent"] = str(details["userAgent"])
    return activity


def searchable_text(activity: Activity) -> str:
    return f"{activity['action']} {activity['actor']['name']} {activity['resource']['name']}"


def parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _one_of(value: str, wanted: str | list[str] | None) -> bool:
    if not wanted:
        return True
    if isinstance(wanted, str):
        return value == wanted
    return value in wanted


def matches_filter(activity: Activity, flt: ActivityFilter) -> bool:
    """AND of every set filter field."""
    if flt.actor_id and activity["actor"]["id"] != flt.actor_id:
        return False
    if flt.actor_type and activity["actor"]["type"] != flt.actor_type:
        return False
    if not _one_of(activity["action"], flt.action):
        return False
    if not _one_of(activity["resource"]["type"], flt.resource_type):
        return False
    if flt.resource_id and activity["resource"]["id"] != flt.resource_id:
        return False
    if flt.start_date or flt.end_date:
        ts = parse_timestamp(activity["timestamp"])
        if ts is None:
            return False
        if flt.start_date and ts < _aware(flt.start_date):
            return False
        if flt.end_date and ts > _aware(flt.end_date):
            return False
    return not (flt.search and flt.search.lower() not in searchable_text(activity).lower())


def _without_changes(activity: Activity) -> Activity:
    slim = Activity(**activity)  # type: ignore[typeddict-item]
    slim.pop("changes", None)
    if "metadata" in slim:
        metadata = {k: v for k, v in slim["metadata"].items() if k != "changes"}
        if metadata:
            slim["metadata"] = metadata
        else:
            del slim["metadata"]
    return slim


# ---------------------------------------------------------------------------
# Cursors
# ---------------------------------------------------------------------------


def encode_cursor(offset: int) -> str:
    return base64.urlsafe_b64encode(f"{_CURSOR_PREFIX}{offset}".encode()).decode()


def decode_cursor(cursor: str) -> int:
    """Inverse of ``encode_cursor``.

    Raises:
        ValueError: If the cursor was not produced by ``encode_cursor``.
    """
    try:
        raw = base64.urlsafe_b64decode(cursor.encode()).decode()
    except (binascii.Error, UnicodeDecodeError) as exc:
        msg = "Invalid activity cursor"
        raise ValueError(msg) from exc
    if not raw.startswith(_CURSOR_PREFIX) or not raw[len(_CURSOR_PREFIX) :].isdigit():
        msg = "Invalid activity cursor"
        raise ValueError(msg)
    return int(raw[len(_CURSOR_PREFIX) :])


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def build_timeline(activities: list[Activity], now: datetime, days: int = TIMELINE_DAYS) -> list[TimelineEntry]:
    """Per-calendar-day counts (UTC) for the trailing ``days`` days ending today, oldest first."""
    per_day: Counter[str] = Counter()
    for activity in activities:
        ts = parse_timestamp(activity["timestamp"])
        if ts is not None:
            per_day[ts.astimezone(UTC).date().isoformat()] += 1
    today = now.astimezone(UTC).date()
    return [
        TimelineEntry(date=(day := (today - timedelta(days=offset)).isoformat()), count=per_day[day])
        for offset in range(days - 1, -1, -1)
    ]


def compute_stats(activities: list[Activity], now: datetime) -> ActivityStats:
    """Rolling 1/7/30-day totals, breakdowns, top actors and the 7-day timeline."""
    windows = {n: now - timedelta(days=n) for n in (1, 7, 30)}
    totals = dict.fromkeys(windows, 0)
    by_action: Counter[str] = Counter()
    by_resource: Counter[str] = Counter()
    actor_counts: Counter[str] = Counter()
    actor_names: dict[str, str] = {}

    for activity in activities:
        by_action[activity["action"]] += 1
        by_resource[activity["resource"]["type"]] += 1
        actor_id = activity["actor"]["id"]
        actor_counts[actor_id] += 1
        actor_names.setdefault(actor_id, activity["actor"]["name"])

        ts = parse_timestamp(activity["timestamp"])
        if ts is None or ts > now:
            continue
        for days, start in windows.items():
            if ts >= start:
                totals[days] += 1

    return ActivityStats(
        total_today=totals[1],
        total_week=totals[7],
        total_month=totals[30],
        by_action=dict(by_action),
        by_resource=dict(by_resource),
        top_actors=[
            ActorCount(actor_id=actor_id, name=actor_names[actor_id], count=count)
            for actor_id, count in actor_counts.most_common(TOP_ACTORS_LIMIT)
        ],
        timeline=build_timeline(activities, now),
    )


def to_csv(activities: list[Activity]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for a in activities:
        writer.writerow(
            [
                a["id"],
                a["timestamp"],
                a["actor"]["id"],
                a["actor"]["name"],
                a["actor"]["type"],
                a["action"],
                a["resource"]["id"],
                a["resource"]["name"],
                a["resource"]["type"],
                a.get("ip_address", ""),
            ]
        )
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class ActivityAggregator:
    """Async query surface over an ``AuditLogStore``."""

    def __init__(self, log: AuditLogStore, *, scan_limit: int = DEFAULT_SCAN_LIMIT) -> None:
        self._log = log
        self._scan_limit = scan_limit

    async def _load(self) -> list[Activity]:
        items = await asyncio.to_thread(self._log.query, self._scan_limit)
        return [to_activity(item) for item in items]

    async def get_activity_feed(self, options: ActivityFeedOptions | None = None) -> ActivityFeedPage:
        """One page of filtered activity, newest first.

        ``total`` counts matches after filtering. ``next_cursor`` is set iff
        ``has_more``. A limit of 0 returns no activities but an honest total.

        Raises:
            ValueError: If ``options.cursor`` is not a valid cursor.
        """
        opts = options or ActivityFeedOptions()
        offset = decode_cursor(opts.cursor) if opts.cursor else opts.offset
        with ACTIVITY_QUERY_DURATION.labels(operation="feed").time():
            matched = [a for a in await self._load() if matches_filter(a, opts.filter)]

        total = len(matched)
        page = matched[offset : offset + opts.limit]
        if not opts.include_changes:
            page = [_without_changes(a) for a in page]

        has_more = offset + len(page) < total
        logger.debug("Activity feed page: %d of %d matches from offset %d", len(page), total, offset)
        result = ActivityFeedPage(activities=page, total=total, has_more=has_more)
        if has_more:
            result["next_cursor"] = encode_cursor(offset + len(page))
        return result

    async def search_activity(self, term: str) -> list[Activity]:
        """Case-insensitive substring match on "action actor.name resource.name"."""
        needle = term.lower()
        with ACTIVITY_QUERY_DURATION.labels(operation="search").time():
            activities = await self._load()
        return [a for a in activities if needle in searchable_text(a).lower()]

    async def get_activity_by_id(self, activity_id: str) -> Activity | None:
        with ACTIVITY_QUERY_DURATION.labels(operation="by_id").time():
            activities = await self._load()
        return next((a for a in activities if a["id"] == activity_id), None)

    async def get_activity_stats(self, now: datetime | None = None) -> ActivityStats:
        with ACTIVITY_QUERY_DURATION.labels(operation="stats").time():
            activities = await self._load()
        return compute_stats(activities, _aware(now) if now else datetime.now(UTC))

    async def get_activity_for_resource(self, resource_type: str, resource_id: str) -> list[Activity]:
        activities = await self._load()
        return [a for a in activities if a["resource"]["type"] == resource_type and a["resource"]["id"] == resource_id]

    async def get_activity_by_actor(self, actor_id: str) -> list[Activity]:
        activities = await self._load()
        return [a for a in activities if a["actor"]["id"] == actor_id]

    async def export_activity(self, flt: ActivityFilter | None = None, fmt: Literal["json", "csv"] = "json") -> str:
        """Serialize every matching activity (newest first) as JSON or CSV."""
        flt = flt or ActivityFilter()
        matched = [a for a in await self._load() if matches_filter(a, flt)]
        if fmt == "json":
            return json.dumps(matched, indent=2, default=str)
        if fmt == "csv":
            return to_csv(matched)
        msg = f"Unsupported export format: {fmt}"
        raise ValueError(msg)

    async def log_activity(
        self,
        actor: ActivityActor,
        action: str,
        resource_type: str,
        resource_id: str,
        resource_name: str,
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        await log_activity(
            self._log,
            actor,
            action,
            resource_type,
            resource_id,
            resource_name,
            metadata=metadata,
            ip_address=ip_address,
            user_agent=user_agent,
        )


def create_aggregator() -> ActivityAggregator:
    """Open the configured audit log and wrap it in an aggregator."""
    settings = get_settings()
    return ActivityAggregator(open_audit_log(), scan_limit=settings.activity_scan_limit)
