"""Tests for the activity aggregator: normalization, filtering, pagination, stats, export."""

import csv
import io
import json
from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest

from src.activity.audit_log import SqliteAuditLog
from src.activity.feed import (
    CSV_HEADERS,
    ActivityAggregator,
    build_timeline,
    create_aggregator,
    decode_cursor,
    encode_cursor,
    searchable_text,
    to_activity,
)
from src.activity.models import ActivityFeedOptions, ActivityFilter, AuditLogItem

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _details(
    resource_type: str,
    resource_id: str,
    resource_name: str,
    actor: dict[str, str] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    details: dict[str, Any] = {
        "resourceType": resource_type,
        "resourceId": resource_id,
        "resourceName": resource_name,
        **extra,
    }
    if actor is not None:
        details["actor"] = actor
    return details


ADMIN = {"id": "admin", "type": "user", "name": "Admin User"}
DEV = {"id": "dev-1", "type": "user", "name": "John Developer"}
SYSTEM = {"id": "system", "type": "system", "name": "System"}


def _seed(log: SqliteAuditLog) -> None:
    """Twelve entries over the last 40 days, newest last."""
    rows: list[tuple[str, dict[str, Any], timedelta]] = [
        ("started", _details("service", "svc-postgres", "postgres", ADMIN), timedelta(days=40)),
        ("deployed", _details("deployment", "deploy-prod", "Production Deployment", DEV), timedelta(days=20)),
        ("backup_created", _details("backup", "bk-1", "Nightly, postgres", SYSTEM), timedelta(days=10)),
        ("stopped", _details("service", "svc-redis", "redis", ADMIN), timedelta(days=6)),
        ("created", _details("secret", "sec-1", "API Key", DEV), timedelta(days=5)),
        ("started", _details("service", "svc-redis", "redis", ADMIN), timedelta(days=3)),
        ("restarted", _details("service", "svc-hasura", "hasura", DEV), timedelta(days=2)),
        ("deleted", _details("secret", "sec-1", "API Key", ADMIN), timedelta(hours=30)),
        ("backup_created", _details("backup", "bk-2", "Nightly, postgres", SYSTEM), timedelta(hours=20)),
        (
            "config_changed",
            _details(
                "config",
                "config-dev",
                "Development",
                ADMIN,
                metadata={"changes": [{"field": "PORT", "old_value": "3000", "new_value": "3021"}]},
                ipAddress="10.0.0.5",
            ),
            timedelta(hours=5),
        ),
        ("started", _details("service", "svc-postgres", "postgres", DEV), timedelta(hours=2)),
        ("login", {}, timedelta(minutes=10)),
    ]
    for action, details, age in rows:
        actor = details.get("actor", {}).get("id")
        _ = log.append(action, details, True, actor, timestamp=NOW - age)


@pytest.fixture
def aggregator(audit_log: SqliteAuditLog) -> ActivityAggregator:
    _seed(audit_log)
    return ActivityAggregator(audit_log)


async def _walk(aggregator: ActivityAggregator, flt: ActivityFilter, limit: int) -> tuple[int, int, list[str]]:
    """Follow next_cursor until exhausted. Returns (reported total, items seen, ids)."""
    page = await aggregator.get_activity_feed(ActivityFeedOptions(limit=limit, filter=flt))
    total = page["total"]
    ids = [a["id"] for a in page["activities"]]
    while page["has_more"]:
        page = await aggregator.get_activity_feed(
            ActivityFeedOptions(limit=limit, cursor=page["next_cursor"], filter=flt)
        )
        ids.extend(a["id"] for a in page["activities"])
    return total, len(ids), ids


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestToActivity:
    def _item(self, **overrides: Any) -> AuditLogItem:
        item = AuditLogItem(
            id=7,
            action="started",
            details=_details("service", "svc-postgres", "postgres", ADMIN),
            timestamp="2026-03-10T11:00:00+00:00",
            success=True,
            user_id="admin",
        )
        item.update(overrides)  # type: ignore[typeddict-item]
        return item

    def test_maps_all_fields(self) -> None:
        activity = to_activity(self._item())
        assert activity["id"] == "audit-7"
        assert activity["actor"] == ADMIN
        assert activity["resource"] == {"id": "svc-postgres", "type": "service", "name": "postgres"}
        assert activity["timestamp"] == "2026-03-10T11:00:00+00:00"
        assert "metadata" not in activity

    def test_deterministic(self) -> None:
        item = self._item()
        assert to_activity(item) == to_activity(item)

    def test_user_id_without_actor_object(self) -> None:
        activity = to_activity(self._item(details={"resourceType": "user"}, user_id="dev-1"))
        assert activity["actor"] == {"id": "dev-1", "type": "user", "name": "dev-1"}

    def test_no_actor_is_system(self) -> None:
        activity = to_activity(self._item(action="login", details={}, user_id=None))
        assert activity["actor"]["type"] == "system"
        assert activity["resource"] == {"id": "", "type": "system", "name": "login"}

    def test_failure_recorded_in_metadata(self) -> None:
        assert to_activity(self._item(success=False))["metadata"] == {"success": False}

    def test_changes_and_client_info_surface(self) -> None:
        details = _details(
            "config",
            "c",
            "Dev",
            ADMIN,
            metadata={"changes": [{"field": "DEBUG", "old_value": False, "new_value": True}]},
            ipAddress="10.0.0.1",
            userAgent="curl/8",
        )
        activity = to_activity(self._item(details=details))
        assert activity["changes"] == [{"field": "DEBUG", "old_value": False, "new_value": True}]
        assert activity["ip_address"] == "10.0.0.1"
        assert activity["user_agent"] == "curl/8"


class TestCursor:
    def test_round_trip(self) -> None:
        assert decode_cursor(encode_cursor(40)) == 40

    @pytest.mark.parametrize("cursor", ["", "!!!", "bzpuYW4=", "eDox"])
    def test_invalid_cursor_raises(self, cursor: str) -> None:
        with pytest.raises(ValueError, match="Invalid activity cursor"):
            _ = decode_cursor(cursor)


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------


class TestActivityFeed:
    async def test_empty_log(self, audit_log: SqliteAuditLog) -> None:
        page = await ActivityAggregator(audit_log).get_activity_feed()
        assert page == {"activities": [], "total": 0, "has_more": False}

    async def test_newest_first_with_defaults(self, aggregator: ActivityAggregator) -> None:
        page = await aggregator.get_activity_feed()
        timestamps = [a["timestamp"] for a in page["activities"]]
        assert timestamps == sorted(timestamps, reverse=True)
        assert page["activities"][0]["action"] == "login"
        assert page["total"] == 12
        assert page["has_more"] is False
        assert "next_cursor" not in page

    @pytest.mark.parametrize(
        "flt",
        [
            ActivityFilter(),
            ActivityFilter(action="started"),
            ActivityFilter(action=["started", "stopped"], resource_type="service"),
            ActivityFilter(actor_id="dev-1"),
            ActivityFilter(search="postgres"),
            ActivityFilter(resource_type="nothing"),
        ],
    )
    @pytest.mark.parametrize("limit", [1, 2, 5, 20])
    async def test_pages_sum_to_total(self, aggregator: ActivityAggregator, flt: ActivityFilter, limit: int) -> None:
        total, seen, ids = await _walk(aggregator, flt, limit)
        assert seen == total
        assert len(set(ids)) == len(ids)

    async def test_has_more_and_next_cursor(self, aggregator: ActivityAggregator) -> None:
        page = await aggregator.get_activity_feed(ActivityFeedOptions(limit=5))
        assert len(page["activities"]) == 5
        assert page["has_more"] is True
        assert decode_cursor(page["next_cursor"]) == 5

    async def test_offset_without_cursor(self, aggregator: ActivityAggregator) -> None:
        page = await aggregator.get_activity_feed(ActivityFeedOptions(limit=5, offset=10))
        assert len(page["activities"]) == 2
        assert page["has_more"] is False

    async def test_limit_zero_counts_honestly(self, aggregator: ActivityAggregator) -> None:
        page = await aggregator.get_activity_feed(ActivityFeedOptions(limit=0, filter=ActivityFilter(action="started")))
        assert page["activities"] == []
        assert page["total"] == 3

    async def test_filters_and_combine(self, aggregator: ActivityAggregator) -> None:
        page = await aggregator.get_activity_feed(
            ActivityFeedOptions(filter=ActivityFilter(action="started", actor_id="admin"))
        )
        assert [a["resource"]["name"] for a in page["activities"]] == ["redis", "postgres"]

    async def test_actor_type_filter(self, aggregator: ActivityAggregator) -> None:
        page = await aggregator.get_activity_feed(ActivityFeedOptions(filter=ActivityFilter(actor_type="system")))
        assert {a["action"] for a in page["activities"]} == {"backup_created", "login"}

    async def test_resource_id_filter(self, aggregator: ActivityAggregator) -> None:
        page = await aggregator.get_activity_feed(ActivityFeedOptions(filter=ActivityFilter(resource_id="sec-1")))
        assert [a["action"] for a in page["activities"]] == ["deleted", "created"]

    async def test_date_range_inclusive(self, aggregator: ActivityAggregator) -> None:
        flt = ActivityFilter(start_date=NOW - timedelta(days=3), end_date=NOW - timedelta(hours=20))
        page = await aggregator.get_activity_feed(ActivityFeedOptions(filter=flt))
        assert [a["action"] for a in page["activities"]] == ["backup_created", "deleted", "restarted", "started"]

    async def test_naive_dates_are_utc(self, aggregator: ActivityAggregator) -> None:
        start = (NOW - timedelta(hours=3)).replace(tzinfo=None)
        page = await aggregator.get_activity_feed(ActivityFeedOptions(filter=ActivityFilter(start_date=start)))
        assert page["total"] == 2

    async def test_exclude_changes(self, aggregator: ActivityAggregator) -> None:
        flt = ActivityFilter(action="config_changed")
        full = await aggregator.get_activity_feed(ActivityFeedOptions(filter=flt))
        slim = await aggregator.get_activity_feed(ActivityFeedOptions(filter=flt, include_changes=False))

        assert full["activities"][0]["changes"][0]["field"] == "PORT"
        assert "changes" not in slim["activities"][0]
        assert "metadata" not in slim["activities"][0]
        assert slim["activities"][0]["ip_address"] == "10.0.0.5"

    async def test_invalid_cursor_raises(self, aggregator: ActivityAggregator) -> None:
        with pytest.raises(ValueError):
            _ = await aggregator.get_activity_feed(ActivityFeedOptions(cursor="bogus"))

    async def test_scan_limit_bounds_window(self, audit_log: SqliteAuditLog) -> None:
        _seed(audit_log)
        page = await ActivityAggregator(audit_log, scan_limit=4).get_activity_feed()
        assert page["total"] == 4
        assert page["activities"][-1]["action"] == "backup_created"


# ---------------------------------------------------------------------------
# Lookups and search
# ---------------------------------------------------------------------------


class TestLookups:
    @pytest.mark.parametrize("term", ["POSTGRES", "admin user", "key", "start", "zzz", "nightly, p"])
    async def test_search_containment(self, aggregator: ActivityAggregator, term: str) -> None:
        results = await aggregator.search_activity(term)
        assert all(term.lower() in searchable_text(a).lower() for a in results)

    async def test_search_finds_all_matches(self, aggregator: ActivityAggregator) -> None:
        results = await aggregator.search_activity("redis")
        assert [a["action"] for a in results] == ["started", "stopped"]

    async def test_get_by_id(self, aggregator: ActivityAggregator) -> None:
        page = await aggregator.get_activity_feed(ActivityFeedOptions(limit=1))
        first = page["activities"][0]
        assert await aggregator.get_activity_by_id(first["id"]) == first

    async def test_get_by_id_missing(self, aggregator: ActivityAggregator) -> None:
        assert await aggregator.get_activity_by_id("audit-9999") is None

    async def test_for_resource(self, aggregator: ActivityAggregator) -> None:
        results = await aggregator.get_activity_for_resource("service", "svc-redis")
        assert [a["action"] for a in results] == ["started", "stopped"]

    async def test_by_actor(self, aggregator: ActivityAggregator) -> None:
        results = await aggregator.get_activity_by_actor("dev-1")
        assert len(results) == 4
        assert all(a["actor"]["id"] == "dev-1" for a in results)


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


class TestActivityStats:
    async def test_rolling_windows(self, aggregator: ActivityAggregator) -> None:
        stats = await aggregator.get_activity_stats(now=NOW)
        assert stats["total_today"] == 4
        assert stats["total_week"] == 9
        assert stats["total_month"] == 11

    async def test_breakdowns(self, aggregator: ActivityAggregator) -> None:
        stats = await aggregator.get_activity_stats(now=NOW)
        assert stats["by_action"]["started"] == 3
        assert stats["by_resource"]["service"] == 5
        assert stats["top_actors"][0] == {"actor_id": "admin", "name": "Admin User", "count": 5}
        assert len(stats["top_actors"]) <= 5

    async def test_timeline_complete(self, aggregator: ActivityAggregator) -> None:
        stats = await aggregator.get_activity_stats(now=NOW)
        timeline = stats["timeline"]

        assert len(timeline) == 7
        days = [date.fromisoformat(e["date"]) for e in timeline]
        assert days[-1] == NOW.date()
        assert all(b - a == timedelta(days=1) for a, b in zip(days, days[1:], strict=False))
        assert all(e["count"] >= 0 for e in timeline)
        assert timeline[-1]["count"] == 3

    async def test_empty_log_timeline(self, audit_log: SqliteAuditLog) -> None:
        stats = await ActivityAggregator(audit_log).get_activity_stats()
        assert len(stats["timeline"]) == 7
        assert stats["timeline"][-1]["date"] == datetime.now(UTC).date().isoformat()
        assert stats["total_today"] == 0
        assert stats["top_actors"] == []

    def test_timeline_ignores_unparseable(self) -> None:
        timeline = build_timeline(
            [
                {
                    "id": "x",
                    "actor": {"id": "a", "type": "user", "name": "a"},
                    "action": "x",
                    "resource": {"id": "", "type": "system", "name": "x"},
                    "timestamp": "not-a-date",
                }
            ],
            NOW,
        )
        assert sum(e["count"] for e in timeline) == 0


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


class TestExport:
    async def test_json(self, aggregator: ActivityAggregator) -> None:
        exported = json.loads(await aggregator.export_activity(ActivityFilter(resource_type="backup")))
        assert [a["resource"]["id"] for a in exported] == ["bk-2", "bk-1"]

    async def test_csv_header_and_quoting(self, aggregator: ActivityAggregator) -> None:
        text = await aggregator.export_activity(ActivityFilter(resource_type="backup"), "csv")

        assert text.splitlines()[0] == ",".join(CSV_HEADERS)
        assert '"Nightly, postgres"' in text
        rows = list(csv.reader(io.StringIO(text)))
        assert len(rows) == 3
        assert rows[1][7] == "Nightly, postgres"

    async def test_csv_ip_address_column(self, aggregator: ActivityAggregator) -> None:
        text = await aggregator.export_activity(ActivityFilter(action="config_changed"), "csv")
        assert list(csv.reader(io.StringIO(text)))[1][9] == "10.0.0.5"

    async def test_unknown_format(self, aggregator: ActivityAggregator) -> None:
        with pytest.raises(ValueError, match="Unsupported export format"):
            _ = await aggregator.export_activity(None, "xml")  # type: ignore[arg-type]


class TestCreateAggregator:
    async def test_builds_from_settings(self, mock_settings: Any) -> None:
        mock_settings.activity_scan_limit = 5
        aggregator = create_aggregator()
        await aggregator.log_activity(ADMIN, "started", "service", "svc-x", "x")  # type: ignore[arg-type]

        page = await aggregator.get_activity_feed()
        assert page["total"] == 1
        assert page["activities"][0]["actor"] == ADMIN

    def test_unconfigured_raises(self, mock_settings: Any) -> None:
        mock_settings.audit_db_path = ""
        with pytest.raises(ValueError, match="not configured"):
            _ = create_aggregator()
