"""Tests for the activity CLI."""

from typing import Any
from unittest.mock import patch

import pytest

from src.activity.audit_log import SqliteAuditLog
from src.activity.feed import ActivityAggregator
from src.cli import build_parser, main, run


@pytest.fixture
def aggregator(audit_log: SqliteAuditLog) -> ActivityAggregator:
    for i in range(3):
        _ = audit_log.append(
            "deployed",
            {"resourceType": "deployment", "resourceId": f"d{i}", "resourceName": f"Deploy {i}"},
            True,
            "admin",
        )
    return ActivityAggregator(audit_log)


class TestParser:
    def test_repeatable_filters(self) -> None:
        args = build_parser().parse_args(["feed", "--action", "started", "--action", "stopped", "--limit", "5"])
        assert args.action == ["started", "stopped"]
        assert args.limit == 5

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            _ = build_parser().parse_args([])


class TestRun:
    async def test_feed_prints_next_cursor(self, aggregator: ActivityAggregator, capsys: pytest.CaptureFixture[str]) -> None:
        await run(build_parser().parse_args(["feed", "--limit", "2"]), aggregator)
        out = capsys.readouterr().out
        assert "Deploy 2" in out
        assert "2 of 3 shown" in out
        assert "Next page: --cursor" in out

    async def test_search(self, aggregator: ActivityAggregator, capsys: pytest.CaptureFixture[str]) -> None:
        await run(build_parser().parse_args(["search", "deploy 1"]), aggregator)
        out = capsys.readouterr().out
        assert "Deploy 1" in out
        assert "Deploy 2" not in out

    async def test_export_csv(self, aggregator: ActivityAggregator, capsys: pytest.CaptureFixture[str]) -> None:
        await run(build_parser().parse_args(["export", "--format", "csv"]), aggregator)
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("ID,Timestamp,Actor ID")
        assert len(lines) == 4

    async def test_stats_json(self, aggregator: ActivityAggregator, capsys: pytest.CaptureFixture[str]) -> None:
        await run(build_parser().parse_args(["stats"]), aggregator)
        assert '"total_today": 3' in capsys.readouterr().out


class TestMain:
    def test_unconfigured_exits(self, mock_settings: Any, capsys: pytest.CaptureFixture[str]) -> None:
        mock_settings.audit_db_path = ""
        with pytest.raises(SystemExit) as exc_info:
            main(["stats"])
        assert exc_info.value.code == 1
        assert "not configured" in capsys.readouterr().out

    def test_bad_cursor_exits(self, mock_settings: Any, capsys: pytest.CaptureFixture[str]) -> None:  # noqa: ARG002
        with pytest.raises(SystemExit):
            main(["feed", "--cursor", "bogus"])
        assert "Invalid activity cursor" in capsys.readouterr().out

    def test_runs_against_configured_log(self, aggregator: ActivityAggregator, capsys: pytest.CaptureFixture[str]) -> None:
        with patch("src.cli.create_aggregator", return_value=aggregator):
            main(["search", "deploy"])
        assert capsys.readouterr().out.count("Deploy") == 3
