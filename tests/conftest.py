"""Shared pytest configuration and fixtures."""

from collections.abc import Generator
from typing import Any
from unittest.mock import patch

import pytest

from src.activity.audit_log import SqliteAuditLog, open_audit_log
from src.config import Settings, get_settings
from src.telemetry.store import TelemetryStore


@pytest.fixture(autouse=True)
def _no_dotenv() -> Generator[None]:
    """Block .env loading so local settings never leak into tests.

    Sets Settings.model_config['env_file'] = None before each test.
    Tests that use mock_settings bypass Settings() entirely, so this is transparent.
    """
    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings() -> Generator[Any]:
    """Provide fake settings so tests don't need a .env file.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = type(
        "FakeSettings",
        (),
        {
            # Audit log
            "audit_db_path": ":memory:",
            "activity_scan_limit": 1000,
            # Telemetry store
            "container_name_prefix": r"^nself[_-]",
            "alert_limit": 100,
            # Metrics stream
            "metrics_stream_url": "",
            "stream_reconnect_max_seconds": 30.0,
            # Error reporting
            "error_report_url": "http://errors.test/api/errors/report",
            "error_logging_enabled": True,
            "error_rate_limit_count": 10,
            "error_rate_limit_window_seconds": 60.0,
            "log_level": "INFO",
        },
    )()
    with (
        patch("src.config.get_settings", return_value=fake_settings),
        patch("src.telemetry.store.get_settings", return_value=fake_settings),
        patch("src.telemetry.stream.get_settings", return_value=fake_settings),
        patch("src.activity.audit_log.get_settings", return_value=fake_settings),
        patch("src.activity.feed.get_settings", return_value=fake_settings),
        patch("src.errors.reporter.get_settings", return_value=fake_settings),
        patch("src.api.main.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


@pytest.fixture
def audit_log() -> Generator[SqliteAuditLog]:
    """Fresh in-memory audit log with schema."""
    log = open_audit_log(":memory:")
    yield log
    log.close()


@pytest.fixture
def store() -> TelemetryStore:
    return TelemetryStore()
