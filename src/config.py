from functools import lru_cache
from typing import ClassVar

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Audit log (SQLite file; ":memory:" is accepted for throwaway runs)
    audit_db_path: str = ""
    # Newest N audit entries the activity aggregator reads per query
    activity_scan_limit: int = 1000

    # Telemetry store
    container_name_prefix: str = r"^nself[_-]"  # stripped from container names to get service names
    alert_limit: int = 100

    # Metrics ingestion stream (optional; empty string means not configured)
    metrics_stream_url: str = ""
    stream_reconnect_max_seconds: float = 30.0

    # Error reporting (optional; empty URL means local logging only)
    error_report_url: str = ""
    error_logging_enabled: bool = False
    error_rate_limit_count: int = 10
    error_rate_limit_window_seconds: float = 60.0

    log_level: str = "INFO"

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()
