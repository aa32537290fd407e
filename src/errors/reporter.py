"""Rate-limited error reporter.

Errors are always logged locally. When reporting is enabled they are also
POSTed as JSON to a collection endpoint, at most ``max_reports`` times per
``window_seconds`` for each distinct fingerprint. The reporter never raises:
transport failures and its own bugs are logged and turned into ``False``.
"""

import logging
import time
import traceback
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypedDict

import httpx

from src.config import get_settings
from src.observability.metrics import ERROR_REPORTS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10
DEFAULT_MAX_REPORTS = 10
DEFAULT_WINDOW_SECONDS = 60.0


class ErrorContext(TypedDict, total=False):
    component_stack: str
    user_agent: str
    url: str


class ErrorReporterStats(TypedDict):
    total_tracked: int
    open_limited_errors: int


def format_stack(error: BaseException) -> str | None:
    """Traceback frames of ``error`` as text, innermost last. None if it was never raised."""
    if error.__traceback__ is None:
        return None
    return "".join(traceback.format_tb(error.__traceback__))


def error_message(error: BaseException) -> str:
    """``str(error)``, or the exception class name when that is empty or fails."""
    try:
        return str(error) or type(error).__name__
    except Exception:
        return type(error).__name__


def fingerprint(message: str, stack: str | None) -> str:
    """Identity of an error for rate limiting: message plus first stack line."""
    first_line = stack.split("\n")[0] if stack else ""
    return f"{message}:{first_line or 'no-stack'}"


class ErrorReporter:
    def __init__(
        self,
        endpoint: str,
        enabled: bool,
        *,
        max_reports: int = DEFAULT_MAX_REPORTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.endpoint = endpoint
        self.enabled = enabled
        self.max_reports = max_reports
        self.window_seconds = window_seconds
        self._clock = clock
        self._timestamps: dict[str, list[float]] = {}

    def _recent(self, key: str, now: float) -> list[float]:
        return [t for t in self._timestamps.get(key, []) if now - t < self.window_seconds]

    def should_report(self, key: str) -> bool:
        """Record an attempt for ``key`` unless its window is already full."""
        now = self._clock()
        recent = self._recent(key, now)
        if len(recent) >= self.max_reports:
            self._timestamps[key] = recent
            return False
        recent.append(now)
        self._timestamps[key] = recent
        return True

    async def report_error(self, error: BaseException, context: ErrorContext | None = None) -> bool:
        """Log ``error`` and, if enabled and not rate limited, send it. True iff delivered."""
        ctx = context or ErrorContext()
        try:
            message = error_message(error)
            stack = format_stack(error)
            logger.error("Uncaught error: %s", message, exc_info=error)

            if not self.enabled:
                ERROR_REPORTS_TOTAL.labels(outcome="disabled").inc()
                return False

            key = fingerprint(message, stack)
            if not self.should_report(key):
                logger.debug("Error rate limit reached, not reporting %s", key)
                ERROR_REPORTS_TOTAL.labels(outcome="rate_limited").inc()
                return False

            if not self.endpoint:
                ERROR_REPORTS_TOTAL.labels(outcome="local").inc()
                return False

            report: dict[str, str | None] = {
                "message": message,
                "stack": stack,
                "componentStack": ctx.get("component_stack"),
                "timestamp": datetime.now(UTC).isoformat(),
            }
            if ctx.get("user_agent"):
                report["userAgent"] = ctx["user_agent"]
            if ctx.get("url"):
                report["url"] = ctx["url"]

            sent = await self._send(report)
        except Exception:
            logger.warning("Error in error reporting system", exc_info=True)
            ERROR_REPORTS_TOTAL.labels(outcome="failed").inc()
            return False

        ERROR_REPORTS_TOTAL.labels(outcome="sent" if sent else "failed").inc()
        return sent

    async def _send(self, report: dict[str, str | None]) -> bool:
        try:
            async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS) as client:
                response = await client.post(self.endpoint, json=report)
        except httpx.HTTPError as exc:
            logger.warning("Failed to send error report: %s", exc)
            return False
        if not response.is_success:
            logger.warning("Error reporting failed (HTTP %d)", response.status_code)
            return False
        return True

    def get_stats(self) -> ErrorReporterStats:
        now = self._clock()
        open_limited = sum(1 for key in self._timestamps if len(self._recent(key, now)) >= self.max_reports)
        return ErrorReporterStats(total_tracked=len(self._timestamps), open_limited_errors=open_limited)

    def clear_rate_limit_cache(self) -> None:
        self._timestamps.clear()


def create_error_reporter() -> ErrorReporter:
    settings = get_settings()
    return ErrorReporter(
        settings.error_report_url,
        settings.error_logging_enabled,
        max_reports=settings.error_rate_limit_count,
        window_seconds=settings.error_rate_limit_window_seconds,
    )
