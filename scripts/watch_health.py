"""Follow the metrics stream and print service health and alert changes.

Usage:
    python -m scripts.watch_health

Requires METRICS_STREAM_URL. Ctrl+C to exit.
"""

import asyncio
import logging
import sys

from src.config import get_settings
from src.telemetry.models import Alert, ServiceHealth
from src.telemetry.selectors import select_alerts, select_services_health
from src.telemetry.store import create_store
from src.telemetry.stream import run_from_settings

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s",
)


def print_health(new: tuple[ServiceHealth, ...], old: tuple[ServiceHealth, ...]) -> None:
    previous = {h.name: h.status for h in old}
    for health in new:
        if previous.get(health.name) != health.status:
            print(f"{health.last_checked_at:%H:%M:%S}  {health.name:<20} {health.status}")
    for gone in previous.keys() - {h.name for h in new}:
        print(f"{'':8}  {gone:<20} removed")


def print_new_alerts(new: tuple[Alert, ...], old: tuple[Alert, ...]) -> None:
    seen = {a.id for a in old}
    for alert in reversed(new):
        if alert.id not in seen:
            print(f"[{alert.severity.upper()}] {alert.service}: {alert.message}")


async def main() -> None:
    if not get_settings().metrics_stream_url:
        print("METRICS_STREAM_URL is not set", file=sys.stderr)
        sys.exit(1)

    store = create_store()
    _ = store.subscribe(select_services_health, print_health)
    _ = store.subscribe(select_alerts, print_new_alerts)
    await run_from_settings(store)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
