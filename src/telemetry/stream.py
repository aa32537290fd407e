"""Server-sent-events consumer that feeds the telemetry store.

This is the ingestion boundary: it owns connect / reconnect / backoff and
rejects payloads that are not JSON objects before they reach
``TelemetryStore.ingest``. The store itself has no timers.
"""

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from src.config import get_settings
from src.telemetry.store import TelemetryStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15
INITIAL_BACKOFF_SECONDS = 1.0


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the data of each server-sent event from a line iterator.

    Multi-line ``data:`` fields are joined with newlines; comment lines and
    other fields (``event:``, ``id:``, ``retry:``) are skipped.
    """
    buffer: list[str] = []
    async for line in lines:
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            buffer.append(value.removeprefix(" "))
    if buffer:
        yield "\n".join(buffer)


def decode_payload(data: str) -> dict[str, Any] | None:
    """Decode one event's data. Returns None for anything but a JSON object."""
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Dropping non-JSON metrics event (%d bytes)", len(data))
        return None
    if not isinstance(payload, dict):
        logger.warning("Dropping metrics event with %s payload", type(payload).__name__)
        return None
    return payload


async def stream_once(store: TelemetryStore, client: httpx.AsyncClient, url: str) -> int:
    """Consume one connection until the server closes it. Returns events applied.

    Raises:
        httpx.HTTPError: On connection failure or a non-2xx response.
    """
    applied = 0
    async with client.stream("GET", url, headers={"Accept": "text/event-stream"}) as response:
        _ = response.raise_for_status()
        store.set_connection_state(True)
        logger.info("Connected to metrics stream at %s", url)
        async for data in iter_sse_data(response.aiter_lines()):
            payload = decode_payload(data)
            if payload is None:
                continue
            store.ingest(payload)
            applied += 1
    return applied


async def consume_metrics_stream(
    store: TelemetryStore,
    url: str,
    *,
    max_backoff: float = 30.0,
    stop: asyncio.Event | None = None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """Keep the store fed from the stream, reconnecting with exponential backoff.

    Every disconnect is reported through ``store.set_connection_state`` so the
    store can raise its connection-loss alert. Runs until ``stop`` is set or
    the task is cancelled.
    """
    stop = stop or asyncio.Event()
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=httpx.Timeout(DEFAULT_TIMEOUT_SECONDS, read=None))
    backoff = INITIAL_BACKOFF_SECONDS
    try:
        while not stop.is_set():
            try:
                applied = await stream_once(store, http, url)
                error = "Metrics stream closed by server"
                if applied:
                    backoff = INITIAL_BACKOFF_SECONDS
            except httpx.HTTPStatusError as exc:
                error = f"HTTP {exc.response.status_code}"
            except httpx.HTTPError as exc:
                error = str(exc) or type(exc).__name__

            store.set_connection_state(False, error)
            logger.info("Metrics stream down (%s); retrying in %.1fs", error, backoff)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=backoff)
            backoff = min(backoff * 2, max_backoff)
    finally:
        if owns_client:
            await http.aclose()


async def run_from_settings(store: TelemetryStore, stop: asyncio.Event | None = None) -> None:
    """Consume the configured stream; returns immediately if none is configured."""
    settings = get_settings()
    if not settings.metrics_stream_url:
        logger.info("Metrics stream disabled (METRICS_STREAM_URL not set)")
        return
    await consume_metrics_stream(
        store,
        settings.metrics_stream_url,
        max_backoff=settings.stream_reconnect_max_seconds,
        stop=stop,
    )
